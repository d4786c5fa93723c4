from __future__ import annotations

import re

from vehicles.errors import MileageValidationError, RegistrationValidationError

_WHITESPACE = re.compile(r"\s+")
_VRM_PATTERN = re.compile(r"^[A-Z0-9]{2,8}$")


def normalize_vrm(vrm: str) -> str:
    return _WHITESPACE.sub("", vrm).upper()


def validate_vrm(vrm: object) -> str:
    """Return the normalized mark or raise before any provider is touched."""
    if not isinstance(vrm, str):
        raise RegistrationValidationError("Invalid VRM: must be a non-empty string")
    normalized = normalize_vrm(vrm)
    if not normalized:
        raise RegistrationValidationError("Invalid VRM: must be a non-empty string")
    if not _VRM_PATTERN.match(normalized):
        raise RegistrationValidationError(f"Invalid VRM format: {vrm!r}")
    return normalized


def validate_mileage(mileage: object) -> int:
    if isinstance(mileage, bool) or not isinstance(mileage, int):
        raise MileageValidationError("Invalid mileage: must be a non-negative integer")
    if mileage < 0:
        raise MileageValidationError("Invalid mileage: must be a non-negative integer")
    return mileage
