from __future__ import annotations


class VehicleDataError(Exception):
    code = "VEHICLE_DATA_ERROR"


class RegistrationValidationError(VehicleDataError, ValueError):
    code = "INVALID_REGISTRATION"


class MileageValidationError(VehicleDataError, ValueError):
    code = "INVALID_MILEAGE"


class ProviderError(VehicleDataError):
    """A single provider call failed; recoverable at the orchestrator level."""

    code = "API_ERROR"

    def __init__(
        self,
        message: str,
        *,
        service: str = "",
        code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.service = service
        self.status_code = status_code
        if code is not None:
            self.code = code


class ProviderTimeoutError(ProviderError):
    code = "API_TIMEOUT"


class MalformedPayloadError(ProviderError):
    code = "MALFORMED_PAYLOAD"


class PersistenceError(VehicleDataError):
    code = "PERSISTENCE_ERROR"


class WriteConflictError(PersistenceError):
    code = "WRITE_CONFLICT"


class ListingNotFoundError(PersistenceError):
    code = "LISTING_NOT_FOUND"


class InvalidTransitionError(VehicleDataError):
    code = "INVALID_TRANSITION"
