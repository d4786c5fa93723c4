from __future__ import annotations

from vehicles.errors import InvalidTransitionError

TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"active", "cancelled"}),
    "active": frozenset({"expired", "cancelled"}),
    "expired": frozenset(),
    "cancelled": frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def check_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Cannot move advert from {current!r} to {target!r}")
