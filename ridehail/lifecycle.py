"""Ride status machine.

Every mutating operation is checked against ``ALLOWED`` before any write. The
table is the single source of truth for which (state, operation) pairs are
legal; services never compare statuses on their own.
"""

from datetime import datetime

from .errors import InvalidStateError


REQUESTED = "requested"
NEGOTIATING = "negotiating"
ACCEPTED = "accepted"
STARTED = "started"
COMPLETED = "completed"
CANCELLED = "cancelled"

STATUSES = (REQUESTED, NEGOTIATING, ACCEPTED, STARTED, COMPLETED, CANCELLED)

# Open rides with no driver yet
UNASSIGNED = frozenset({REQUESTED, NEGOTIATING})
# A rider may hold at most one ride in these
ACTIVE = frozenset({REQUESTED, NEGOTIATING, ACCEPTED, STARTED})
# A driver may hold at most one ride in these
DRIVER_BUSY = frozenset({ACCEPTED, STARTED})

# operation -> (allowed source states, resulting state or None when unchanged)
ALLOWED: dict[str, tuple[frozenset[str], str | None]] = {
    "negotiate": (frozenset({REQUESTED, NEGOTIATING}), NEGOTIATING),
    "respond-negotiation": (frozenset({NEGOTIATING}), REQUESTED),
    "accept": (frozenset({REQUESTED}), ACCEPTED),
    "start": (frozenset({ACCEPTED}), STARTED),
    "complete": (frozenset({STARTED}), COMPLETED),
    "cancel": (frozenset({REQUESTED, NEGOTIATING, ACCEPTED}), CANCELLED),
    "rate": (frozenset({COMPLETED}), None),
    "update": (frozenset({REQUESTED, NEGOTIATING}), None),
    "update-payment": (frozenset(STATUSES), None),
}


def is_allowed(current: str, operation: str) -> bool:
    entry = ALLOWED.get(operation)
    return entry is not None and current in entry[0]


def guard(current: str, operation: str) -> str:
    """Return the status the ride ends in, or raise InvalidStateError."""
    if operation not in ALLOWED:
        raise ValueError(f"unknown ride operation: {operation}")
    sources, target = ALLOWED[operation]
    if current not in sources:
        raise InvalidStateError(current, operation)
    return target or current


def stamp(now: datetime, previous: datetime | None) -> datetime:
    # Never earlier than the preceding lifecycle timestamp
    if previous is not None and now < previous:
        return previous
    return now
