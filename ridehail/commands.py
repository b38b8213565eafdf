"""Ride commands.

An HTTP request on ``/rides`` names its operation with ``action=...``. The
method and action are parsed once into one of the command types below; the
service layer dispatches on the command type, so an unknown action never gets
past parsing.
"""

from dataclasses import dataclass
from typing import ClassVar, Optional, Union
import uuid

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .schemas import (
    RideCreateIn,
    RideUpdateIn,
    RideCompleteIn,
    CancelIn,
    RideRatingIn,
    NegotiateIn,
    NegotiationResponseIn,
    PaymentStatusIn,
)


@dataclass(frozen=True)
class CreateRide:
    operation: ClassVar[str] = "create"
    payload: RideCreateIn


@dataclass(frozen=True)
class AcceptRide:
    operation: ClassVar[str] = "accept"
    ride_id: uuid.UUID


@dataclass(frozen=True)
class StartRide:
    operation: ClassVar[str] = "start"
    ride_id: uuid.UUID


@dataclass(frozen=True)
class CompleteRide:
    operation: ClassVar[str] = "complete"
    ride_id: uuid.UUID
    payload: RideCompleteIn


@dataclass(frozen=True)
class CancelRide:
    operation: ClassVar[str] = "cancel"
    ride_id: uuid.UUID
    payload: CancelIn


@dataclass(frozen=True)
class UpdateRide:
    operation: ClassVar[str] = "update"
    ride_id: uuid.UUID
    payload: RideUpdateIn


@dataclass(frozen=True)
class RateRide:
    operation: ClassVar[str] = "rate"
    ride_id: uuid.UUID
    payload: RideRatingIn


@dataclass(frozen=True)
class NegotiatePrice:
    operation: ClassVar[str] = "negotiate"
    ride_id: uuid.UUID
    payload: NegotiateIn


@dataclass(frozen=True)
class RespondToNegotiation:
    operation: ClassVar[str] = "respond-negotiation"
    ride_id: uuid.UUID
    payload: NegotiationResponseIn


@dataclass(frozen=True)
class UpdatePaymentStatus:
    operation: ClassVar[str] = "update-payment"
    ride_id: uuid.UUID
    payload: PaymentStatusIn


Command = Union[
    CreateRide,
    AcceptRide,
    StartRide,
    CompleteRide,
    CancelRide,
    UpdateRide,
    RateRide,
    NegotiatePrice,
    RespondToNegotiation,
    UpdatePaymentStatus,
]

COMMAND_TYPES: tuple[type, ...] = Command.__args__


# (method, action) -> (command type, body schema or None)
ROUTES: dict[tuple[str, Optional[str]], tuple[type, Optional[type[BaseModel]]]] = {
    ("POST", "create"): (CreateRide, RideCreateIn),
    ("POST", "accept"): (AcceptRide, None),
    ("POST", "start"): (StartRide, None),
    ("POST", "complete"): (CompleteRide, RideCompleteIn),
    ("POST", "cancel"): (CancelRide, CancelIn),
    ("PUT", None): (UpdateRide, RideUpdateIn),
    ("PATCH", "rate"): (RateRide, RideRatingIn),
    ("PATCH", "negotiate"): (NegotiatePrice, NegotiateIn),
    ("PATCH", "respond-negotiation"): (RespondToNegotiation, NegotiationResponseIn),
    ("PATCH", "update-payment"): (UpdatePaymentStatus, PaymentStatusIn),
}


def parse_ride_id(raw: Optional[str]) -> uuid.UUID:
    if not raw:
        raise ValidationError("rideId is required")
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        raise ValidationError("rideId must be a UUID")


def _validate_body(schema: type[BaseModel], body) -> BaseModel:
    try:
        return schema.model_validate(body if body is not None else {})
    except PydanticValidationError as e:
        parts = []
        for err in e.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()))
            parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
        raise ValidationError("; ".join(parts) or "Invalid request body")


def parse_command(method: str, action: Optional[str], ride_id: Optional[str], body) -> Command:
    """Build a command from the request, raising ValidationError for anything unknown."""
    method = method.upper()
    key = (method, action or None)
    if key not in ROUTES:
        if action:
            raise ValidationError(f"Unknown action '{action}' for {method}")
        raise ValidationError(f"An action is required for {method}")
    cmd_type, schema = ROUTES[key]
    kwargs: dict = {}
    if cmd_type is not CreateRide:
        kwargs["ride_id"] = parse_ride_id(ride_id)
    if schema is not None:
        kwargs["payload"] = _validate_body(schema, body)
    return cmd_type(**kwargs)
