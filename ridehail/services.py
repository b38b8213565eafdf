"""Ride operations against the database.

Every status change is a conditional ``UPDATE ... WHERE status = <observed>``
so that concurrent writers cannot both win; the loser sees zero affected rows
and gets a typed error instead of silently overwriting the winner.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional
import logging
import uuid

from prometheus_client import Counter
from sqlalchemy import exists, func, update
from sqlalchemy.orm import Session, aliased

from . import lifecycle
from .commands import (
    COMMAND_TYPES,
    Command,
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
)
from .config import settings
from .errors import ConflictError, ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from .models import Driver, DriverLocation, Ride, User, utcnow
from .utils import bounding_box, haversine_km, to_naive_utc


logger = logging.getLogger("ridehail.rides")

STATUS_TRANSITIONS = Counter(
    "ridehail_ride_status_transitions_total",
    "Ride status transitions",
    ["from", "to"],
)
CAS_CONFLICTS = Counter(
    "ridehail_ride_cas_conflicts_total",
    "Conditional ride updates that matched no row",
    ["operation"],
)

STATS_PERIODS = {"week": 7, "month": 30, "year": 365}


def _count_transition(frm: str | None, to: str | None):
    STATUS_TRANSITIONS.labels(str(frm or ""), str(to or "")).inc()


def get_driver_for_user(db: Session, user: User, lock: bool = False) -> Driver:
    q = db.query(Driver).filter(Driver.user_id == user.id)
    if lock:
        q = q.with_for_update()
    drv = q.one_or_none()
    if drv is None:
        raise ForbiddenError("Driver profile required")
    return drv


def _driver_has_active_ride(db: Session, drv: Driver) -> bool:
    n = (
        db.query(func.count(Ride.id))
        .filter(Ride.driver_id == drv.id, Ride.status.in_(lifecycle.DRIVER_BUSY))
        .scalar()
    )
    return bool(n)


def _driver_is_free(driver_id):
    busy = aliased(Ride)
    return ~exists().where(busy.driver_id == driver_id, busy.status.in_(lifecycle.DRIVER_BUSY))


def _driver_or_none(db: Session, user: User) -> Driver | None:
    return db.query(Driver).filter(Driver.user_id == user.id).one_or_none()


def get_ride_or_404(db: Session, ride_id: uuid.UUID) -> Ride:
    ride = db.get(Ride, ride_id)
    if ride is None:
        raise NotFoundError("Ride not found")
    return ride


def _party(db: Session, user: User, ride: Ride, allow_unassigned_driver: bool = False) -> str:
    """Resolve the caller to 'rider' or 'driver' for this ride, or raise ForbiddenError."""
    if ride.rider_user_id == user.id:
        return "rider"
    drv = _driver_or_none(db, user)
    if drv is not None:
        if ride.driver_id == drv.id:
            return "driver"
        if allow_unassigned_driver and ride.driver_id is None:
            return "driver"
    raise ForbiddenError("Not your ride")


def _transition(db: Session, ride: Ride, operation: str, *conditions, **values) -> Ride:
    """Apply ``operation`` as a compare-and-swap on the ride's observed status."""
    observed = ride.status
    target = lifecycle.guard(observed, operation)
    now = utcnow()
    values["updated_at"] = lifecycle.stamp(now, ride.updated_at)
    if target != observed:
        values["status"] = target
    stmt = (
        update(Ride)
        .where(Ride.id == ride.id, Ride.status == observed, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        CAS_CONFLICTS.labels(operation).inc()
        db.expire(ride)
        current = ride.status
        logger.info("ride %s %s lost race: status now %s", ride.id, operation, current)
        if current == observed or lifecycle.is_allowed(current, operation):
            # Still a legal pair, only our snapshot was stale
            raise ConflictError(f"Ride changed concurrently; cannot {operation}")
        raise InvalidStateError(current, operation)
    db.expire(ride)
    if target != observed:
        _count_transition(observed, target)
        logger.info("ride %s %s -> %s (%s)", ride.id, observed, target, operation)
    return ride


# ----- commands -----

def create_ride(db: Session, user: User, cmd: CreateRide) -> Ride:
    p = cmd.payload
    if user.role == "driver":
        raise ForbiddenError("Only riders can request rides")
    if p.seats > settings.MAX_SEATS:
        raise ValidationError(f"seats must be between 1 and {settings.MAX_SEATS}")
    # Serialize one rider's creates on the user row
    db.query(User.id).filter(User.id == user.id).with_for_update().one()
    active = (
        db.query(func.count(Ride.id))
        .filter(Ride.rider_user_id == user.id, Ride.status.in_(lifecycle.ACTIVE))
        .scalar()
    )
    if active:
        raise ConflictError("Rider already has an active ride")
    now = utcnow()
    ride = Ride(
        rider_user_id=user.id,
        status=lifecycle.REQUESTED,
        origin_lat=p.origin_latitude,
        origin_lon=p.origin_longitude,
        origin_address=p.origin_address.strip(),
        destination_lat=p.destination_latitude,
        destination_lon=p.destination_longitude,
        destination_address=p.destination_address.strip(),
        stops=[s.model_dump() for s in p.stops] if p.stops else None,
        seats=p.seats,
        notes=p.notes,
        scheduled_at=to_naive_utc(p.scheduled_at),
        currency=settings.CURRENCY,
        quoted_fare_cents=p.quoted_fare_cents,
        payment_status="unpaid",
        requested_at=now,
        updated_at=now,
    )
    db.add(ride)
    db.flush()
    _count_transition(None, ride.status)
    logger.info("ride %s requested by %s", ride.id, user.id)
    return ride


def accept_ride(db: Session, user: User, cmd: AcceptRide) -> Ride:
    # Row lock serializes one driver's accepts on PostgreSQL
    drv = get_driver_for_user(db, user, lock=True)
    ride = get_ride_or_404(db, cmd.ride_id)
    if ride.status == lifecycle.ACCEPTED:
        raise ConflictError("Ride already accepted")
    lifecycle.guard(ride.status, "accept")
    if _driver_has_active_ride(db, drv):
        raise ConflictError("Driver already has an active ride")
    try:
        _transition(
            db,
            ride,
            "accept",
            Ride.driver_id.is_(None),
            _driver_is_free(drv.id),
            driver_id=drv.id,
            accepted_at=lifecycle.stamp(utcnow(), ride.requested_at),
        )
    except InvalidStateError as e:
        if e.current == lifecycle.ACCEPTED:
            raise ConflictError("Ride already accepted")
        raise
    except ConflictError:
        if ride.status == lifecycle.REQUESTED and ride.driver_id is None:
            raise ConflictError("Driver already has an active ride")
        raise
    drv.status = "busy"
    db.flush()
    return ride


def start_ride(db: Session, user: User, cmd: StartRide) -> Ride:
    drv = get_driver_for_user(db, user)
    ride = get_ride_or_404(db, cmd.ride_id)
    lifecycle.guard(ride.status, "start")
    if ride.driver_id != drv.id:
        raise ForbiddenError("Not your ride")
    return _transition(
        db,
        ride,
        "start",
        Ride.driver_id == drv.id,
        started_at=lifecycle.stamp(utcnow(), ride.accepted_at),
    )


def complete_ride(db: Session, user: User, cmd: CompleteRide) -> Ride:
    p = cmd.payload
    drv = get_driver_for_user(db, user)
    ride = get_ride_or_404(db, cmd.ride_id)
    lifecycle.guard(ride.status, "complete")
    if ride.driver_id != drv.id:
        raise ForbiddenError("Not your ride")
    final_fare = p.final_fare_cents if p.final_fare_cents is not None else ride.active_fare_cents
    method = p.payment_method or ride.payment_method
    values = dict(
        completed_at=lifecycle.stamp(utcnow(), ride.started_at),
        final_fare_cents=final_fare,
        payment_method=method,
        payment_status="paid" if method == "cash" else "pending",
    )
    if p.distance_km is not None:
        values["distance_km"] = p.distance_km
    if p.duration_minutes is not None:
        values["duration_minutes"] = p.duration_minutes
    _transition(db, ride, "complete", Ride.driver_id == drv.id, **values)
    drv.status = "available"
    db.flush()
    return ride


def cancel_ride(db: Session, user: User, cmd: CancelRide) -> Ride:
    ride = get_ride_or_404(db, cmd.ride_id)
    party = _party(db, user, ride)
    previous_stamp = ride.accepted_at or ride.requested_at
    driver_id = ride.driver_id
    _transition(
        db,
        ride,
        "cancel",
        cancelled_at=lifecycle.stamp(utcnow(), previous_stamp),
        cancelled_by=party,
        cancel_reason=(cmd.payload.reason or "").strip() or f"Cancelled by {party}",
        proposed_fare_cents=None,
        proposed_by=None,
        proposed_by_user_id=None,
        proposal_expires_at=None,
    )
    if driver_id is not None:
        drv = db.get(Driver, driver_id)
        if drv is not None:
            drv.status = "available"
            db.flush()
    return ride


def update_ride(db: Session, user: User, cmd: UpdateRide) -> Ride:
    ride = get_ride_or_404(db, cmd.ride_id)
    if ride.rider_user_id != user.id:
        raise ForbiddenError("Only the rider can update this ride")
    lifecycle.guard(ride.status, "update")
    fields = cmd.payload.model_dump(exclude_unset=True)
    if not fields:
        raise ValidationError("No valid fields to update")
    for required in ("seats", "origin_address", "destination_address"):
        if required in fields and fields[required] is None:
            raise ValidationError(f"{required} cannot be null")
    if fields.get("seats") is not None and fields["seats"] > settings.MAX_SEATS:
        raise ValidationError(f"seats must be between 1 and {settings.MAX_SEATS}")
    if "stops" in fields and fields["stops"] is not None:
        fields["stops"] = fields["stops"] or None
    if "scheduled_at" in fields:
        fields["scheduled_at"] = to_naive_utc(fields["scheduled_at"])
    for key in ("origin_address", "destination_address"):
        if fields.get(key):
            fields[key] = fields[key].strip()
    return _transition(db, ride, "update", **fields)


def rate_ride(db: Session, user: User, cmd: RateRide) -> Ride:
    p = cmd.payload
    ride = get_ride_or_404(db, cmd.ride_id)
    if ride.rider_user_id != user.id:
        raise ForbiddenError("Only the rider can rate this ride")
    lifecycle.guard(ride.status, "rate")
    if ride.rating is not None:
        raise ConflictError("Ride already rated")
    try:
        _transition(
            db,
            ride,
            "rate",
            Ride.rating.is_(None),
            rating=p.rating,
            feedback=p.feedback,
            rated_at=lifecycle.stamp(utcnow(), ride.completed_at),
        )
    except ConflictError:
        raise ConflictError("Ride already rated")
    logger.info("ride %s rated %s", ride.id, p.rating)
    return ride


def negotiate_price(db: Session, user: User, cmd: NegotiatePrice) -> Ride:
    ride = get_ride_or_404(db, cmd.ride_id)
    party = _party(db, user, ride, allow_unassigned_driver=True)
    lifecycle.guard(ride.status, "negotiate")
    now = utcnow()
    if (
        ride.status == lifecycle.NEGOTIATING
        and ride.proposed_by == party
        and ride.proposal_expires_at is not None
        and ride.proposal_expires_at > now
    ):
        raise ConflictError("An active negotiation already exists for this ride")
    return _transition(
        db,
        ride,
        "negotiate",
        proposed_fare_cents=cmd.payload.proposed_fare_cents,
        proposed_by=party,
        proposed_by_user_id=user.id,
        proposal_expires_at=now + timedelta(seconds=settings.NEGOTIATION_TTL_SECS),
    )


def respond_to_negotiation(db: Session, user: User, cmd: RespondToNegotiation) -> Ride:
    ride = get_ride_or_404(db, cmd.ride_id)
    party = _party(db, user, ride, allow_unassigned_driver=True)
    lifecycle.guard(ride.status, "respond-negotiation")
    if party == ride.proposed_by:
        raise ForbiddenError("Only the other party can respond to this proposal")
    if ride.proposal_expires_at is None or ride.proposal_expires_at <= utcnow():
        raise ValidationError("Negotiation has expired")
    values = dict(
        proposed_fare_cents=None,
        proposed_by=None,
        proposed_by_user_id=None,
        proposal_expires_at=None,
    )
    if cmd.payload.accept:
        values["negotiated_fare_cents"] = ride.proposed_fare_cents
    _transition(db, ride, "respond-negotiation", **values)
    logger.info("ride %s negotiation %s by %s", ride.id, "accepted" if cmd.payload.accept else "rejected", party)
    return ride


def update_payment_status(db: Session, user: User, cmd: UpdatePaymentStatus) -> Ride:
    p = cmd.payload
    ride = get_ride_or_404(db, cmd.ride_id)
    _party(db, user, ride)
    lifecycle.guard(ride.status, "update-payment")
    if ride.status == lifecycle.CANCELLED and p.payment_status == "paid":
        raise ValidationError("A cancelled ride cannot be marked as paid")
    values: dict = {"payment_status": p.payment_status}
    if p.payment_method is not None:
        values["payment_method"] = p.payment_method
    if p.payment_reference is not None:
        values["payment_reference"] = p.payment_reference
    return _transition(db, ride, "update-payment", **values)


HANDLERS: dict[type, Callable[[Session, User, Command], Ride]] = {
    CreateRide: create_ride,
    AcceptRide: accept_ride,
    StartRide: start_ride,
    CompleteRide: complete_ride,
    CancelRide: cancel_ride,
    UpdateRide: update_ride,
    RateRide: rate_ride,
    NegotiatePrice: negotiate_price,
    RespondToNegotiation: respond_to_negotiation,
    UpdatePaymentStatus: update_payment_status,
}

assert set(HANDLERS) == set(COMMAND_TYPES), "every ride command needs a handler"


def execute(db: Session, user: User, cmd: Command) -> Ride:
    return HANDLERS[type(cmd)](db, user, cmd)


# ----- queries -----

def get_ride_for_user(db: Session, user: User, ride_id: uuid.UUID) -> Ride:
    ride = get_ride_or_404(db, ride_id)
    if ride.rider_user_id == user.id:
        return ride
    drv = _driver_or_none(db, user)
    if drv is not None:
        if ride.driver_id == drv.id:
            return ride
        if ride.driver_id is None and ride.status in lifecycle.UNASSIGNED:
            return ride
    raise ForbiddenError("Not your ride")


def _scoped_query(db: Session, user: User):
    q = db.query(Ride)
    if user.role == "driver":
        drv = get_driver_for_user(db, user)
        return q.filter(Ride.driver_id == drv.id)
    return q.filter(Ride.rider_user_id == user.id)


def list_rides(
    db: Session,
    user: User,
    status: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> tuple[list[Ride], dict]:
    limit = settings.LIST_DEFAULT_LIMIT if limit is None else limit
    if limit < 1 or limit > settings.LIST_MAX_LIMIT:
        raise ValidationError(f"limit must be between 1 and {settings.LIST_MAX_LIMIT}")
    if offset < 0:
        raise ValidationError("offset must be >= 0")
    if status is not None and status not in lifecycle.STATUSES:
        raise ValidationError(f"Unknown status '{status}'")
    q = _scoped_query(db, user)
    if status:
        q = q.filter(Ride.status == status)
    if date_from:
        q = q.filter(Ride.requested_at >= date_from)
    if date_to:
        q = q.filter(Ride.requested_at <= date_to)
    total = q.count()
    rides = q.order_by(Ride.requested_at.desc(), Ride.id).offset(offset).limit(limit).all()
    meta = {"total": total, "limit": limit, "offset": offset, "has_more": offset + len(rides) < total}
    return rides, meta


def available_rides(
    db: Session,
    user: User,
    latitude: float,
    longitude: float,
    radius_km: Optional[float] = None,
    limit: Optional[int] = None,
) -> list[tuple[Ride, float]]:
    get_driver_for_user(db, user)
    radius_km = settings.AVAILABLE_RADIUS_KM if radius_km is None else radius_km
    limit = settings.AVAILABLE_LIMIT if limit is None else limit
    if radius_km <= 0:
        raise ValidationError("radius must be positive")
    if limit < 1 or limit > settings.LIST_MAX_LIMIT:
        raise ValidationError(f"limit must be between 1 and {settings.LIST_MAX_LIMIT}")
    horizon = utcnow() + timedelta(minutes=settings.SCHEDULE_LOOKAHEAD_MINS)
    min_lat, max_lat, min_lon, max_lon = bounding_box(latitude, longitude, radius_km)
    candidates = (
        db.query(Ride)
        .filter(Ride.status.in_(lifecycle.UNASSIGNED), Ride.driver_id.is_(None))
        .filter((Ride.scheduled_at.is_(None)) | (Ride.scheduled_at <= horizon))
        .filter(Ride.origin_lat.between(min_lat, max_lat), Ride.origin_lon.between(min_lon, max_lon))
        .all()
    )
    out: list[tuple[Ride, float]] = []
    for r in candidates:
        d = haversine_km(latitude, longitude, r.origin_lat, r.origin_lon)
        if d <= radius_km:
            out.append((r, d))
    out.sort(key=lambda t: t[1])
    return out[:limit]


def ride_tracking(db: Session, user: User, ride_id: uuid.UUID) -> tuple[Ride, DriverLocation | None]:
    ride = get_ride_or_404(db, ride_id)
    _party(db, user, ride)
    loc = None
    if ride.driver_id is not None:
        loc = db.query(DriverLocation).filter(DriverLocation.driver_id == ride.driver_id).one_or_none()
    return ride, loc


def ride_stats(db: Session, user: User, period: str = "week") -> dict:
    if period not in STATS_PERIODS:
        raise ValidationError("period must be one of week, month, year")
    since = utcnow() - timedelta(days=STATS_PERIODS[period])
    q = _scoped_query(db, user).filter(Ride.requested_at >= since)
    by_status = {s: 0 for s in lifecycle.STATUSES}
    for st, n in q.with_entities(Ride.status, func.count(Ride.id)).group_by(Ride.status).all():
        by_status[st] = int(n)
    completed = q.filter(Ride.status == lifecycle.COMPLETED)
    total_amount = completed.with_entities(func.coalesce(func.sum(Ride.final_fare_cents), 0)).scalar()
    avg_rating, ratings_count = (
        q.filter(Ride.rating.isnot(None)).with_entities(func.avg(Ride.rating), func.count(Ride.id)).one()
    )
    return {
        "period": period,
        "since": since,
        "total_rides": sum(by_status.values()),
        "by_status": by_status,
        "total_amount_cents": int(total_amount or 0),
        "average_rating": round(float(avg_rating), 2) if avg_rating is not None else None,
        "ratings_count": int(ratings_count or 0),
    }
