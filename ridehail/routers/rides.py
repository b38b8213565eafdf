from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .. import services
from ..auth import get_current_user, get_db
from ..commands import CreateRide, parse_command, parse_ride_id
from ..models import Ride, User
from ..schemas import AvailableRideOut, DriverLocationOut, ListMeta, RideOut, RideStatsOut, TrackingOut
from ..utils import to_naive_utc


router = APIRouter(prefix="/rides", tags=["rides"])


def _ride_out(ride: Ride) -> dict:
    return RideOut.model_validate(ride).model_dump(mode="json")


@router.api_route("", methods=["POST", "PUT", "PATCH"])
def ride_action(
    request: Request,
    action: Optional[str] = Query(default=None),
    ride_id: Optional[str] = Query(default=None, alias="rideId"),
    body: Optional[dict] = Body(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    cmd = parse_command(request.method, action, ride_id, body)
    ride = services.execute(db, user, cmd)
    db.flush()
    code = status.HTTP_201_CREATED if isinstance(cmd, CreateRide) else status.HTTP_200_OK
    return JSONResponse(status_code=code, content={"data": _ride_out(ride)})


@router.get("")
def get_or_list_rides(
    ride_id: Optional[str] = Query(default=None, alias="rideId"),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    date_from: Optional[datetime] = Query(default=None, alias="dateFrom"),
    date_to: Optional[datetime] = Query(default=None, alias="dateTo"),
    limit: Optional[int] = Query(default=None),
    offset: int = Query(default=0),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if ride_id is not None:
        ride = services.get_ride_for_user(db, user, parse_ride_id(ride_id))
        return {"data": _ride_out(ride)}
    rides, meta = services.list_rides(
        db,
        user,
        status=status_filter,
        date_from=to_naive_utc(date_from),
        date_to=to_naive_utc(date_to),
        limit=limit,
        offset=offset,
    )
    return {"data": [_ride_out(r) for r in rides], "meta": ListMeta(**meta).model_dump()}


@router.get("/available")
def available_rides(
    latitude: float = Query(ge=-90, le=90),
    longitude: float = Query(ge=-180, le=180),
    radius: Optional[float] = Query(default=None, gt=0),
    limit: Optional[int] = Query(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    found = services.available_rides(db, user, latitude, longitude, radius_km=radius, limit=limit)
    out = []
    for ride, dist in found:
        item = AvailableRideOut.model_validate({**RideOut.model_validate(ride).model_dump(), "distance_from_driver_km": round(dist, 3)})
        out.append(item.model_dump(mode="json"))
    return {"data": out}


@router.get("/tracking")
def ride_tracking(
    ride_id: Optional[str] = Query(default=None, alias="rideId"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ride, loc = services.ride_tracking(db, user, parse_ride_id(ride_id))
    out = TrackingOut(
        ride=RideOut.model_validate(ride),
        driver_location=DriverLocationOut(lat=loc.lat, lon=loc.lon, updated_at=loc.updated_at) if loc else None,
    )
    return {"data": out.model_dump(mode="json")}


@router.get("/stats")
def ride_stats(
    period: str = Query(default="week"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    stats = services.ride_stats(db, user, period)
    return {"data": RideStatsOut(**stats).model_dump(mode="json")}
