import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user, get_db
from ..errors import ForbiddenError
from ..models import User, Driver, DriverLocation, utcnow
from ..schemas import DriverApplyIn, DriverStatusIn, DriverLocationIn
from ..services import get_driver_for_user


router = APIRouter(prefix="/driver", tags=["driver"])
logger = logging.getLogger("ridehail.driver")


def require_driver(user: User):
    if user.role != "driver":
        raise ForbiddenError("Driver only")


def _driver_out(drv: Driver) -> dict:
    return {
        "id": str(drv.id),
        "user_id": str(drv.user_id),
        "status": drv.status,
        "vehicle_make": drv.vehicle_make,
        "vehicle_plate": drv.vehicle_plate,
    }


@router.post("/apply")
def apply_driver(payload: DriverApplyIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    # Promote to driver and create the driver record (no vetting here)
    if user.role != "driver":
        user.role = "driver"
        db.flush()
    drv = db.query(Driver).filter(Driver.user_id == user.id).one_or_none()
    if drv is None:
        drv = Driver(user_id=user.id, vehicle_make=payload.vehicle_make, vehicle_plate=payload.vehicle_plate, status="offline")
        db.add(drv)
        db.flush()
        logger.info("driver %s enabled for user %s", drv.id, user.id)
    return {"data": _driver_out(drv)}


@router.put("/status")
def update_status(payload: DriverStatusIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    require_driver(user)
    drv = get_driver_for_user(db, user)
    drv.status = payload.status
    db.flush()
    return {"data": _driver_out(drv)}


@router.put("/location")
def update_location(payload: DriverLocationIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    require_driver(user)
    drv = get_driver_for_user(db, user)
    loc = db.query(DriverLocation).filter(DriverLocation.driver_id == drv.id).one_or_none()
    if loc is None:
        loc = DriverLocation(driver_id=drv.id, lat=payload.lat, lon=payload.lon, updated_at=utcnow())
        db.add(loc)
    else:
        loc.lat = payload.lat
        loc.lon = payload.lon
        loc.updated_at = utcnow()
    db.flush()
    return {"data": {"lat": loc.lat, "lon": loc.lon, "updated_at": loc.updated_at.isoformat()}}
