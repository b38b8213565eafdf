from datetime import datetime
from typing import Optional, List
import uuid

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelIn(BaseModel):
    # Accept camelCase (mobile clients) and snake_case alike
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StopIn(CamelIn):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    address: str = Field(min_length=1, max_length=512)


class RideCreateIn(CamelIn):
    origin_latitude: float = Field(ge=-90, le=90)
    origin_longitude: float = Field(ge=-180, le=180)
    origin_address: str = Field(min_length=1, max_length=512)
    destination_latitude: float = Field(ge=-90, le=90)
    destination_longitude: float = Field(ge=-180, le=180)
    destination_address: str = Field(min_length=1, max_length=512)
    stops: Optional[List[StopIn]] = None
    quoted_fare_cents: int = Field(gt=0)
    seats: int = Field(default=1, ge=1)
    notes: Optional[str] = Field(default=None, max_length=1024)
    scheduled_at: Optional[datetime] = None


class RideUpdateIn(CamelIn):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    notes: Optional[str] = Field(default=None, max_length=1024)
    seats: Optional[int] = Field(default=None, ge=1)
    origin_address: Optional[str] = Field(default=None, min_length=1, max_length=512)
    destination_address: Optional[str] = Field(default=None, min_length=1, max_length=512)
    stops: Optional[List[StopIn]] = None
    scheduled_at: Optional[datetime] = None


class RideCompleteIn(CamelIn):
    final_fare_cents: Optional[int] = Field(default=None, gt=0)
    distance_km: Optional[float] = Field(default=None, ge=0)
    duration_minutes: Optional[int] = Field(default=None, ge=0)
    payment_method: Optional[str] = Field(default=None, pattern="^(cash|card|wallet)$")


class CancelIn(CamelIn):
    reason: Optional[str] = Field(default=None, max_length=256)


class RideRatingIn(CamelIn):
    rating: int = Field(ge=1, le=5)
    feedback: Optional[str] = Field(default=None, max_length=1024)


class NegotiateIn(CamelIn):
    proposed_fare_cents: int = Field(gt=0)


class NegotiationResponseIn(CamelIn):
    accept: bool


class PaymentStatusIn(CamelIn):
    payment_status: str = Field(pattern="^(unpaid|pending|paid|failed|refunded)$")
    payment_method: Optional[str] = Field(default=None, pattern="^(cash|card|wallet)$")
    payment_reference: Optional[str] = Field(default=None, max_length=128)


class DriverApplyIn(CamelIn):
    vehicle_make: Optional[str] = Field(default=None, max_length=64)
    vehicle_plate: Optional[str] = Field(default=None, max_length=32)


class DriverStatusIn(CamelIn):
    status: str = Field(pattern="^(offline|available|busy)$")


class DriverLocationIn(CamelIn):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)


class RideOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    status: str
    rider_user_id: uuid.UUID
    driver_id: Optional[uuid.UUID] = None
    origin_lat: float
    origin_lon: float
    origin_address: str
    destination_lat: float
    destination_lon: float
    destination_address: str
    stops: Optional[List[dict]] = None
    seats: int
    notes: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    currency: str
    quoted_fare_cents: int
    negotiated_fare_cents: Optional[int] = None
    active_fare_cents: int
    proposed_fare_cents: Optional[int] = None
    proposed_by: Optional[str] = None
    proposal_expires_at: Optional[datetime] = None
    final_fare_cents: Optional[int] = None
    distance_km: Optional[float] = None
    duration_minutes: Optional[int] = None
    payment_status: str
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    rating: Optional[int] = None
    feedback: Optional[str] = None
    rated_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    requested_at: datetime
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    updated_at: datetime


class AvailableRideOut(RideOut):
    distance_from_driver_km: float


class DriverLocationOut(BaseModel):
    lat: float
    lon: float
    updated_at: datetime


class TrackingOut(BaseModel):
    ride: RideOut
    driver_location: Optional[DriverLocationOut] = None


class ListMeta(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class RideStatsOut(BaseModel):
    period: str
    since: datetime
    total_rides: int
    by_status: dict[str, int]
    total_amount_cents: int
    average_rating: Optional[float] = None
    ratings_count: int
