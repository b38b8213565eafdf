import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, Integer, DateTime, ForeignKey, Float, Index, JSON, Uuid
)
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()


def default_uuid():
    return uuid.uuid4()


def utcnow() -> datetime:
    # Naive UTC, matching DateTime columns without timezone
    return datetime.utcnow()


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    auth_subject = Column(String(128), nullable=False, unique=True, index=True)  # token "sub"
    name = Column(String(128), nullable=True)
    phone = Column(String(32), nullable=True)
    role = Column(String(16), nullable=False, default="rider")  # rider|driver
    created_at = Column(DateTime, nullable=False, default=utcnow)

    driver = relationship("Driver", uselist=False, back_populates="user")


class Driver(Base):
    __tablename__ = "drivers"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, unique=True)
    status = Column(String(16), nullable=False, default="offline")  # offline|available|busy
    vehicle_make = Column(String(64), nullable=True)
    vehicle_plate = Column(String(32), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    user = relationship("User", back_populates="driver")
    location = relationship("DriverLocation", uselist=False, back_populates="driver")
    rides = relationship("Ride", back_populates="driver")


class DriverLocation(Base):
    __tablename__ = "driver_locations"
    __table_args__ = (Index("ix_driver_loc_updated", "updated_at"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    driver_id = Column(Uuid(as_uuid=True), ForeignKey("drivers.id"), nullable=False, unique=True)
    lat = Column(Float, nullable=False)
    lon = Column(Float, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    driver = relationship("Driver", back_populates="location")


class Ride(Base):
    __tablename__ = "rides"
    __table_args__ = (
        Index("ix_rides_requested", "requested_at"),
        Index("ix_rides_status", "status"),
        Index("ix_rides_rider", "rider_user_id"),
        Index("ix_rides_driver", "driver_id"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    rider_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    driver_id = Column(Uuid(as_uuid=True), ForeignKey("drivers.id"), nullable=True)
    status = Column(String(24), nullable=False, default="requested")  # requested|negotiating|accepted|started|completed|cancelled
    origin_lat = Column(Float, nullable=False)
    origin_lon = Column(Float, nullable=False)
    origin_address = Column(String(512), nullable=False)
    destination_lat = Column(Float, nullable=False)
    destination_lon = Column(Float, nullable=False)
    destination_address = Column(String(512), nullable=False)
    stops = Column(JSON, nullable=True)  # [{"lat", "lon", "address"}] in travel order
    seats = Column(Integer, nullable=False, default=1)
    notes = Column(String(1024), nullable=True)
    scheduled_at = Column(DateTime, nullable=True)
    currency = Column(String(8), nullable=False)
    quoted_fare_cents = Column(Integer, nullable=False)
    negotiated_fare_cents = Column(Integer, nullable=True)
    # Pending counter-proposal
    proposed_fare_cents = Column(Integer, nullable=True)
    proposed_by = Column(String(16), nullable=True)  # rider|driver
    proposed_by_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    proposal_expires_at = Column(DateTime, nullable=True)
    final_fare_cents = Column(Integer, nullable=True)
    distance_km = Column(Float, nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    payment_status = Column(String(16), nullable=False, default="unpaid")  # unpaid|pending|paid|failed|refunded
    payment_method = Column(String(16), nullable=True)  # cash|card|wallet
    payment_reference = Column(String(128), nullable=True)
    rating = Column(Integer, nullable=True)  # 1..5
    feedback = Column(String(1024), nullable=True)
    rated_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String(256), nullable=True)
    cancelled_by = Column(String(16), nullable=True)  # rider|driver
    requested_at = Column(DateTime, nullable=False, default=utcnow)
    accepted_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    driver = relationship("Driver", back_populates="rides")

    @property
    def active_fare_cents(self) -> int:
        if self.negotiated_fare_cents is not None:
            return self.negotiated_fare_cents
        return self.quoted_fare_cents
