"""Client-side ride state.

``RideStore`` mirrors what the server last said about the caller's rides. Each
action forwards to ``RideApiClient`` and replaces local state with the server's
response; nothing is merged optimistically. A store is an explicit object bound
to the current context with ``ride_store_scope``, never a module global.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Generic, Iterator, Optional, TypeVar
import logging
import threading

from .api import RideApiClient


logger = logging.getLogger("ridehail.client.store")

T = TypeVar("T")


@dataclass(frozen=True)
class PendingLocal(Generic[T]):
    """A value the user entered that the server has not confirmed yet."""
    value: T


@dataclass(frozen=True)
class ConfirmedRemote(Generic[T]):
    """A value as returned by the server."""
    value: T


class RequestInFlightError(RuntimeError):
    """Another action on the same store has not finished."""


class RideStore:
    def __init__(self, api: RideApiClient):
        self.api = api
        self.ride: Optional[ConfirmedRemote[dict]] = None
        self.rides: list[dict] = []
        self.rides_meta: dict = {}
        self.available_rides: list[dict] = []
        self.tracking: Optional[dict] = None
        self.stats: Optional[dict] = None
        self.pending_update: Optional[PendingLocal[dict]] = None
        self.is_loading = False
        self.error: Optional[str] = None
        self._in_flight = threading.Lock()

    @property
    def current_ride(self) -> Optional[dict]:
        return self.ride.value if self.ride is not None else None

    @contextmanager
    def _action(self, name: str) -> Iterator[None]:
        if not self._in_flight.acquire(blocking=False):
            raise RequestInFlightError(f"Cannot {name}: another ride request is in flight")
        self.is_loading = True
        self.error = None
        try:
            yield
        except Exception as e:
            self.error = getattr(e, "message", None) or str(e)
            logger.info("ride store %s failed: %s", name, self.error)
            raise
        finally:
            self.is_loading = False
            self._in_flight.release()

    def _set_ride(self, data: dict) -> dict:
        self.ride = ConfirmedRemote(data)
        return data

    def clear_ride(self) -> None:
        self.ride = None
        self.pending_update = None

    def clear_error(self) -> None:
        self.error = None

    # Lifecycle actions
    def create_ride(self, data: dict) -> dict:
        with self._action("create ride"):
            return self._set_ride(self.api.create_ride(data))

    def accept_ride(self, ride_id: str) -> dict:
        with self._action("accept ride"):
            return self._set_ride(self.api.accept_ride(ride_id))

    def start_ride(self, ride_id: str) -> dict:
        with self._action("start ride"):
            return self._set_ride(self.api.start_ride(ride_id))

    def complete_ride(self, ride_id: str, data: Optional[dict] = None) -> dict:
        with self._action("complete ride"):
            return self._set_ride(self.api.complete_ride(ride_id, data))

    def cancel_ride(self, ride_id: str, reason: Optional[str] = None) -> dict:
        with self._action("cancel ride"):
            return self._set_ride(self.api.cancel_ride(ride_id, reason))

    def update_ride(self, ride_id: str, patch: dict) -> dict:
        with self._action("update ride"):
            self.pending_update = PendingLocal(dict(patch))
            try:
                return self._set_ride(self.api.update_ride(ride_id, patch))
            finally:
                self.pending_update = None

    def rate_ride(self, ride_id: str, rating: int, feedback: Optional[str] = None) -> dict:
        with self._action("rate ride"):
            return self._set_ride(self.api.rate_ride(ride_id, rating, feedback))

    def negotiate_price(self, ride_id: str, proposed_fare_cents: int) -> dict:
        with self._action("negotiate price"):
            return self._set_ride(self.api.negotiate_price(ride_id, proposed_fare_cents))

    def respond_to_negotiation(self, ride_id: str, accept: bool) -> dict:
        with self._action("respond to negotiation"):
            return self._set_ride(self.api.respond_to_negotiation(ride_id, accept))

    def update_payment_status(self, ride_id: str, payment_status: str, **kwargs: Any) -> dict:
        with self._action("update payment"):
            return self._set_ride(self.api.update_payment_status(ride_id, payment_status, **kwargs))

    # Queries
    def get_ride(self, ride_id: str) -> dict:
        with self._action("get ride"):
            return self._set_ride(self.api.get_ride(ride_id))

    def refresh_rides(self, **filters: Any) -> list[dict]:
        with self._action("list rides"):
            self.rides, self.rides_meta = self.api.list_rides(**filters)
            return self.rides

    def fetch_available_rides(self, latitude: float, longitude: float, radius: Optional[float] = None, limit: Optional[int] = None) -> list[dict]:
        with self._action("list available rides"):
            self.available_rides = self.api.available_rides(latitude, longitude, radius=radius, limit=limit)
            return self.available_rides

    def fetch_tracking(self, ride_id: str) -> dict:
        with self._action("track ride"):
            self.tracking = self.api.tracking(ride_id)
            self._set_ride(self.tracking["ride"])
            return self.tracking

    def fetch_stats(self, period: str = "week") -> dict:
        with self._action("load stats"):
            self.stats = self.api.stats(period)
            return self.stats


_current_store: ContextVar[RideStore] = ContextVar("ride_store")


@contextmanager
def ride_store_scope(store: RideStore) -> Iterator[RideStore]:
    token = _current_store.set(store)
    try:
        yield store
    finally:
        _current_store.reset(token)


def current_ride_store() -> RideStore:
    """The store bound by the innermost ``ride_store_scope``; LookupError outside one."""
    return _current_store.get()
