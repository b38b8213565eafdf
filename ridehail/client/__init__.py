from .api import ClientSettings, RideApiClient
from .store import (
    ConfirmedRemote,
    PendingLocal,
    RequestInFlightError,
    RideStore,
    current_ride_store,
    ride_store_scope,
)

__all__ = [
    "ClientSettings",
    "RideApiClient",
    "ConfirmedRemote",
    "PendingLocal",
    "RequestInFlightError",
    "RideStore",
    "current_ride_store",
    "ride_store_scope",
]
