from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional
import logging
import os

import httpx

from ..env import env_float
from ..errors import ERRORS_BY_CODE, InternalError, InvalidStateError, RideError, RideTimeoutError


logger = logging.getLogger("ridehail.client")


@dataclass
class ClientSettings:
    base_url: str
    token: str = ""
    timeout: float = 10.0

    @classmethod
    def from_env(cls) -> "ClientSettings":
        return cls(
            base_url=os.getenv("RIDES_API_BASE_URL", "http://localhost:8090"),
            token=os.getenv("RIDES_API_TOKEN", ""),
            timeout=env_float("RIDES_API_TIMEOUT", 10.0),
        )


def error_from_response(resp: httpx.Response) -> RideError:
    """Rebuild the server's typed error from an ``{error, code}`` body."""
    try:
        body = resp.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        return InternalError(f"HTTP {resp.status_code}")
    message = str(body.get("error") or f"HTTP {resp.status_code}")
    code = body.get("code")
    if code == InvalidStateError.code:
        return InvalidStateError(message=message)
    cls = ERRORS_BY_CODE.get(code)
    if cls is None:
        return InternalError(message)
    return cls(message)


class RideApiClient:
    """Thin HTTP client for the rides API.

    ``http`` may be any httpx-compatible client (tests pass a FastAPI
    ``TestClient``); otherwise one is built from ``settings``.
    """

    def __init__(self, settings: Optional[ClientSettings] = None, http: Optional[httpx.Client] = None, token: Optional[str] = None):
        self.settings = settings or ClientSettings.from_env()
        self.token = token if token is not None else self.settings.token
        self._http = http or httpx.Client(base_url=self.settings.base_url, timeout=self.settings.timeout)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "RideApiClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _request(self, method: str, path: str, params: Optional[dict] = None, json: Any = None) -> dict:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        params = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            resp = self._http.request(method, path, params=params, json=json, headers=headers, timeout=self.settings.timeout)
        except httpx.TimeoutException as e:
            raise RideTimeoutError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise InternalError(f"{method} {path} failed: {e}") from e
        if resp.status_code >= 400:
            err = error_from_response(resp)
            logger.info("%s %s -> %s %s", method, path, resp.status_code, err.code)
            raise err
        return resp.json()

    def _action(self, method: str, action: Optional[str], ride_id: Optional[str] = None, body: Optional[dict] = None) -> dict:
        params = {"action": action, "rideId": ride_id}
        return self._request(method, "/rides", params=params, json=body)["data"]

    # Lifecycle
    def create_ride(self, data: dict) -> dict:
        return self._action("POST", "create", body=data)

    def accept_ride(self, ride_id: str) -> dict:
        return self._action("POST", "accept", ride_id)

    def start_ride(self, ride_id: str) -> dict:
        return self._action("POST", "start", ride_id)

    def complete_ride(self, ride_id: str, data: Optional[dict] = None) -> dict:
        return self._action("POST", "complete", ride_id, data or {})

    def cancel_ride(self, ride_id: str, reason: Optional[str] = None) -> dict:
        return self._action("POST", "cancel", ride_id, {"reason": reason} if reason else {})

    def update_ride(self, ride_id: str, patch: dict) -> dict:
        return self._action("PUT", None, ride_id, patch)

    def rate_ride(self, ride_id: str, rating: int, feedback: Optional[str] = None) -> dict:
        body: dict = {"rating": rating}
        if feedback is not None:
            body["feedback"] = feedback
        return self._action("PATCH", "rate", ride_id, body)

    def negotiate_price(self, ride_id: str, proposed_fare_cents: int) -> dict:
        return self._action("PATCH", "negotiate", ride_id, {"proposedFareCents": proposed_fare_cents})

    def respond_to_negotiation(self, ride_id: str, accept: bool) -> dict:
        return self._action("PATCH", "respond-negotiation", ride_id, {"accept": accept})

    def update_payment_status(self, ride_id: str, payment_status: str, payment_method: Optional[str] = None, payment_reference: Optional[str] = None) -> dict:
        body = {"paymentStatus": payment_status, "paymentMethod": payment_method, "paymentReference": payment_reference}
        return self._action("PATCH", "update-payment", ride_id, {k: v for k, v in body.items() if v is not None})

    # Queries
    def get_ride(self, ride_id: str) -> dict:
        return self._request("GET", "/rides", params={"rideId": ride_id})["data"]

    def list_rides(self, status: Optional[str] = None, date_from: Optional[str] = None, date_to: Optional[str] = None, limit: Optional[int] = None, offset: Optional[int] = None) -> tuple[list[dict], dict]:
        params = {"status": status, "dateFrom": date_from, "dateTo": date_to, "limit": limit, "offset": offset}
        body = self._request("GET", "/rides", params=params)
        return body["data"], body.get("meta") or {}

    def available_rides(self, latitude: float, longitude: float, radius: Optional[float] = None, limit: Optional[int] = None) -> list[dict]:
        params = {"latitude": latitude, "longitude": longitude, "radius": radius, "limit": limit}
        return self._request("GET", "/rides/available", params=params)["data"]

    def tracking(self, ride_id: str) -> dict:
        return self._request("GET", "/rides/tracking", params={"rideId": ride_id})["data"]

    def stats(self, period: str = "week") -> dict:
        return self._request("GET", "/rides/stats", params={"period": period})["data"]
