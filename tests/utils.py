import uuid

from ridehail.auth import create_access_token


def unique_subject(prefix: str) -> str:
    """Return a unique token subject so tests never share riders or drivers."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def auth(prefix: str = "rider", role: str = "rider") -> dict:
    token = create_access_token(unique_subject(prefix), role=role)
    return {"Authorization": f"Bearer {token}"}


def setup_driver(client, lat: float = 6.5244, lon: float = 3.3792) -> dict:
    h = auth("driver")
    r = client.post("/driver/apply", headers=h, json={"vehicle_make": "Toyota", "vehicle_plate": "TST"})
    assert r.status_code == 200
    assert client.put("/driver/status", headers=h, json={"status": "available"}).status_code == 200
    assert client.put("/driver/location", headers=h, json={"lat": lat, "lon": lon}).status_code == 200
    return h


def ride_body(lat: float = 6.5244, lon: float = 3.3792, fare_cents: int = 2000, **extra) -> dict:
    body = {
        "originLatitude": lat,
        "originLongitude": lon,
        "originAddress": "Point A",
        "destinationLatitude": lat + 0.02,
        "destinationLongitude": lon + 0.02,
        "destinationAddress": "Point B",
        "quotedFareCents": fare_cents,
    }
    body.update(extra)
    return body


def create_ride(client, headers: dict, **kwargs) -> dict:
    r = client.post("/rides?action=create", headers=headers, json=ride_body(**kwargs))
    assert r.status_code == 201, r.text
    return r.json()["data"]
