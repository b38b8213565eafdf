from fastapi.testclient import TestClient
from sqlalchemy import exc as sa_exc

from ridehail.auth import get_db
from ridehail.main import app
from .utils import auth, create_ride, ride_body, setup_driver


client = TestClient(app)


def test_health():
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json().get("status") == "ok"
    assert r.headers.get("X-Request-ID")


def test_metrics_exposed():
    client.get("/health")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "http_requests_total" in r.text


def test_missing_bearer_is_401():
    r = client.post("/rides?action=create", json=ride_body())
    assert r.status_code == 401
    assert r.json() == {"error": "Missing bearer token", "code": "unauthorized"}


def test_bad_token_is_401():
    r = client.get("/rides", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401
    assert r.json()["code"] == "unauthorized"


def test_full_lifecycle_and_double_rate():
    ha = auth("rider")
    hd = setup_driver(client)

    ride = create_ride(client, ha)
    ride_id = ride["id"]
    assert ride["status"] == "requested"
    assert ride["driver_id"] is None
    assert ride["quoted_fare_cents"] == 2000
    assert ride["payment_status"] == "unpaid"

    r = client.post(f"/rides?action=accept&rideId={ride_id}", headers=hd)
    assert r.status_code == 200, r.text
    accepted = r.json()["data"]
    assert accepted["status"] == "accepted"
    assert accepted["driver_id"]
    assert accepted["accepted_at"]

    r = client.post(f"/rides?action=start&rideId={ride_id}", headers=hd)
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "started"

    r = client.post(f"/rides?action=complete&rideId={ride_id}", headers=hd, json={"paymentMethod": "cash", "distanceKm": 3.2})
    assert r.status_code == 200
    done = r.json()["data"]
    assert done["status"] == "completed"
    assert done["completed_at"]
    assert done["final_fare_cents"] == 2000
    assert done["payment_status"] == "paid"
    assert done["requested_at"] <= done["accepted_at"] <= done["started_at"] <= done["completed_at"]

    r = client.patch(f"/rides?action=rate&rideId={ride_id}", headers=ha, json={"rating": 4, "feedback": "good"})
    assert r.status_code == 200
    assert r.json()["data"]["rating"] == 4
    assert r.json()["data"]["feedback"] == "good"

    r = client.patch(f"/rides?action=rate&rideId={ride_id}", headers=ha, json={"rating": 5})
    assert r.status_code == 409
    assert r.json()["code"] == "conflict"
    r = client.get(f"/rides?rideId={ride_id}", headers=ha)
    assert r.json()["data"]["rating"] == 4


def test_driver_freed_after_completion_can_accept_again():
    hd = setup_driver(client)
    for _ in range(2):
        ha = auth("rider")
        ride_id = create_ride(client, ha)["id"]
        assert client.post(f"/rides?action=accept&rideId={ride_id}", headers=hd).status_code == 200
        assert client.post(f"/rides?action=start&rideId={ride_id}", headers=hd).status_code == 200
        assert client.post(f"/rides?action=complete&rideId={ride_id}", headers=hd).status_code == 200


def test_driver_with_active_ride_cannot_accept_another():
    hd = setup_driver(client)
    first = create_ride(client, auth("rider"))["id"]
    second = create_ride(client, auth("rider"))["id"]
    assert client.post(f"/rides?action=accept&rideId={first}", headers=hd).status_code == 200
    r = client.post(f"/rides?action=accept&rideId={second}", headers=hd)
    assert r.status_code == 409
    assert r.json()["code"] == "conflict"


def test_rider_with_active_ride_cannot_create_another():
    ha = auth("rider")
    create_ride(client, ha)
    r = client.post("/rides?action=create", headers=ha, json=ride_body())
    assert r.status_code == 409
    assert r.json()["error"] == "Rider already has an active ride"


def test_create_accepts_snake_case_and_stops():
    ha = auth("rider")
    body = {
        "origin_latitude": 6.5,
        "origin_longitude": 3.3,
        "origin_address": "A",
        "destination_latitude": 6.6,
        "destination_longitude": 3.4,
        "destination_address": "B",
        "quoted_fare_cents": 1500,
        "seats": 3,
        "stops": [{"lat": 6.55, "lon": 3.35, "address": "Stop 1"}],
    }
    r = client.post("/rides?action=create", headers=ha, json=body)
    assert r.status_code == 201, r.text
    data = r.json()["data"]
    assert data["seats"] == 3
    assert data["stops"] == [{"lat": 6.55, "lon": 3.35, "address": "Stop 1"}]
    assert data["currency"]


def test_create_validation_errors():
    ha = auth("rider")
    r = client.post("/rides?action=create", headers=ha, json=ride_body(lat=123.0))
    assert r.status_code == 400
    assert r.json()["code"] == "validation_error"
    r = client.post("/rides?action=create", headers=ha, json=ride_body(fare_cents=0))
    assert r.status_code == 400
    r = client.post("/rides?action=create", headers=ha, json=ride_body(seats=9))
    assert r.status_code == 400
    body = ride_body()
    body.pop("originAddress")
    r = client.post("/rides?action=create", headers=ha, json=body)
    assert r.status_code == 400


def test_driver_cannot_create_ride():
    hd = setup_driver(client)
    r = client.post("/rides?action=create", headers=hd, json=ride_body())
    assert r.status_code == 403
    assert r.json()["code"] == "forbidden"


def test_unknown_action_is_400():
    ha = auth("rider")
    ride_id = create_ride(client, ha)["id"]
    r = client.post(f"/rides?action=teleport&rideId={ride_id}", headers=ha)
    assert r.status_code == 400
    assert r.json()["code"] == "validation_error"
    # rate is a PATCH action, not a POST one
    r = client.post(f"/rides?action=rate&rideId={ride_id}", headers=ha, json={"rating": 5})
    assert r.status_code == 400
    r = client.post("/rides", headers=ha, json={})
    assert r.status_code == 400


def test_missing_or_malformed_ride_id():
    hd = setup_driver(client)
    r = client.post("/rides?action=accept", headers=hd)
    assert r.status_code == 400
    r = client.post("/rides?action=accept&rideId=nope", headers=hd)
    assert r.status_code == 400
    r = client.post("/rides?action=accept&rideId=00000000-0000-0000-0000-000000000000", headers=hd)
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"


def test_start_before_accept_is_invalid_state():
    ha = auth("rider")
    hd = setup_driver(client)
    ride_id = create_ride(client, ha)["id"]
    r = client.post(f"/rides?action=start&rideId={ride_id}", headers=hd)
    assert r.status_code == 409
    assert r.json()["code"] == "invalid_state"
    assert "requested" in r.json()["error"]
    assert client.get(f"/rides?rideId={ride_id}", headers=ha).json()["data"]["status"] == "requested"


def test_only_assigned_driver_can_start():
    ha = auth("rider")
    hd = setup_driver(client)
    other = setup_driver(client)
    ride_id = create_ride(client, ha)["id"]
    assert client.post(f"/rides?action=accept&rideId={ride_id}", headers=hd).status_code == 200
    r = client.post(f"/rides?action=start&rideId={ride_id}", headers=other)
    assert r.status_code == 403


def test_update_editable_fields():
    ha = auth("rider")
    ride_id = create_ride(client, ha)["id"]
    r = client.put(f"/rides?rideId={ride_id}", headers=ha, json={"notes": "gate 3", "seats": 2})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["notes"] == "gate 3"
    assert data["seats"] == 2
    assert data["status"] == "requested"


def test_update_rejects_forbidden_and_empty():
    ha = auth("rider")
    ride_id = create_ride(client, ha)["id"]
    r = client.put(f"/rides?rideId={ride_id}", headers=ha, json={"status": "completed"})
    assert r.status_code == 400
    r = client.put(f"/rides?rideId={ride_id}", headers=ha, json={"quotedFareCents": 1})
    assert r.status_code == 400
    r = client.put(f"/rides?rideId={ride_id}", headers=ha, json={})
    assert r.status_code == 400
    assert r.json()["error"] == "No valid fields to update"
    data = client.get(f"/rides?rideId={ride_id}", headers=ha).json()["data"]
    assert data["status"] == "requested"
    assert data["quoted_fare_cents"] == 2000


def test_update_by_other_user_forbidden():
    ha = auth("rider")
    ride_id = create_ride(client, ha)["id"]
    r = client.put(f"/rides?rideId={ride_id}", headers=auth("rider"), json={"notes": "x"})
    assert r.status_code == 403


def test_cancel_then_accept_is_invalid_state():
    ha = auth("rider")
    hd = setup_driver(client)
    ride_id = create_ride(client, ha)["id"]
    r = client.post(f"/rides?action=cancel&rideId={ride_id}", headers=ha)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["status"] == "cancelled"
    assert data["cancelled_at"]
    assert data["cancelled_by"] == "rider"
    assert data["cancel_reason"] == "Cancelled by rider"
    assert data["driver_id"] is None
    r = client.post(f"/rides?action=accept&rideId={ride_id}", headers=hd)
    assert r.status_code == 409
    assert r.json()["code"] == "invalid_state"


def test_driver_cancel_keeps_driver_and_frees_them():
    ha = auth("rider")
    hd = setup_driver(client)
    ride_id = create_ride(client, ha)["id"]
    assert client.post(f"/rides?action=accept&rideId={ride_id}", headers=hd).status_code == 200
    r = client.post(f"/rides?action=cancel&rideId={ride_id}", headers=hd, json={"reason": "Flat tyre"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["cancelled_by"] == "driver"
    assert data["cancel_reason"] == "Flat tyre"
    assert data["driver_id"]
    # Free again
    other = create_ride(client, auth("rider"))["id"]
    assert client.post(f"/rides?action=accept&rideId={other}", headers=hd).status_code == 200


def test_cannot_cancel_started_ride():
    ha = auth("rider")
    hd = setup_driver(client)
    ride_id = create_ride(client, ha)["id"]
    client.post(f"/rides?action=accept&rideId={ride_id}", headers=hd)
    client.post(f"/rides?action=start&rideId={ride_id}", headers=hd)
    r = client.post(f"/rides?action=cancel&rideId={ride_id}", headers=ha)
    assert r.status_code == 409
    assert r.json()["code"] == "invalid_state"


def test_payment_guard_on_cancelled_ride():
    ha = auth("rider")
    ride_id = create_ride(client, ha)["id"]
    client.post(f"/rides?action=cancel&rideId={ride_id}", headers=ha)
    r = client.patch(f"/rides?action=update-payment&rideId={ride_id}", headers=ha, json={"paymentStatus": "paid"})
    assert r.status_code == 400
    assert r.json()["code"] == "validation_error"
    assert client.get(f"/rides?rideId={ride_id}", headers=ha).json()["data"]["payment_status"] == "unpaid"
    # Other transitions are not policed
    r = client.patch(f"/rides?action=update-payment&rideId={ride_id}", headers=ha, json={"paymentStatus": "refunded"})
    assert r.status_code == 200
    assert r.json()["data"]["payment_status"] == "refunded"


def test_update_payment_records_reference():
    ha = auth("rider")
    hd = setup_driver(client)
    ride_id = create_ride(client, ha)["id"]
    client.post(f"/rides?action=accept&rideId={ride_id}", headers=hd)
    client.post(f"/rides?action=start&rideId={ride_id}", headers=hd)
    r = client.post(f"/rides?action=complete&rideId={ride_id}", headers=hd, json={"paymentMethod": "card", "finalFareCents": 2500})
    assert r.json()["data"]["payment_status"] == "pending"
    assert r.json()["data"]["final_fare_cents"] == 2500
    r = client.patch(
        f"/rides?action=update-payment&rideId={ride_id}",
        headers=hd,
        json={"paymentStatus": "paid", "paymentReference": "txn-123"},
    )
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["payment_status"] == "paid"
    assert data["payment_reference"] == "txn-123"
    assert data["payment_method"] == "card"


def test_get_ride_visibility():
    ha = auth("rider")
    ride_id = create_ride(client, ha)["id"]
    # Another rider cannot see it
    assert client.get(f"/rides?rideId={ride_id}", headers=auth("rider")).status_code == 403
    # Any driver can see an open ride
    hd = setup_driver(client)
    assert client.get(f"/rides?rideId={ride_id}", headers=hd).status_code == 200


def test_list_rides_with_meta_and_filters():
    ha = auth("rider")
    first = create_ride(client, ha)["id"]
    client.post(f"/rides?action=cancel&rideId={first}", headers=ha)
    second = create_ride(client, ha)["id"]

    r = client.get("/rides", headers=ha)
    assert r.status_code == 200
    body = r.json()
    assert [x["id"] for x in body["data"]] == [second, first]
    assert body["meta"] == {"total": 2, "limit": 20, "offset": 0, "has_more": False}

    r = client.get("/rides?status=cancelled", headers=ha)
    assert [x["id"] for x in r.json()["data"]] == [first]

    r = client.get("/rides?limit=1", headers=ha)
    assert r.json()["meta"]["has_more"] is True
    assert len(r.json()["data"]) == 1

    r = client.get("/rides?limit=1000", headers=ha)
    assert r.status_code == 400
    r = client.get("/rides?status=flying", headers=ha)
    assert r.status_code == 400


class _QueryCanceled(Exception):
    pgcode = "57014"


def _failing_db(exc):
    def _get_db():
        raise exc
        yield
    return _get_db


def test_pool_timeout_is_504():
    app.dependency_overrides[get_db] = _failing_db(sa_exc.TimeoutError("QueuePool limit reached"))
    try:
        r = client.get("/rides/stats", headers=auth("rider"))
    finally:
        app.dependency_overrides.pop(get_db, None)
    assert r.status_code == 504
    assert r.json() == {"error": "Database timed out", "code": "timeout"}


def test_statement_timeout_is_504():
    err = sa_exc.OperationalError("SELECT 1", None, _QueryCanceled("canceling statement due to statement timeout"))
    app.dependency_overrides[get_db] = _failing_db(err)
    try:
        r = TestClient(app, raise_server_exceptions=False).get("/rides/stats", headers=auth("rider"))
    finally:
        app.dependency_overrides.pop(get_db, None)
    assert r.status_code == 504
    assert r.json()["code"] == "timeout"


def test_other_database_error_is_500():
    err = sa_exc.OperationalError("SELECT 1", None, Exception("server closed the connection"))
    app.dependency_overrides[get_db] = _failing_db(err)
    try:
        r = TestClient(app, raise_server_exceptions=False).get("/rides/stats", headers=auth("rider"))
    finally:
        app.dependency_overrides.pop(get_db, None)
    assert r.status_code == 500
    assert r.json() == {"error": "Internal Server Error", "code": "internal_error"}
