import os
import sys
import threading
from uuid import uuid4

from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from autocare.main import app
from autocare.models import OrderLocation
from autocare.services.order_lifecycle import order_lifecycle
from autocare.services.provider_catalog import provider_catalog

client = TestClient(app)


def _signup(role: str = "customer", email: str = "") -> dict:
    response = client.post(
        "/auth/signup",
        json={
            "email": email or f"{role}_{uuid4().hex[:8]}@example.com",
            "password": "correct-horse",
            "full_name": f"Test {role.title()}",
            "role": role,
        },
    )
    assert response.status_code == 200
    payload = response.json()
    return {"user_id": payload["account"]["id"], "headers": {"Authorization": f"Bearer {payload['access_token']}"}}


ADMIN_EMAIL = "admin@autocare.test"


def _admin_headers() -> dict:
    login = client.post("/auth/login", json={"email": ADMIN_EMAIL, "password": "correct-horse"})
    if login.status_code == 401:
        return _signup(email=ADMIN_EMAIL)["headers"]
    assert login.status_code == 200
    return {"Authorization": f"Bearer {login.json()['access_token']}"}


def _approved_provider(owner: dict, latitude: float = 19.0596, longitude: float = 72.8295) -> str:
    created = client.post(
        "/providers",
        json={
            "name": f"Shine {uuid4().hex[:6]}",
            "kind": "company",
            "city": "Mumbai",
            "latitude": latitude,
            "longitude": longitude,
            "service_prices": {"basic_wash": 49900},
        },
        headers=owner["headers"],
    )
    assert created.status_code == 200
    provider_id = created.json()["id"]
    provider_catalog.decide_approval(provider_id=provider_id, decision="approved")
    return provider_id


def _order_payload(**overrides) -> dict:
    payload = {
        "service_type": "basic_wash",
        "location": {"latitude": 19.1197, "longitude": 72.8468, "address": "12 Link Road", "city": "Mumbai"},
        "scheduled_date": "2026-11-02",
        "scheduled_time": "10:30",
        "vehicle_description": "White Honda City",
    }
    payload.update(overrides)
    return payload


def test_health_ok():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_ready_reports_store_and_push():
    response = client.get("/ready")
    assert response.status_code == 200
    payload = response.json()
    assert payload["store"] == "ok"
    assert payload["push_configured"] is False


def test_auth_signup_login_me_logout():
    email = f"login_{uuid4().hex[:8]}@example.com"
    _signup(email=email)

    bad = client.post("/auth/login", json={"email": email, "password": "wrong-password"})
    assert bad.status_code == 401

    login = client.post("/auth/login", json={"email": email, "password": "correct-horse"})
    assert login.status_code == 200
    headers = {"Authorization": f"Bearer {login.json()['access_token']}"}

    me = client.get("/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["account"]["email"] == email

    assert client.post("/auth/logout", headers=headers).status_code == 200
    assert client.get("/auth/me", headers=headers).status_code == 401


def test_protected_routes_need_a_token():
    assert client.get("/orders").status_code == 401
    assert client.get("/orders", headers={"Authorization": "Bearer forged.token"}).status_code == 401


def test_customer_cannot_register_provider():
    customer = _signup()
    response = client.post(
        "/providers", json={"name": "Nope", "kind": "company", "city": "Mumbai"}, headers=customer["headers"]
    )
    assert response.status_code == 403


def test_provider_search_sorted_by_distance():
    owner = _signup("provider")
    near = _approved_provider(owner, latitude=19.1197, longitude=72.8468)
    far = _approved_provider(owner, latitude=19.0596, longitude=72.8295)

    response = client.get(
        "/providers/search",
        params={"service_type": "basic_wash", "latitude": 19.1197, "longitude": 72.8468, "radius_km": 20},
    )
    assert response.status_code == 200
    ids = [match["provider"]["id"] for match in response.json()]
    assert ids.index(near) < ids.index(far)
    distances = [match["distance_km"] for match in response.json()]
    assert distances == sorted(distances)

    invalid = client.get(
        "/providers/search", params={"service_type": "basic_wash", "latitude": 123.0, "longitude": 72.8}
    )
    assert invalid.status_code == 400


def test_order_validation_and_visibility():
    customer = _signup()
    stranger = _signup()

    bad = client.post("/orders", json=_order_payload(scheduled_time="half past ten"), headers=customer["headers"])
    assert bad.status_code == 400

    created = client.post("/orders", json=_order_payload(), headers=customer["headers"])
    assert created.status_code == 200
    order_id = created.json()["id"]

    assert client.get(f"/orders/{order_id}", headers=customer["headers"]).status_code == 200
    assert client.get(f"/orders/{order_id}", headers=stranger["headers"]).status_code == 403
    assert client.get("/orders/ord_missing", headers=customer["headers"]).status_code == 404
    listed = client.get("/orders", headers=customer["headers"])
    assert [order["id"] for order in listed.json()] == [order_id]


def test_second_acceptance_conflicts():
    customer = _signup()
    owner = _signup("provider")
    first = _approved_provider(owner)
    second = _approved_provider(owner)
    order_id = client.post("/orders", json=_order_payload(), headers=customer["headers"]).json()["id"]

    quote_ids = []
    for provider_id in (first, second):
        response = client.post(
            f"/orders/{order_id}/quotes",
            json={"provider_id": provider_id, "quoted_price": 45000, "estimated_duration_minutes": 40},
            headers=owner["headers"],
        )
        assert response.status_code == 200
        quote_ids.append(response.json()["id"])

    duplicate = client.post(
        f"/orders/{order_id}/quotes",
        json={"provider_id": first, "quoted_price": 44000, "estimated_duration_minutes": 40},
        headers=owner["headers"],
    )
    assert duplicate.status_code == 409

    assert client.post(f"/quotes/{quote_ids[0]}/accept", headers=owner["headers"]).status_code == 403
    accepted = client.post(
        f"/quotes/{quote_ids[0]}/accept", headers={**customer["headers"], "Idempotency-Key": "accept-1"}
    )
    assert accepted.status_code == 200
    replay = client.post(
        f"/quotes/{quote_ids[0]}/accept", headers={**customer["headers"], "Idempotency-Key": "accept-1"}
    )
    assert replay.status_code == 200
    assert replay.json() == accepted.json()

    conflict = client.post(f"/quotes/{quote_ids[1]}/accept", headers=customer["headers"])
    assert conflict.status_code == 409


def test_admin_routes_require_admin_role():
    customer = _signup()
    assert client.get("/admin/stats", headers=customer["headers"]).status_code == 403

    stats = client.get("/admin/stats", headers=_admin_headers())
    assert stats.status_code == 200
    assert set(stats.json()["providers_by_status"]) == {"pending", "approved", "rejected"}


def test_admin_approves_pending_provider():
    owner = _signup("provider")
    admin_headers = _admin_headers()
    created = client.post(
        "/providers",
        json={"name": "Pending Shop", "kind": "mechanic", "city": "Thane", "service_prices": {"general_service": 1}},
        headers=owner["headers"],
    )
    provider_id = created.json()["id"]

    pending = client.get("/admin/providers", params={"approval_status": "pending"}, headers=admin_headers)
    assert provider_id in {p["id"] for p in pending.json()}

    decided = client.post(
        f"/admin/providers/{provider_id}/approval", json={"decision": "approved"}, headers=admin_headers
    )
    assert decided.status_code == 200
    assert decided.json()["approval_status"] == "approved"
    again = client.post(
        f"/admin/providers/{provider_id}/approval", json={"decision": "rejected"}, headers=admin_headers
    )
    assert again.status_code == 409


def test_notifications_are_scoped_to_recipient():
    customer = _signup()
    other = _signup()
    owner = _signup("provider")
    provider_id = _approved_provider(owner)
    order_id = client.post("/orders", json=_order_payload(), headers=customer["headers"]).json()["id"]
    client.post(
        f"/orders/{order_id}/quotes",
        json={"provider_id": provider_id, "quoted_price": 45000, "estimated_duration_minutes": 40},
        headers=owner["headers"],
    )

    inbox = client.get("/notifications", headers=customer["headers"]).json()
    assert inbox[0]["title"] == "New quote received"
    notification_id = inbox[0]["id"]

    assert client.post(f"/notifications/{notification_id}/read", headers=other["headers"]).status_code == 404
    marked = client.post(f"/notifications/{notification_id}/read", headers=customer["headers"])
    assert marked.json()["is_read"] is True
    assert client.get("/notifications", params={"provider_id": provider_id}, headers=other["headers"]).status_code == 403


def test_event_stream_delivers_published_events():
    customer = _signup()
    blocked = client.get("/events/stream", params={"table": "orders"}, headers=customer["headers"])
    assert blocked.status_code == 403

    created = []

    def place_order():
        created.append(
            order_lifecycle.create_order(
                customer_id=customer["user_id"],
                service_type="basic_wash",
                location=OrderLocation(latitude=19.1197, longitude=72.8468, address="12 Link Road", city="Mumbai"),
                scheduled_date="2026-11-02",
                scheduled_time="10:30",
                vehicle_description="White Honda City",
            )
        )

    timer = threading.Timer(0.3, place_order)
    timer.start()
    with client.stream(
        "GET",
        "/events/stream",
        params={
            "table": "orders",
            "column": "customer_id",
            "value": customer["user_id"],
            "max_events": 1,
            "timeout_seconds": 5,
        },
        headers=customer["headers"],
    ) as response:
        assert response.status_code == 200
        body = "".join(response.iter_text())
    timer.join()

    assert created
    assert f'"entity_id": "{created[0].id}"' in body
    assert '"kind": "OrderCreated"' in body
    assert body.endswith("data: [DONE]\n\n")


def test_event_stream_only_shows_own_rows():
    customer = _signup()
    stranger = _signup()
    owner = _signup(role="provider")
    rival = _signup(role="provider")
    rival_provider = _approved_provider(rival)
    order_id = client.post("/orders", json=_order_payload(), headers=customer["headers"]).json()["id"]

    def stream(headers, **params):
        params.update(max_events=1, timeout_seconds=0.2)
        return client.get("/events/stream", params=params, headers=headers)

    assert stream(stranger["headers"], table="orders", column="customer_id", value=customer["user_id"]).status_code == 403
    assert stream(stranger["headers"], table="orders", column="id", value=order_id).status_code == 403
    assert stream(stranger["headers"], table="orders", column="status", value="pending").status_code == 403
    assert stream(owner["headers"], table="quotes", column="provider_id", value=rival_provider).status_code == 403
    assert stream(owner["headers"], table="quotes", column="order_id", value=order_id).status_code == 403

    assert stream(customer["headers"], table="quotes", column="order_id", value=order_id).status_code == 200
    assert stream(rival["headers"], table="quotes", column="provider_id", value=rival_provider).status_code == 200
