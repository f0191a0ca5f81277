import time

import pytest
from fastapi.testclient import TestClient

from bookingdesk import app as app_module
from bookingdesk.service.mfa import generate_totp
from bookingdesk.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def account():
    """Create a console account on the live runtime."""

    def _create(email, password="Password123", role="admin"):
        runtime = get_runtime()
        user = runtime.auth.create_identity(email, password)
        if role:
            runtime.store.add_role(user.id, role)
            runtime.store.upsert_admin_profile(user.id)
        return user

    return _create


def _login(client, email, password="Password123"):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _signed_in_headers(client, email):
    resp = _login(client, email)
    assert resp.status_code == 200, resp.text
    data = resp.json()["data"]
    assert data["step"] == "authenticated"
    return {"session_id": data["session_id"]}


def test_healthz(client):
    resp = client.get("/healthz")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"]["status"] == "not_configured"


def test_request_id_is_echoed(client):
    resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})

    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_admin_login_and_console_bookings(client, account):
    account("agent@example.com")
    get_runtime().store.insert_record(
        "bookings",
        {
            "id": "b1",
            "customer_name": "Ayu",
            "payment_status": "paid",
            "total_price": "350000",
            "created_at": "2024-05-01T10:00:00+00:00",
        },
    )
    headers = _signed_in_headers(client, "agent@example.com")

    resp = client.get("/v1/console/bookings", headers=headers)

    assert resp.status_code == 200
    assert resp.headers["Cache-Control"].startswith("no-store")
    view = resp.json()["data"]
    assert [b["id"] for b in view["bookings"]] == ["b1"]
    assert view["stats"]["paid"] == 1
    assert view["stats"]["total"] == 1

    get_runtime().store.insert_record(
        "bookings", {"id": "b2", "created_at": "2024-05-02T10:00:00+00:00"}
    )
    view = client.get("/v1/console/bookings", headers=headers).json()["data"]
    assert [b["id"] for b in view["bookings"]] == ["b2", "b1"]


def test_bad_credentials(client, account):
    account("agent@example.com")

    resp = _login(client, "agent@example.com", "wrong-password")

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "invalid_credentials"


def test_identity_without_role_is_rejected(client, account):
    account("customer@example.com", role=None)

    resp = _login(client, "customer@example.com")

    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "insufficient_privilege"
    assert len(get_runtime().logins) == 0


def test_malformed_login_body(client):
    resp = client.post("/v1/auth/login", json={"email": "not-an-email", "password": "x"})

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_super_admin_forced_enrollment(client, account):
    account("owner@example.com", role="super_admin")

    resp = _login(client, "owner@example.com")
    data = resp.json()["data"]
    assert data["step"] == "awaiting_mfa_enroll"
    assert data["enrollment"]["qr_payload"].startswith("otpauth://totp/")
    headers = {"session_id": data["session_id"]}

    denied = client.get("/v1/console/bookings", headers=headers)
    assert denied.status_code == 401

    bad = client.post("/v1/auth/mfa/enroll/verify", json={"code": "12345"}, headers=headers)
    assert bad.status_code == 400

    code = generate_totp(data["enrollment"]["secret"], time.time())
    resp = client.post("/v1/auth/mfa/enroll/verify", json={"code": code}, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["data"]["step"] == "authenticated"
    assert client.get("/v1/console/bookings", headers=headers).status_code == 200


def test_admin_user_management_requires_super_admin(client, account):
    account("agent@example.com")
    headers = _signed_in_headers(client, "agent@example.com")

    listing = client.get("/v1/admin/users", headers=headers)
    assert listing.status_code == 200
    assert [a["email"] for a in listing.json()["data"]["items"]] == ["agent@example.com"]

    resp = client.post(
        "/v1/admin/users",
        json={"email": "new@example.com", "password": "secret1"},
        headers=headers,
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"

    # The caller is still signed in after the refusal
    assert client.get("/v1/console/bookings", headers=headers).status_code == 200


def test_console_requires_session(client):
    resp = client.get("/v1/console/bookings")

    assert resp.status_code == 401
    assert resp.json()["status"] == "error"


def test_logout_ends_console_access(client, account):
    account("agent@example.com")
    headers = _signed_in_headers(client, "agent@example.com")
    assert client.get("/v1/console/bookings", headers=headers).status_code == 200

    resp = client.post("/v1/auth/logout", headers=headers)

    assert resp.status_code == 200
    assert client.get("/v1/console/bookings", headers=headers).status_code == 401
    assert get_runtime().store.subscriber_count("bookings") == 0


def test_site_banners(client):
    get_runtime().store.insert_record(
        "banners", {"id": "hero", "title": "Mudik 2024", "is_active": True, "display_order": 1}
    )

    resp = client.get("/v1/site/banners")

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["resource"] == "banners"
    assert [item["id"] for item in data["items"]] == ["hero"]
    assert "Cache-Control" not in resp.headers


def test_unknown_site_resource(client):
    resp = client.get("/v1/site/secrets")

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"
