import pytest

from trustgate.core.errors import PersistenceError

pytestmark = pytest.mark.integration

LAPTOP_HEADERS = {
    "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/121.0",
    "Sec-CH-UA-Platform": '"Linux"',
    "Accept-Language": "en-US",
    "X-Screen-Resolution": "1920x1080",
    "X-Timezone": "Europe/Berlin",
}

PHONE_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Linux; Android 14) Chrome/120.0 Mobile",
    "Sec-CH-UA-Platform": '"Android"',
    "Accept-Language": "de-DE",
    "X-Screen-Resolution": "412x915",
    "X-Pixel-Ratio": "2.6",
    "X-Max-Touch-Points": "5",
    "X-Timezone": "Europe/Berlin",
}


def _as(user_id, headers=None):
    merged = dict(headers or {})
    merged["X-Test-User"] = user_id
    return merged


@pytest.fixture()
def pending_request(client, alice, admin):
    client.post("/api/auth/device-check", headers=_as("u-alice", LAPTOP_HEADERS))
    response = client.post(
        "/api/auth/request-device-change",
        json={"reason": "New phone"},
        headers=_as("u-alice", PHONE_HEADERS),
    )
    assert response.status_code == 201
    return response.get_json()["data"]["requestId"]


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.get_json()["status"] == "healthy"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_missing_identity_is_401(client):
    response = client.post("/api/auth/device-check", headers=LAPTOP_HEADERS)
    assert response.status_code == 401
    assert response.get_json()["success"] is False


def test_device_check_flow(client, alice):
    first = client.post("/api/auth/device-check", headers=_as("u-alice", LAPTOP_HEADERS))
    assert first.status_code == 200
    assert first.get_json()["data"]["decision"] == "AUTO_REGISTER"

    again = client.post("/api/auth/device-check", headers=_as("u-alice", LAPTOP_HEADERS))
    assert again.get_json()["data"]["decision"] == "LOGIN_OK"

    blocked = client.post("/api/auth/device-check", headers=_as("u-alice", PHONE_HEADERS))
    body = blocked.get_json()
    assert blocked.status_code == 403
    assert body["success"] is False
    assert body["data"]["requiresDeviceAction"] is True
    assert body["data"]["newDeviceInfo"]["platform"] == "Android"
    assert body["data"]["currentDeviceInfo"]["platform"] == "Linux"


def test_ip_change_is_reported(client, alice):
    client.post(
        "/api/auth/device-check",
        headers=_as("u-alice", LAPTOP_HEADERS),
        environ_base={"REMOTE_ADDR": "10.0.0.1"},
    )
    moved = dict(LAPTOP_HEADERS, **{"X-Timezone": "America/New_York"})
    response = client.post(
        "/api/auth/device-check",
        headers=_as("u-alice", moved),
        environ_base={"REMOTE_ADDR": "10.9.9.9"},
    )
    data = response.get_json()["data"]
    assert response.status_code == 200
    assert data["decision"] == "IP_REBIND"
    assert data["ipChangeDetected"] is True
    assert data["similarity"] == 90.0


def test_duplicate_request_is_409(client, pending_request):
    response = client.post(
        "/api/auth/request-device-change",
        json={},
        headers=_as("u-alice", PHONE_HEADERS),
    )
    assert response.status_code == 409
    assert response.get_json()["message"] == "Device change request already exists for this device."


def test_reason_too_long_is_400(client, alice):
    response = client.post(
        "/api/auth/request-device-change",
        json={"reason": "x" * 600},
        headers=_as("u-alice", PHONE_HEADERS),
    )
    assert response.status_code == 400


def test_my_requests(client, pending_request):
    response = client.get("/api/auth/my-requests", headers=_as("u-alice"))
    requests = response.get_json()["data"]["requests"]
    assert [r["id"] for r in requests] == [pending_request]
    assert requests[0]["reason"] == "New phone"


def test_admin_routes_require_admin(client, pending_request):
    for path in ("/api/admin/requests", "/api/admin/dashboard", f"/api/admin/requests/{pending_request}"):
        assert client.get(path, headers=_as("u-alice")).status_code == 403
        assert client.get(path).status_code == 401
    assert client.get("/api/admin/requests", headers=_as("u-ghost")).status_code == 401


def test_admin_list_and_detail(client, pending_request):
    listing = client.get("/api/admin/requests", headers=_as("u-admin")).get_json()["data"]
    assert listing["pagination"] == {"current": 1, "pages": 1, "total": 1}
    assert listing["requests"][0]["id"] == pending_request

    approved = client.get("/api/admin/requests?status=approved", headers=_as("u-admin")).get_json()
    assert approved["data"]["requests"] == []

    bad = client.get("/api/admin/requests?limit=abc", headers=_as("u-admin"))
    assert bad.status_code == 400

    detail = client.get(f"/api/admin/requests/{pending_request}", headers=_as("u-admin"))
    assert detail.get_json()["data"]["request"]["status"] == "pending"

    missing = client.get("/api/admin/requests/nope", headers=_as("u-admin"))
    assert missing.status_code == 404


def test_approve_then_login_from_new_device(client, pending_request):
    response = client.post(
        f"/api/admin/requests/{pending_request}/approve",
        json={"adminNotes": "Verified"},
        headers=_as("u-admin"),
    )
    assert response.status_code == 200
    assert response.get_json()["data"]["request"]["adminNotes"] == "Verified"

    check = client.post("/api/auth/device-check", headers=_as("u-alice", PHONE_HEADERS))
    assert check.get_json()["data"]["decision"] == "LOGIN_OK"

    again = client.post(f"/api/admin/requests/{pending_request}/reject", headers=_as("u-admin"))
    assert again.status_code == 409
    assert again.get_json()["message"] == "Request has already been processed."


def test_reject(client, pending_request):
    response = client.post(
        f"/api/admin/requests/{pending_request}/reject",
        json={"adminNotes": "Unknown", "reason": "Suspicious"},
        headers=_as("u-admin"),
    )
    request = response.get_json()["data"]["request"]
    assert request["status"] == "rejected"
    assert request["reason"] == "Suspicious"


def test_dashboard(client, pending_request):
    data = client.get("/api/admin/dashboard", headers=_as("u-admin")).get_json()["data"]
    assert data["stats"]["pendingRequests"] == 1
    assert data["stats"]["totalUsers"] == 2
    assert data["recentRequests"][0]["id"] == pending_request


def test_non_object_body_is_400(client, pending_request):
    response = client.post(
        f"/api/admin/requests/{pending_request}/approve",
        json=["notes"],
        headers=_as("u-admin"),
    )
    assert response.status_code == 400


def test_unknown_route_is_json_404(client):
    response = client.get("/api/nothing")
    assert response.status_code == 404
    assert response.get_json()["success"] is False


def test_store_outage_is_503(client, service, alice, monkeypatch):
    def unavailable(*args, **kwargs):
        raise PersistenceError("Trust store unavailable: disk I/O error")

    monkeypatch.setattr(service, "check_login", unavailable)
    response = client.post("/api/auth/device-check", headers=_as("u-alice", LAPTOP_HEADERS))
    assert response.status_code == 503


def test_deactivated_account_gets_401(client, service, pending_request):
    service.set_user_status("u-alice", False, "u-admin")

    change = client.post(
        "/api/auth/request-device-change",
        json={"reason": "Another phone"},
        headers=_as("u-alice", dict(PHONE_HEADERS, **{"X-Timezone": "Asia/Tokyo"})),
    )
    assert change.status_code == 401
    assert change.get_json()["message"] == "Invalid token or user not found."
    assert client.get("/api/auth/my-requests", headers=_as("u-alice")).status_code == 401
    assert client.post("/api/auth/device-check", headers=_as("u-alice", LAPTOP_HEADERS)).status_code == 401

    approve = client.post(f"/api/admin/requests/{pending_request}/approve", headers=_as("u-admin"))
    assert approve.status_code == 403
    assert service.get_request(pending_request).is_pending()


def test_me(client, alice):
    client.post("/api/auth/device-check", headers=_as("u-alice", LAPTOP_HEADERS))
    user = client.get("/api/auth/me", headers=_as("u-alice")).get_json()["data"]["user"]
    assert user["username"] == "alice"
    assert user["role"] == "user"
    assert user["registeredDevices"] == 1
    assert client.get("/api/auth/me").status_code == 401


def test_login_time_change_request(client, alice):
    client.post("/api/auth/device-check", headers=_as("u-alice", LAPTOP_HEADERS))
    headers = dict(PHONE_HEADERS, **{"X-Test-Login": "u-alice"})

    response = client.post("/api/auth/request-device-change-unauth", json={}, headers=headers)
    assert response.status_code == 201
    request_id = response.get_json()["data"]["requestId"]

    mine = client.get("/api/auth/my-requests", headers=_as("u-alice")).get_json()["data"]["requests"]
    assert mine[0]["id"] == request_id
    assert mine[0]["reason"] == "Login attempt from new device"

    denied = client.post("/api/auth/request-device-change-unauth", json={}, headers=PHONE_HEADERS)
    assert denied.status_code == 401
    assert denied.get_json()["message"] == "Invalid credentials."


def test_login_time_change_request_for_inactive_account(client, service, alice, admin):
    service.set_user_status("u-alice", False, "u-admin")
    headers = dict(PHONE_HEADERS, **{"X-Test-Login": "u-alice"})
    response = client.post("/api/auth/request-device-change-unauth", json={}, headers=headers)
    assert response.status_code == 401
    assert service.list_requests(status="all").total == 0


def test_admin_users(client, pending_request):
    listing = client.get("/api/admin/users?limit=1", headers=_as("u-admin")).get_json()["data"]
    assert listing["pagination"] == {"current": 1, "pages": 2, "total": 2}
    assert len(listing["users"]) == 1

    details = client.get("/api/admin/users/u-alice", headers=_as("u-admin")).get_json()["data"]
    assert details["user"]["email"] == "alice@example.com"
    assert details["user"]["devices"][0]["deviceInfo"]["platform"] == "Linux"
    assert details["recentRequests"][0]["id"] == pending_request

    assert client.get("/api/admin/users/ghost", headers=_as("u-admin")).status_code == 404
    assert client.get("/api/admin/users", headers=_as("u-alice")).status_code == 403


def test_toggle_status(client, alice, admin):
    response = client.post(
        "/api/admin/users/u-alice/toggle-status",
        json={"isActive": False},
        headers=_as("u-admin"),
    )
    body = response.get_json()
    assert response.status_code == 200
    assert body["message"] == "User deactivated successfully."
    assert body["data"]["user"] == {"id": "u-alice", "username": "alice", "isActive": False}

    bad = client.post(
        "/api/admin/users/u-alice/toggle-status", json={"isActive": "yes"}, headers=_as("u-admin"),
    )
    assert bad.status_code == 400

    restored = client.post(
        "/api/admin/users/u-alice/toggle-status", json={"isActive": True}, headers=_as("u-admin"),
    )
    assert restored.get_json()["message"] == "User activated successfully."
    assert client.get("/api/auth/me", headers=_as("u-alice")).status_code == 200


def test_request_history(client, service, pending_request):
    service.reject_request(pending_request, "u-admin")

    history = client.get("/api/admin/requests/history", headers=_as("u-admin")).get_json()["data"]
    assert [r["id"] for r in history["requests"]] == [pending_request]
    assert history["requests"][0]["status"] == "rejected"

    filtered = client.get(
        "/api/admin/requests/history?userId=u-admin", headers=_as("u-admin"),
    ).get_json()["data"]
    assert filtered["requests"] == []
    assert filtered["pagination"]["total"] == 0
