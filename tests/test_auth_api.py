"""
HTTP tests for the /api/auth routes.
"""

import pytest
from aiohttp.test_utils import TestClient
from aiohttp.test_utils import TestServer as AiohttpTestServer

from orgadmin.auth import audit
from orgadmin.auth.models import Principal
from orgadmin.server import create_app


pytestmark = pytest.mark.asyncio


async def login(client, username="alice", password="Secret123", device_id=None):
    body = {"username": username, "password": password}
    if device_id:
        body["deviceInfo"] = {"id": device_id}
    return await client.post("/api/auth/login", json=body)


async def login_token(client, username="alice", password="Secret123", device_id=None):
    resp = await login(client, username, password, device_id)
    assert resp.status == 200
    data = (await resp.json())["data"]
    return data["tokens"]["accessToken"], data


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin(db, manager):
    db.create_principal(Principal(user_id="u-admin", name="Admin", organization_id="org-1", role_code="ROLE_ADMIN"))
    manager.register_credentials("u-admin", "admin", "AdminPass1")
    return "u-admin"


class TestLogin:
    """Test POST /login."""

    async def test_success_envelope_and_cookies(self, client, create_user):
        create_user()
        resp = await login(client, device_id="laptop")
        body = await resp.json()

        assert resp.status == 200
        assert body["success"] is True
        assert body["statusCode"] == 200
        assert body["message"] == "Login successful"
        assert body["data"]["device"] == {"deviceId": "laptop", "loginCount": 1}
        assert body["data"]["session"]["isLoggedIn"] is True

        access_cookie = resp.cookies["accessToken"]
        assert access_cookie.value == body["data"]["tokens"]["accessToken"]
        assert access_cookie["httponly"]
        assert access_cookie["samesite"] == "Strict"
        assert access_cookie["max-age"] == str(15 * 60)
        assert resp.cookies["refreshToken"]["max-age"] == str(7 * 24 * 60 * 60)

    async def test_bad_credentials(self, client, create_user):
        create_user()
        resp = await login(client, password="WrongPass1")
        body = await resp.json()

        assert resp.status == 401
        assert body == {
            "success": False,
            "statusCode": 401,
            "error": "unauthorized",
            "message": "Invalid username or password",
            "details": {},
        }

    async def test_lockout_returns_423(self, client, create_user):
        create_user()
        for _ in range(5):
            await login(client, password="WrongPass1")

        resp = await login(client)
        body = await resp.json()

        assert resp.status == 423
        assert body["message"] == "Account is locked. Try again in 60 seconds"
        assert body["details"] == {"permanent": False, "remainingSeconds": 60}

    async def test_missing_username(self, client):
        resp = await client.post("/api/auth/login", json={"password": "Secret123"})
        assert resp.status == 400
        assert (await resp.json())["message"] == "Username is required"

    async def test_malformed_json(self, client):
        resp = await client.post("/api/auth/login", data="{not json", headers={"Content-Type": "application/json"})
        assert resp.status == 400
        assert (await resp.json())["error"] == "validation_error"

    async def test_wrong_field_type(self, client):
        resp = await client.post("/api/auth/login", json={"username": ["alice"], "password": "Secret123"})
        body = await resp.json()

        assert resp.status == 400
        assert body["details"]["errors"][0]["field"] == "username"


class TestTokens:
    """Test refresh, logout and authenticated routes."""

    async def test_refresh_from_body(self, client, create_user):
        create_user()
        _, data = await login_token(client, device_id="laptop")

        resp = await client.post("/api/auth/refresh-token", json={"refreshToken": data["tokens"]["refreshToken"]})
        body = await resp.json()

        assert resp.status == 200
        assert body["data"]["accessToken"]
        assert "accessToken" in resp.cookies

    async def test_refresh_without_token(self, client):
        resp = await client.post("/api/auth/refresh-token")
        assert resp.status == 401
        assert (await resp.json())["error"] == "invalid_token"

    async def test_logout_clears_cookies_and_revokes(self, client, create_user):
        create_user()
        token, data = await login_token(client, device_id="laptop")

        resp = await client.post("/api/auth/logout", json={"deviceId": "laptop"}, headers=bearer(token))
        body = await resp.json()

        assert resp.status == 200
        assert body["data"]["isLoggedIn"] is False
        assert resp.cookies["accessToken"].value == ""

        resp = await client.post("/api/auth/refresh-token", json={"refreshToken": data["tokens"]["refreshToken"]})
        assert resp.status == 401

    async def test_logout_requires_authentication(self, client):
        resp = await client.post("/api/auth/logout", json={})
        assert resp.status == 401

    async def test_change_password(self, client, create_user):
        create_user()
        token, _ = await login_token(client)

        resp = await client.post("/api/auth/change-password", headers=bearer(token), json={
            "oldPassword": "Secret123",
            "newPassword": "Changed123",
            "confirmPassword": "Changed123",
        })
        assert resp.status == 200

        resp = await login(client, password="Changed123")
        assert resp.status == 200


class TestPasswordReset:
    """Test the reset endpoints end to end."""

    async def test_alice_reset(self, client, create_user):
        create_user()

        resp = await client.post("/api/auth/request-reset", json={"username": "alice"})
        body = await resp.json()
        token = body["data"]["resetToken"]
        assert body["data"]["expiresIn"] == "1 hour"

        resp = await client.post("/api/auth/verify-token", json={"resetToken": token})
        assert (await resp.json())["data"]["valid"] is True

        resp = await client.post("/api/auth/reset", json={
            "resetToken": token,
            "newPassword": "NewPass123",
            "confirmPassword": "NewPass123",
        })
        assert resp.status == 200
        assert (await resp.json())["data"] == {"username": "alice"}

        resp = await client.post("/api/auth/reset", json={
            "resetToken": token,
            "newPassword": "NewPass123",
            "confirmPassword": "NewPass123",
        })
        assert resp.status == 404
        assert (await resp.json())["message"] == "Invalid or expired reset token"

        assert (await login(client, password="NewPass123")).status == 200

    async def test_unknown_username_is_generic(self, client):
        resp = await client.post("/api/auth/request-reset", json={"username": "nobody"})
        body = await resp.json()

        assert resp.status == 200
        assert body["data"] == {}
        assert body["message"] == "If the username exists, a password reset link will be sent shortly"

    async def test_reset_status(self, client, create_user):
        create_user()
        await client.post("/api/auth/request-reset", json={"username": "alice"})

        resp = await client.get("/api/auth/reset-status", params={"username": "alice"})
        assert (await resp.json())["data"]["hasPendingReset"] is True


class TestAdminRoutes:
    """Test permission-guarded routes."""

    async def test_admin_reset(self, client, create_user, admin):
        create_user()
        token, _ = await login_token(client, "admin", "AdminPass1")

        resp = await client.post("/api/auth/u-alice/admin-reset", headers=bearer(token))
        body = await resp.json()

        assert resp.status == 200
        assert body["data"]["username"] == "alice"
        assert (await login(client, password=body["data"]["tempPassword"])).status == 200

    async def test_plain_user_is_forbidden(self, client, create_user, db):
        create_user()
        db.create_principal(Principal(user_id="u-bob", name="Bob", organization_id="org-1", role_code="ROLE_USER"))
        token, _ = await login_token(client)

        resp = await client.post("/api/auth/u-bob/admin-reset", headers=bearer(token))
        body = await resp.json()

        assert resp.status == 403
        assert body["details"]["reason"] == "insufficient_permission"

    async def test_no_role_is_reported(self, client, create_user):
        create_user(role_code=None, role="visitor")
        token, _ = await login_token(client)

        resp = await client.post("/api/auth/logout-all/u-alice", headers=bearer(token))
        body = await resp.json()

        assert resp.status == 403
        assert body["details"]["reason"] == "no_role"

    async def test_self_can_read_own_sessions(self, client, create_user):
        create_user()
        token, _ = await login_token(client, device_id="laptop")

        resp = await client.get("/api/auth/sessions/u-alice", headers=bearer(token))
        body = await resp.json()

        assert resp.status == 200
        assert body["data"]["devices"][0]["deviceId"] == "laptop"

    async def test_register_and_unlock(self, client, db, admin):
        db.create_principal(Principal(user_id="u-carol", name="Carol", organization_id="org-1", role_code="ROLE_USER"))
        token, _ = await login_token(client, "admin", "AdminPass1")

        resp = await client.post("/api/auth/register", headers=bearer(token), json={
            "userId": "u-carol", "username": "Carol", "password": "CarolPass1",
        })
        assert resp.status == 201
        assert (await resp.json())["data"]["username"] == "carol"

        for _ in range(5):
            await login(client, "carol", "WrongPass1")
        assert (await login(client, "carol", "CarolPass1")).status == 423

        resp = await client.post("/api/auth/unlock-account", headers=bearer(token), json={"userId": "u-carol"})
        assert resp.status == 200
        assert (await resp.json())["data"]["lockLevel"] == 0
        assert (await login(client, "carol", "CarolPass1")).status == 200

    async def test_login_history_and_attempts(self, client, create_user, admin):
        create_user()
        await login(client, device_id="d1")
        await login(client, password="WrongPass1")
        token, _ = await login_token(client, "admin", "AdminPass1")

        resp = await client.get("/api/auth/login-history/u-alice", headers=bearer(token), params={"limit": "5"})
        history = (await resp.json())["data"]
        assert history["pagination"]["total"] == 1

        resp = await client.get("/api/auth/login-attempts/u-alice", headers=bearer(token))
        assert (await resp.json())["data"]["failedLoginAttempts"] == 1

    async def test_logout_all_and_device(self, client, create_user, admin):
        create_user()
        await login(client, device_id="d1")
        await login(client, device_id="d2")
        token, _ = await login_token(client, "admin", "AdminPass1")

        resp = await client.post("/api/auth/logout-device/u-alice", headers=bearer(token), json={"deviceId": "ghost"})
        assert resp.status == 404

        resp = await client.post("/api/auth/logout-device/u-alice", headers=bearer(token), json={"deviceId": "d1"})
        assert [d["deviceId"] for d in (await resp.json())["data"]["activeDevices"]] == ["d2"]

        resp = await client.post("/api/auth/logout-all/u-alice", headers=bearer(token))
        body = await resp.json()
        assert body["data"]["loggedOutDevices"] == ["d2"]
        assert body["data"]["isLoggedIn"] is False

        resp = await client.get("/api/auth/active-devices/u-alice", headers=bearer(token))
        assert (await resp.json())["data"]["devices"] == []


class TestServer:
    """Test app-level behavior."""

    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status == 200
        assert (await resp.json())["status"] == "healthy"

    async def test_cors_preflight(self, client):
        resp = await client.options("/api/auth/login", headers={"Origin": "http://console.local"})
        assert resp.status == 200
        assert resp.headers["Access-Control-Allow-Origin"] == "http://console.local"

    async def test_cors_refuses_unlisted_origin(self, client):
        resp = await client.get("/health", headers={"Origin": "https://evil.example"})

        assert resp.status == 200
        assert "Access-Control-Allow-Origin" not in resp.headers
        assert "Access-Control-Allow-Credentials" not in resp.headers

    async def test_cors_allows_listed_origin_with_credentials(self, client):
        resp = await client.get("/health", headers={"Origin": "http://console.local"})
        assert resp.headers["Access-Control-Allow-Credentials"] == "true"


class TestClientAddress:
    """Test which client address reaches audit and lockout logs."""

    async def test_forwarded_header_ignored_by_default(self, client, create_user, audit_sink):
        create_user()
        await client.post(
            "/api/auth/login",
            json={"username": "alice", "password": "Secret123"},
            headers={"X-Forwarded-For": "203.0.113.7"},
        )

        login_event = next(e for e in audit_sink.events if e.action == audit.USER_LOGIN)
        assert login_event.ip_address == "127.0.0.1"

    async def test_forwarded_header_from_trusted_proxy(self, settings, manager, create_user, audit_sink):
        create_user()
        app = create_app(settings.model_copy(update={"trusted_proxies": ("127.0.0.1",)}), manager=manager)

        async with TestClient(AiohttpTestServer(app)) as proxied:
            await proxied.post(
                "/api/auth/login",
                json={"username": "alice", "password": "Secret123"},
                headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.2"},
            )

        login_event = next(e for e in audit_sink.events if e.action == audit.USER_LOGIN)
        assert login_event.ip_address == "203.0.113.7"
