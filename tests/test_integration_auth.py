"""Integration tests for the login and 2FA HTTP flow.

Tests the complete flow including:
- Password login and the session cookie
- Two-step login through /login/2fa
- 2FA setup, enable, status and disable
- Admin recovery with the emergency code
- Logout, request ids and security headers
"""

import pyotp
import pytest
from fastapi.testclient import TestClient

from venuehub import app as app_module
from venuehub.service.auth import GENERIC_LOGIN_FAILURE
from venuehub.storage.models import Role


@pytest.fixture
def client(runtime):
    """Create a test client for the API."""
    with TestClient(app_module.app) as test_client:
        yield test_client


def login(client, username, password, code=None, **kwargs):
    body = {"username": username, "password": password}
    if code is not None:
        body["code"] = code
    return client.post("/login", json=body, **kwargs)


class TestPasswordLogin:
    """Tests for accounts without 2FA."""

    def test_login_sets_http_only_cookie(self, client, make_account):
        make_account("bob", "bob-pass")

        response = login(client, "bob", "bob-pass")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["data"]["status"] == "ok"
        assert data["data"]["requires_2fa"] is False
        assert data["data"]["identity"]["username"] == "bob"
        assert data["data"]["identity"]["role"] == "user"
        cookies = [c.lower() for c in response.headers.get_list("set-cookie")]
        assert cookies and all("httponly" in c for c in cookies)
        assert all("samesite=lax" in c for c in cookies)

        me = client.get("/login/me")
        assert me.status_code == 200
        assert me.json()["data"]["username"] == "bob"

    def test_login_rotates_existing_session(self, client, make_account, runtime):
        make_account("bob", "bob-pass")
        anonymous = runtime.store.create_session(60)

        response = login(client, "bob", "bob-pass", headers={"session_id": anonymous.id})

        assert response.status_code == 200
        assert response.cookies["session_id"] != anonymous.id
        assert runtime.store.get_session(anonymous.id) is None

    @pytest.mark.parametrize("username,password", [("bob", "wrong-pass"), ("nobody", "bob-pass")])
    def test_failures_look_identical(self, client, make_account, username, password):
        make_account("bob", "bob-pass")

        response = login(client, username, password)

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["message"] == GENERIC_LOGIN_FAILURE

    def test_session_header_fallback(self, client, make_account):
        make_account("bob", "bob-pass")
        session_id = login(client, "bob", "bob-pass").cookies["session_id"]
        client.cookies.clear()

        assert client.get("/login/me").status_code == 401
        me = client.get("/login/me", headers={"session_id": session_id})
        assert me.status_code == 200

    def test_logout(self, client, make_account):
        make_account("bob", "bob-pass")
        session_id = login(client, "bob", "bob-pass").cookies["session_id"]

        response = client.post("/logout")
        assert response.status_code == 200

        client.cookies.clear()
        assert client.get("/login/me", headers={"session_id": session_id}).status_code == 401
        # Logging out twice is harmless
        assert client.post("/logout").status_code == 200

    def test_empty_username_is_validation_error(self, client):
        response = login(client, "", "whatever")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestTwoStepLogin:
    """Tests for accounts with 2FA enabled."""

    def test_two_step_login(self, client, make_account, enroll, wrong_code):
        make_account("alice", "alice-pass")
        _, provisioning = enroll("alice")
        totp = pyotp.TOTP(provisioning.secret)

        first = login(client, "alice", "alice-pass")
        assert first.status_code == 200
        assert first.json()["data"]["status"] == "2fa_required"
        assert first.json()["data"]["requires_2fa"] is True
        pending_id = first.cookies["session_id"]
        assert client.get("/login/me").status_code == 401

        rejected = client.post("/login/2fa", json={"code": wrong_code(provisioning.secret)})
        assert rejected.status_code == 401
        assert rejected.json()["error"]["code"] == "unauthorized"
        assert rejected.json()["error"]["message"] == GENERIC_LOGIN_FAILURE

        accepted = client.post("/login/2fa", json={"code": totp.now()})
        assert accepted.status_code == 200
        assert accepted.json()["data"]["identity"]["username"] == "alice"
        assert accepted.cookies["session_id"] != pending_id
        assert client.get("/login/me").json()["data"]["username"] == "alice"

    def test_code_with_password(self, client, make_account, enroll):
        make_account("alice", "alice-pass")
        _, provisioning = enroll("alice")

        response = login(client, "alice", "alice-pass", pyotp.TOTP(provisioning.secret).now())

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "ok"

    def test_bad_code_with_password_matches_bad_password(self, client, make_account, enroll, wrong_code):
        make_account("alice", "alice-pass")
        _, provisioning = enroll("alice")

        bad_code = login(client, "alice", "alice-pass", wrong_code(provisioning.secret))
        bad_password = login(client, "alice", "nope")

        assert bad_code.status_code == bad_password.status_code == 401
        assert bad_code.json()["error"] == bad_password.json()["error"]

    def test_double_submit_with_pre_rotation_session(self, client, make_account, enroll):
        make_account("alice", "alice-pass")
        _, provisioning = enroll("alice")
        pending_id = login(client, "alice", "alice-pass").cookies["session_id"]
        code = pyotp.TOTP(provisioning.secret).now()

        client.cookies.clear()
        first = client.post("/login/2fa", json={"code": code}, headers={"session_id": pending_id})
        client.cookies.clear()
        second = client.post("/login/2fa", json={"code": code}, headers={"session_id": pending_id})

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["data"]["identity"]["username"] == "alice"
        assert second.cookies["session_id"] == first.cookies["session_id"] != pending_id

        # The old id itself never grants access
        client.cookies.clear()
        assert client.get("/login/me", headers={"session_id": pending_id}).status_code == 401

    def test_bad_code_on_first_request_keeps_pending_login(self, client, make_account, enroll, wrong_code):
        make_account("alice", "alice-pass")
        _, provisioning = enroll("alice")

        rejected = login(client, "alice", "alice-pass", wrong_code(provisioning.secret))
        assert rejected.status_code == 401
        assert rejected.json()["error"]["message"] == GENERIC_LOGIN_FAILURE
        assert rejected.cookies.get("session_id")

        accepted = client.post("/login/2fa", json={"code": pyotp.TOTP(provisioning.secret).now()})
        assert accepted.status_code == 200
        assert accepted.json()["data"]["identity"]["username"] == "alice"

    def test_locked_account_hides_password_result(self, client, make_account, enroll, runtime):
        account = make_account("alice", "alice-pass")
        enroll("alice")
        for _ in range(runtime.settings.mfa_max_attempts):
            runtime.throttle.record_failure(account.id)

        right = login(client, "alice", "alice-pass")
        wrong = login(client, "alice", "nope")

        assert right.status_code == wrong.status_code == 401
        assert right.json()["error"] == wrong.json()["error"]
        assert right.json()["error"]["code"] == "unauthorized"

    def test_second_factor_without_pending_login(self, client):
        response = client.post("/login/2fa", json={"code": "123456"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_spaces_in_code_are_ignored(self, client, make_account, enroll):
        make_account("alice", "alice-pass")
        _, provisioning = enroll("alice")
        code = pyotp.TOTP(provisioning.secret).now()

        login(client, "alice", "alice-pass")
        response = client.post("/login/2fa", json={"code": f"{code[:3]} {code[3:]}"})

        assert response.status_code == 200


class TestTwoFactorEndpoints:
    """Tests for enrollment through the API."""

    def test_requires_login(self, client):
        assert client.post("/2fa/setup").status_code == 401
        assert client.get("/2fa/status").status_code == 401

    def test_setup_enable_disable(self, client, make_account, wrong_code):
        make_account("alice", "alice-pass")
        login(client, "alice", "alice-pass")

        setup = client.post("/2fa/setup")
        assert setup.status_code == 200
        payload = setup.json()["data"]
        assert payload["emergency_code"] is None
        assert payload["qr_code"].startswith("data:image/png;base64,")
        totp = pyotp.TOTP(payload["secret"])

        status = client.get("/2fa/status").json()["data"]
        assert status == {"two_factor_enabled": False, "provisioning": True}

        bad = client.post("/2fa/enable", json={"code": wrong_code(payload["secret"])})
        assert bad.status_code == 401
        assert bad.json()["error"]["code"] == "invalid_token"

        enabled = client.post("/2fa/enable", json={"code": totp.now()})
        assert enabled.status_code == 200
        assert enabled.json()["data"] == {"two_factor_enabled": True}

        again = client.post("/2fa/setup")
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "conflict"

        wrong_password = client.post(
            "/2fa/disable", json={"password": "nope", "code": totp.now()}
        )
        assert wrong_password.status_code == 401
        assert wrong_password.json()["error"]["code"] == "unauthorized"

        disabled = client.post(
            "/2fa/disable", json={"password": "alice-pass", "code": totp.now()}
        )
        assert disabled.status_code == 200
        assert client.get("/2fa/status").json()["data"]["two_factor_enabled"] is False

    def test_enable_before_setup(self, client, make_account):
        make_account("alice", "alice-pass")
        login(client, "alice", "alice-pass")

        response = client.post("/2fa/enable", json={"code": "123456"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "precondition_failed"

    def test_disable_when_not_enabled(self, client, make_account):
        make_account("alice", "alice-pass")
        login(client, "alice", "alice-pass")

        response = client.post("/2fa/disable", json={"password": "alice-pass", "code": "123456"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "precondition_failed"

    def test_admin_setup_shows_emergency_code(self, client, make_account):
        make_account("root", "root-pass", Role.ADMIN)
        login(client, "root", "root-pass")

        payload = client.post("/2fa/setup").json()["data"]
        assert len(payload["emergency_code"]) == 16
        assert payload["emergency_code"] == payload["emergency_code"].upper()


class TestEmergencyReset:
    """Tests for admin recovery without a session."""

    def test_reset_then_password_login(self, client, make_account, enroll):
        make_account("root", "root-pass", Role.ADMIN)
        _, provisioning = enroll("root")

        response = client.post(
            "/2fa/reset-with-emergency-code",
            json={
                "username": "root",
                "password": "root-pass",
                "emergency_code": provisioning.emergency_code,
            },
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"two_factor_enabled": False}
        # No session is handed out by the reset itself
        assert "set-cookie" not in response.headers

        assert login(client, "root", "root-pass").json()["data"]["status"] == "ok"

        repeat = client.post(
            "/2fa/reset-with-emergency-code",
            json={
                "username": "root",
                "password": "root-pass",
                "emergency_code": provisioning.emergency_code,
            },
        )
        assert repeat.status_code == 400
        assert repeat.json()["error"]["code"] == "precondition_failed"

    def test_non_admin_refused(self, client, make_account, enroll):
        make_account("bob", "bob-pass")
        enroll("bob")

        response = client.post(
            "/2fa/reset-with-emergency-code",
            json={"username": "bob", "password": "bob-pass", "emergency_code": "ABCDEF0123456789"},
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_unknown_user(self, client):
        response = client.post(
            "/2fa/reset-with-emergency-code",
            json={"username": "ghost", "password": "x", "emergency_code": "ABCDEF0123456789"},
        )
        assert response.status_code == 404

    def test_wrong_code(self, client, make_account, enroll):
        make_account("root", "root-pass", Role.ADMIN)
        enroll("root")

        response = client.post(
            "/2fa/reset-with-emergency-code",
            json={"username": "root", "password": "root-pass", "emergency_code": "0000000000000000"},
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"


class TestAmbient:
    """Tests for health, request ids and response headers."""

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "version": app_module.__version__}

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert client.get("/healthz").headers["X-Request-ID"]

    def test_security_headers(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/nope")
        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"
