"""Integration tests for the HTTP authentication flow.

Tests the complete flow through the FastAPI app including:
- Anonymous sessions and login
- MFA challenge, verification and recovery codes
- Trusted devices
- Session listing and revocation
- Company switching
- Logout
"""

import pytest
from fastapi.testclient import TestClient

from tenantgate import app as app_module
from tenantgate.service.runtime import get_runtime

from conftest import TEST_PASSWORD

USER_EMAIL = "ops@example.com"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def seeded():
    """Create a company and a password user with a pinned grant to it."""
    runtime = get_runtime()
    company = runtime.store.create_company("Acme")

    def _seed(email=USER_EMAIL, *, mfa=False):
        user = runtime.store.create_user(email, home_company_id=company.id)
        runtime.credentials.set_password(user.id, TEST_PASSWORD)
        runtime.store.grant_company_access(user.id, company.id, pinned=True)
        codes = runtime.mfa.enable(user.id) if mfa else []
        return user, codes

    _seed.company = company
    return _seed


def _login(client, email=USER_EMAIL, password=TEST_PASSWORD, **extra):
    return client.post("/v1/auth/login", json={"email": email, "password": password, **extra})


class TestLoginFlow:
    """Tests for password login."""

    def test_login_without_mfa_sets_cookie(self, client, seeded):
        user, _ = seeded()

        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["status"] == "established"
        assert body["data"]["user"]["id"] == user.id
        assert body["data"]["active_company"]["name"] == "Acme"
        assert client.cookies.get("session_id") == body["data"]["session_id"]
        set_cookie = response.headers["set-cookie"].lower()
        assert "httponly" in set_cookie
        assert "samesite=lax" in set_cookie

    def test_login_with_invalid_password(self, client, seeded):
        seeded()

        response = _login(client, password="not-the-password")

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "invalid_credentials"

    def test_unknown_email_looks_like_wrong_password(self, client, seeded):
        seeded()

        unknown = _login(client, email="nobody@example.com")
        wrong = _login(client, password="not-the-password")

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"]

    def test_lockout_returns_423(self, client, seeded):
        seeded()
        for i in range(4):
            _login(client, password=f"wrong-{i}")

        locked = _login(client, password="wrong-5")
        still_locked = _login(client)

        assert locked.status_code == 423
        assert locked.json()["error"]["code"] == "account_locked"
        assert still_locked.status_code == 423

    def test_login_validates_email_format(self, client):
        response = _login(client, email="not-an-email")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_anonymous_session_is_replaced_at_login(self, client, seeded):
        seeded()
        opened = client.post("/v1/auth/session")
        anonymous_id = opened.json()["data"]["session_id"]

        response = _login(client)

        assert opened.status_code == 201
        assert response.json()["data"]["session_id"] != anonymous_id
        assert get_runtime().store.get_session(anonymous_id).state.value == "revoked"

    def test_login_with_unknown_cookie(self, client, seeded):
        seeded()
        client.cookies.set("session_id", "left-over-from-old-deploy")

        response = _login(client)

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "established"

    def test_login_rate_limited_per_email(self, client, seeded):
        seeded()
        get_runtime().settings.login_rate_limit_per_minute = 2

        _login(client, password="wrong-1")
        _login(client, password="wrong-2")
        response = _login(client)

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) >= 1


class TestMfaFlow:
    """Tests for the second factor over HTTP."""

    def test_challenge_then_verify_rotates_cookie(self, client, seeded):
        seeded(mfa=True)

        challenge = _login(client)
        pending_id = client.cookies.get("session_id")
        data = challenge.json()["data"]

        assert challenge.status_code == 200
        assert data["status"] == "mfa_required"
        assert data["expires_in"] == 600
        assert client.get("/v1/auth/me").status_code == 401

        verified = client.post("/v1/auth/mfa/verify", json={"code": data["code"]})

        assert verified.status_code == 200
        assert verified.json()["data"]["mfa_verified"] is True
        new_id = client.cookies.get("session_id")
        assert new_id != pending_id
        assert client.get("/v1/auth/me").status_code == 200

    def test_pending_cookie_replay_fails_after_upgrade(self, client, seeded):
        seeded(mfa=True)
        challenge = _login(client).json()["data"]
        client.post("/v1/auth/mfa/verify", json={"code": challenge["code"]})

        replay = TestClient(app_module.app, cookies={"session_id": challenge["session_id"]})

        assert replay.get("/v1/auth/me").status_code == 401
        again = replay.post("/v1/auth/mfa/verify", json={"code": challenge["code"]})
        assert again.status_code == 401
        assert again.json()["error"]["code"] == "no_pending_mfa"

    def test_wrong_code(self, client, seeded):
        seeded(mfa=True)
        code = _login(client).json()["data"]["code"]
        wrong = "000000" if code != "000000" else "111111"

        response = client.post("/v1/auth/mfa/verify", json={"code": wrong})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_code"

    def test_resend_code(self, client, seeded):
        seeded(mfa=True)
        _login(client)

        response = client.post("/v1/auth/mfa/send")

        assert response.status_code == 200
        resent = response.json()["data"]["code"]
        verified = client.post("/v1/auth/mfa/verify", json={"code": resent})
        assert verified.status_code == 200

    def test_verify_without_session(self, client):
        response = client.post("/v1/auth/mfa/verify", json={"code": "123456"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_recovery_code(self, client, seeded):
        _, codes = seeded(mfa=True)
        _login(client)

        response = client.post("/v1/auth/mfa/verify-recovery", json={"code": codes[0]})

        assert response.status_code == 200
        assert response.json()["data"]["recovery_codes_remaining"] == len(codes) - 1
        reused = TestClient(app_module.app)
        _login(reused)
        again = reused.post("/v1/auth/mfa/verify-recovery", json={"code": codes[0]})
        assert again.status_code == 401
        assert again.json()["error"]["code"] == "invalid_recovery_code"

    def test_trusted_device_skips_challenge(self, client, seeded):
        seeded(mfa=True)
        code = _login(client).json()["data"]["code"]
        verified = client.post(
            "/v1/auth/mfa/verify",
            json={"code": code, "trust_device": True},
            headers={"X-Device-ID": "laptop-1"},
        )
        assert verified.json()["data"]["device_trusted"] is True
        assert client.cookies.get("device_trust")

        again = _login(client)

        assert again.json()["data"]["status"] == "established"
        assert again.json()["data"]["device_trusted"] is True

        devices = client.get("/v1/auth/trusted-devices").json()["data"]["devices"]
        assert len(devices) == 1
        removed = client.delete(f"/v1/auth/trusted-devices/{devices[0]['id']}")
        assert removed.status_code == 200
        missing = client.delete(f"/v1/auth/trusted-devices/{devices[0]['id']}")
        assert missing.status_code == 404
        assert _login(client).json()["data"]["status"] == "mfa_required"


class TestMfaManagement:
    def test_enable_status_disable(self, client, seeded):
        seeded()
        _login(client)

        enabled = client.post("/v1/auth/mfa/enable")
        status = client.get("/v1/auth/mfa/status")
        conflict = client.post("/v1/auth/mfa/enable")
        disabled = client.post("/v1/auth/mfa/disable")

        assert enabled.status_code == 200
        assert len(enabled.json()["data"]["recovery_codes"]) == 10
        assert status.json()["data"]["enabled"] is True
        assert status.json()["data"]["recovery_codes_remaining"] == 10
        assert conflict.status_code == 409
        assert conflict.json()["error"]["code"] == "mfa_already_enabled"
        assert disabled.json()["data"] == {"enabled": False}

    def test_regenerate_requires_mfa(self, client, seeded):
        seeded()
        _login(client)

        response = client.post("/v1/auth/mfa/recovery-codes")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "mfa_not_enabled"


class TestSessions:
    """Tests for listing and revoking sessions."""

    def test_list_marks_current_session(self, client, seeded):
        seeded()
        other = TestClient(app_module.app)
        _login(other)
        _login(client)

        sessions = client.get("/v1/auth/sessions").json()["data"]["sessions"]

        assert len(sessions) == 2
        assert [s["is_current"] for s in sessions].count(True) == 1

    def test_revoke_other_session(self, client, seeded):
        seeded()
        other = TestClient(app_module.app)
        other_id = _login(other).json()["data"]["session_id"]
        _login(client)

        response = client.delete(f"/v1/auth/sessions/{other_id}")

        assert response.status_code == 200
        assert other.get("/v1/auth/me").status_code == 401
        repeat = client.delete(f"/v1/auth/sessions/{other_id}")
        assert repeat.status_code == 404
        assert repeat.json()["error"]["code"] == "session_not_found"

    def test_revoke_malformed_session_id(self, client, seeded):
        seeded()
        _login(client)

        response = client.delete("/v1/auth/sessions/not-a-session")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "session_not_found"

    def test_revoke_others(self, client, seeded):
        seeded()
        others = [TestClient(app_module.app) for _ in range(2)]
        for other in others:
            _login(other)
        _login(client)

        response = client.post("/v1/auth/sessions/revoke-others")

        assert response.json()["data"]["revoked"] == 2
        assert all(o.get("/v1/auth/me").status_code == 401 for o in others)
        assert client.get("/v1/auth/me").status_code == 200

    def test_logout_invalidates_session(self, client, seeded):
        seeded()
        session_id = _login(client).json()["data"]["session_id"]

        response = client.post("/v1/auth/logout")

        assert response.json()["data"] == {"revoked": True}
        replay = TestClient(app_module.app, cookies={"session_id": session_id})
        assert replay.get("/v1/auth/me").status_code == 401


class TestCompanies:
    def test_switch_company(self, client, seeded):
        user, _ = seeded()
        runtime = get_runtime()
        globex = runtime.store.create_company("Globex")
        foreign = runtime.store.create_company("Foreign")
        runtime.store.grant_company_access(user.id, globex.id)
        _login(client)

        listing = client.get("/v1/auth/companies").json()["data"]
        switched = client.post("/v1/auth/companies/switch", json={"company_id": globex.id})
        denied = client.post("/v1/auth/companies/switch", json={"company_id": foreign.id})
        me = client.get("/v1/auth/me").json()["data"]

        assert listing["can_switch_companies"] is True
        assert {c["name"] for c in listing["companies"]} == {"Acme", "Globex"}
        assert switched.json()["data"]["active_company"]["id"] == globex.id
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "company_access_denied"
        assert me["active_company"]["id"] == globex.id

    def test_listing_and_me_agree_on_switching(self, client):
        runtime = get_runtime()
        acme = runtime.store.create_company("Acme")
        globex = runtime.store.create_company("Globex")
        user = runtime.store.create_user(USER_EMAIL, home_company_id=acme.id)
        runtime.credentials.set_password(user.id, TEST_PASSWORD)
        runtime.store.grant_company_access(user.id, globex.id)
        _login(client)

        listing = client.get("/v1/auth/companies").json()["data"]
        me = client.get("/v1/auth/me").json()["data"]

        assert [c["id"] for c in listing["companies"]] == [globex.id]
        assert listing["can_switch_companies"] is False
        assert me["can_switch_companies"] is False
        assert me["active_company"]["id"] == globex.id


class TestActivityAndHeaders:
    def test_activity_lists_events(self, client, seeded):
        seeded()
        _login(client, password="wrong")
        _login(client)

        events = client.get("/v1/auth/activity", params={"limit": 5}).json()["data"]["events"]

        types = {e["event_type"] for e in events}
        assert {"login_failed", "login_success"} <= types

    def test_security_headers_and_request_id(self, client, seeded):
        seeded()

        response = _login(client)

        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]
        assert response.headers["X-Request-ID"]

    def test_client_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-12345"})

        assert response.headers["X-Request-ID"] == "req-12345"

    def test_health(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"] == {"status": "healthy", "type": "memory"}
        assert body["checks"]["redis"] == {"status": "not_configured"}
