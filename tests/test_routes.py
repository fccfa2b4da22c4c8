"""End-to-end tests of the HTTP surface through the guard chains."""

import asyncio
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from apexguard.app import create_app
from apexguard.service.audit import AuditLog
from apexguard.service.security import SecurityService
from apexguard.storage.memory import MemoryKeyValueStore
from apexguard.storage.redis_cache import RedisKeyValueStore

PASSWORD = "Tr1cky!Horse"
NEW_PASSWORD = "N3w!Passphrase"
CSRF = "f" * 48


@pytest.fixture
def client(service):
    return TestClient(create_app(service, run_sweeper=False), raise_server_exceptions=False)


def _register(client, email="ann@example.com", password=PASSWORD, device_id="phone-1"):
    return client.post(
        "/auth/register", json={"email": email, "password": password, "device_id": device_id}
    )


def _auth_headers(tokens, *, csrf=True, device=True):
    headers = {"Authorization": f"Bearer {tokens['access_token']}"}
    if csrf:
        headers["X-CSRF-Token"] = CSRF
    if device:
        headers["X-Device-Id"] = tokens["device_id"]
    return headers


def _events(sink, name):
    return [r for r in sink.records if r["event"] == name]


class TestRegister:
    def test_register_issues_session(self, client):
        response = _register(client)

        assert response.status_code == 201
        payload = response.json()
        assert payload["user"]["email"] == "ann@example.com"
        assert payload["user"]["role"] == "user"
        assert len(payload["session"]["access_token"]) == 64
        assert payload["session"]["device_id"] == "phone-1"
        assert len(payload["csrf_token"]) == 48
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "X-Request-ID" in response.headers

    def test_duplicate_email_conflicts(self, client):
        _register(client)

        response = _register(client, email="ANN@example.com")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    def test_weak_password_rejected(self, client):
        response = _register(client, password="password")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "WEAK_PASSWORD"

    def test_invalid_email_rejected(self, client):
        response = _register(client, email="not-an-email")

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["message"].startswith("Invalid input: email")

    def test_device_defaults_to_service_device(self, client, service):
        response = client.post("/auth/register", json={"email": "b@example.com", "password": PASSWORD})

        assert response.json()["session"]["device_id"] == service.get_device_id()


class TestLogin:
    def test_login_success(self, client):
        _register(client)

        response = client.post(
            "/auth/login", json={"email": "ann@example.com", "password": PASSWORD}
        )

        assert response.status_code == 200
        assert response.json()["attempts_remaining"] == 4
        assert response.json()["session"]["token_type"] == "bearer"

    def test_bad_credentials_are_audited(self, client, sink):
        _register(client)

        wrong = client.post("/auth/login", json={"email": "ann@example.com", "password": "Wr0ng!Pass"})
        unknown = client.post("/auth/login", json={"email": "zed@example.com", "password": PASSWORD})

        assert wrong.status_code == 401
        assert unknown.status_code == 401
        assert wrong.json()["error"]["message"] == "Invalid email or password"
        attempts = _events(sink, "login_attempt")
        assert len(attempts) == 2
        assert attempts[0]["details"]["success"] is False
        assert attempts[0]["level"] == "medium"

    def test_login_budget_counts_down_then_blocks(self, client, sink):
        """Five logins report 4..0 remaining; the sixth is throttled."""
        _register(client)
        body = {"email": "ann@example.com", "password": PASSWORD}

        remaining = [client.post("/auth/login", json=body).json()["attempts_remaining"] for _ in range(5)]
        blocked = client.post("/auth/login", json=body)

        assert remaining == [4, 3, 2, 1, 0]
        assert blocked.status_code == 429
        assert blocked.headers["Retry-After"] == "900"
        assert _events(sink, "multiple_failed_logins")[0]["level"] == "high"

    def test_login_budget_reopens_after_window(self, client, clock):
        _register(client)
        body = {"email": "ann@example.com", "password": PASSWORD}
        for _ in range(6):
            client.post("/auth/login", json=body)

        clock.advance(900)

        assert client.post("/auth/login", json=body).status_code == 200


class TestTokens:
    def test_refresh_rotates_once(self, client):
        tokens = _register(client).json()["session"]

        rotated = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        replay = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})

        assert rotated.status_code == 200
        assert rotated.json()["session"]["access_token"] != tokens["access_token"]
        assert rotated.json()["user"]["email"] == "ann@example.com"
        assert replay.status_code == 401
        assert client.get("/me", headers=_auth_headers(tokens)).status_code == 401

    def test_me_reports_session(self, client):
        tokens = _register(client).json()["session"]

        response = client.get("/me", headers=_auth_headers(tokens, csrf=False, device=False))

        assert response.status_code == 200
        assert response.json()["device_id"] == "phone-1"
        assert response.json()["expires_at"] == tokens["expires_at"]

    def test_csrf_endpoint(self, client):
        tokens = _register(client).json()["session"]

        response = client.get("/auth/csrf", headers=_auth_headers(tokens, csrf=False))

        assert len(response.json()["csrf_token"]) == 48

    def test_logout_requires_csrf_then_invalidates(self, client):
        tokens = _register(client).json()["session"]

        no_csrf = client.post("/auth/logout", headers=_auth_headers(tokens, csrf=False))
        logout = client.post("/auth/logout", headers=_auth_headers(tokens))
        after = client.get("/me", headers=_auth_headers(tokens))

        assert no_csrf.status_code == 403
        assert no_csrf.json()["error"]["code"] == "CSRF_TOKEN_MISSING"
        assert logout.status_code == 200
        assert after.status_code == 401

    def test_expired_session_rejected(self, client, clock):
        tokens = _register(client).json()["session"]
        clock.advance(901)

        response = client.get("/me", headers=_auth_headers(tokens))

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid or expired token"


class TestPasswordChange:
    def test_change_password_signs_out_everywhere(self, client, sink):
        tokens = _register(client).json()["session"]
        other = client.post(
            "/auth/login", json={"email": "ann@example.com", "password": PASSWORD}
        ).json()["session"]

        response = client.post(
            "/account/password",
            json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
            headers=_auth_headers(tokens),
        )

        assert response.status_code == 200
        assert response.json() == {"sessions_invalidated": 2, "score": 5}
        assert client.get("/me", headers=_auth_headers(other)).status_code == 401
        relogin = client.post(
            "/auth/login", json={"email": "ann@example.com", "password": NEW_PASSWORD}
        )
        assert relogin.status_code == 200
        assert _events(sink, "password_change")[-1]["details"]["success"] is True

    def test_wrong_current_password(self, client):
        tokens = _register(client).json()["session"]

        response = client.post(
            "/account/password",
            json={"current_password": "Wr0ng!Pass", "new_password": NEW_PASSWORD},
            headers=_auth_headers(tokens),
        )

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Current password is incorrect"

    def test_weak_new_password(self, client):
        tokens = _register(client).json()["session"]

        response = client.post(
            "/account/password",
            json={"current_password": PASSWORD, "new_password": "short"},
            headers=_auth_headers(tokens),
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "WEAK_PASSWORD"

    def test_requires_matching_device(self, client):
        tokens = _register(client).json()["session"]
        headers = _auth_headers(tokens)
        headers["X-Device-Id"] = "laptop-9"

        response = client.post(
            "/account/password",
            json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
            headers=headers,
        )

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Device verification failed"


class TestAdmin:
    def _admin_tokens(self, client, users):
        payload = _register(client, email="root@example.com").json()
        users.set_role(payload["user"]["id"], "admin")
        return payload["session"]

    def test_members_are_forbidden(self, client):
        tokens = _register(client).json()["session"]

        response = client.get("/admin/sessions", headers=_auth_headers(tokens))

        assert response.status_code == 403

    def test_session_count(self, client, users):
        tokens = self._admin_tokens(client, users)
        _register(client)

        response = client.get("/admin/sessions", headers=_auth_headers(tokens))

        assert response.status_code == 200
        assert response.json() == {"active_sessions": 2}

    def test_sweep(self, client, users, service, clock):
        service.create_session("ghost", "d")
        clock.advance(600)
        tokens = self._admin_tokens(client, users)
        clock.advance(301)

        response = client.post("/admin/sweep", headers=_auth_headers(tokens))

        assert response.status_code == 200
        assert response.json() == {"removed": 1}


class TestAmbient:
    def test_guard_headers_survive_errors(self, client):
        response = client.get("/me")

        assert response.status_code == 401
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.json()["error"]["code"] == "AUTHENTICATION_ERROR"

    def test_request_logger_audits_auth_and_failures(self, client, sink):
        tokens = _register(client).json()["session"]
        client.post(
            "/account/password",
            json={"current_password": "Wr0ng!Pass", "new_password": NEW_PASSWORD},
            headers=_auth_headers(tokens),
        )

        requests = _events(sink, "api_request")
        assert [r["details"]["status_code"] for r in requests] == [201, 401]
        assert requests[0]["details"]["url"] == "/auth/register"
        assert requests[0]["details"]["ip"] == "testclient"
        assert requests[1]["details"]["url"] == "/account/password"
        assert requests[1]["user_id"] is not None

    def test_rejected_before_logging_guard_is_not_audited(self, client, sink):
        client.get("/me")

        assert _events(sink, "api_request") == []

    def test_successful_non_auth_request_not_audited(self, client, sink):
        tokens = _register(client).json()["session"]
        client.get("/me", headers=_auth_headers(tokens))

        assert [r["details"]["url"] for r in _events(sink, "api_request")] == ["/auth/register"]

    def test_auth_chain_rate_limit(self, client):
        statuses = [
            client.post("/auth/refresh", json={"refresh_token": "bogus"}).status_code
            for _ in range(11)
        ]

        assert statuses == [401] * 10 + [429]

    def test_correlation_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["status"] == "ok"

    def test_rate_limited_response_carries_security_headers(self, client):
        for _ in range(10):
            client.post("/auth/refresh", json={"refresh_token": "bogus"})

        limited = client.post("/auth/refresh", json={"refresh_token": "bogus"})

        assert limited.status_code == 429
        assert limited.headers["X-Frame-Options"] == "DENY"
        assert limited.headers["Content-Security-Policy"] == "default-src 'self'"
        assert limited.headers["Retry-After"] == "60"

    @pytest.mark.parametrize("path,status", [("/healthz", 200), ("/nowhere", 404)])
    def test_responses_outside_chains_carry_security_headers(self, client, path, status):
        response = client.get(path)

        assert response.status_code == status
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "max-age=31536000" in response.headers["Strict-Transport-Security"]


class ThreadCheckingKeyValueStore(MemoryKeyValueStore):
    """Records keystore calls made from inside a running event loop."""

    def __init__(self, *, clock):
        super().__init__(clock=clock)
        self.on_loop = []

    def _note(self, operation, key):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self.on_loop.append((operation, key))

    def get(self, key):
        self._note("get", key)
        return super().get(key)

    def set(self, key, value, ttl_seconds=None):
        self._note("set", key)
        super().set(key, value, ttl_seconds)

    def remove(self, key):
        self._note("remove", key)
        super().remove(key)

    def pop(self, key):
        self._note("pop", key)
        return super().pop(key)

    def keys(self, prefix):
        self._note("keys", prefix)
        return super().keys(prefix)


class TestKeystoreOffLoop:
    @pytest.fixture
    def keystore(self, clock):
        return ThreadCheckingKeyValueStore(clock=clock)

    def test_session_lifecycle_never_touches_keystore_on_loop(self, client, keystore):
        """Register, login, refresh, logout and password change."""
        _register(client)
        client.post("/auth/register", json={"email": "b@example.com", "password": PASSWORD})
        tokens = client.post(
            "/auth/login", json={"email": "ann@example.com", "password": PASSWORD}
        ).json()["session"]
        rotated = client.post(
            "/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        ).json()["session"]
        client.post("/auth/logout", headers=_auth_headers(rotated))

        tokens = _register(client, email="c@example.com").json()["session"]
        client.post(
            "/account/password",
            json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
            headers=_auth_headers(tokens),
        )

        assert keystore.keys("refresh_token:")
        assert keystore.on_loop == []


class TestLifespan:
    def test_redis_keystore_is_verified_and_closed(self, settings, clock, users, sink):
        redis_client = MagicMock()
        store = RedisKeyValueStore("redis://unused", client=redis_client)
        audit = AuditLog(settings, [sink], clock=clock)
        service = SecurityService(settings, keystore=store, audit=audit, users=users, clock=clock)

        with TestClient(create_app(service, run_sweeper=False)) as client:
            redis_client.ping.assert_called_once()
            redis_client.close.assert_not_called()
            assert client.get("/healthz").status_code == 200

        redis_client.close.assert_called_once()

    def test_unreachable_redis_fails_startup(self, settings, clock, users):
        redis_client = MagicMock()
        redis_client.ping.side_effect = ConnectionError("redis down")
        store = RedisKeyValueStore("redis://unused", client=redis_client)
        service = SecurityService(settings, keystore=store, users=users, clock=clock)

        with pytest.raises(ConnectionError):
            with TestClient(create_app(service, run_sweeper=False)):
                pass
