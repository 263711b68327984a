"""Integration tests for the HTTP surface.

Tests the complete request path including:
- Login, refresh and token rotation
- Identity and session listing
- Session revocation and ownership
- Rate limiting with Retry-After
- Idempotent replay of mutating requests
- Error envelopes and trace ids
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from coursegate.app import create_app
from coursegate.service.idempotency import build_cache_key
from coursegate.service.runtime import Runtime

STUDENT = {"email": "student@example.com", "password": "Correct-Horse-42"}
ADMIN = {"email": "admin@example.com", "password": "Admin-Password-42"}


@pytest.fixture
def make_client(settings, identities):
    """Build a client over a fresh runtime; keyword arguments override settings."""

    def factory(**overrides):
        app_settings = settings.model_copy(update=overrides)
        runtime = Runtime(app_settings, identities=identities)
        return TestClient(
            create_app(app_settings, runtime=runtime), raise_server_exceptions=False
        )

    return factory


@pytest.fixture
def client(make_client):
    return make_client()


def login(client, credentials=STUDENT, key="login-1"):
    return client.post(
        "/v1/auth/login",
        json=credentials,
        headers={"Idempotency-Key": key},
    )


def bearer(tokens):
    return {"Authorization": f"Bearer {tokens['access_token']}"}


class TestLoginFlow:
    def test_login_returns_tokens_in_envelope(self, client):
        response = login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["error"] is None
        data = body["data"]
        assert data["token_type"] == "Bearer"
        assert data["expires_in"] == 900
        assert data["access_token"].count(".") == 2
        assert len(data["refresh_token"]) == 96
        assert data["session"]["id"]
        assert "refresh_token" not in data["session"]

    def test_login_records_device_metadata(self, client):
        tokens = client.post(
            "/v1/auth/login",
            json={**STUDENT, "device_name": "Lab laptop"},
            headers={"Idempotency-Key": "dev-1", "X-Device-Id": "lab-7", "User-Agent": "pytest"},
        ).json()["data"]

        device = tokens["session"]["device"]
        assert device["device_id"] == "lab-7"
        assert device["device_name"] == "Lab laptop"
        assert device["user_agent"] == "pytest"

    def test_wrong_password(self, client):
        response = login(client, {**STUDENT, "password": "not-it-at-all"})

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "INVALID_CREDENTIALS"
        assert body["data"] is None

    def test_login_requires_idempotency_key(self, client):
        response = client.post("/v1/auth/login", json=STUDENT)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "IDEMPOTENCY_KEY_REQUIRED"

    def test_invalid_email_is_validation_error(self, client):
        response = login(client, {"email": "not-an-email", "password": "whatever-123"})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"] == ["email: email must be a valid email address"]

    def test_missing_field_is_validation_error(self, client):
        response = login(client, {"email": STUDENT["email"]})

        assert response.status_code == 400
        details = response.json()["error"]["details"]
        assert any(detail.startswith("password:") for detail in details)


class TestRefreshFlow:
    def test_refresh_rotates(self, client):
        first = login(client).json()["data"]

        response = client.post(
            "/v1/auth/refresh",
            json={"refresh_token": first["refresh_token"]},
            headers={"Idempotency-Key": "refresh-1"},
        )

        assert response.status_code == 200
        second = response.json()["data"]
        assert second["refresh_token"] != first["refresh_token"]
        assert second["session"]["id"] == first["session"]["id"]

        reused = client.post(
            "/v1/auth/refresh",
            json={"refresh_token": first["refresh_token"]},
            headers={"Idempotency-Key": "refresh-2"},
        )
        assert reused.status_code == 401
        assert reused.json()["error"]["code"] == "INVALID_REFRESH_TOKEN"

    def test_unknown_refresh_token(self, client):
        response = client.post(
            "/v1/auth/refresh",
            json={"refresh_token": "0" * 96},
            headers={"Idempotency-Key": "refresh-x"},
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_REFRESH_TOKEN"


class TestAuthenticatedRoutes:
    def test_me_returns_identity(self, client):
        tokens = login(client).json()["data"]

        response = client.get("/v1/auth/me", headers=bearer(tokens))

        assert response.status_code == 200
        assert response.json()["data"] == {
            "user_id": "user-student",
            "email": "student@example.com",
            "roles": ["student"],
            "session_id": tokens["session"]["id"],
        }

    def test_me_without_token(self, client):
        response = client.get("/v1/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTHENTICATION_REQUIRED"

    def test_me_with_garbage_token(self, client):
        response = client.get("/v1/auth/me", headers={"Authorization": "Bearer a.b.c"})

        assert response.status_code == 401
        assert response.json()["error"]["code"].startswith("INVALID_TOKEN")

    def test_list_sessions(self, client):
        first = login(client, key="a").json()["data"]
        second = login(client, key="b").json()["data"]

        response = client.get("/v1/auth/sessions", headers=bearer(first))

        ids = {s["id"] for s in response.json()["data"]["sessions"]}
        assert ids == {first["session"]["id"], second["session"]["id"]}

    def test_revoke_own_session(self, client):
        tokens = login(client).json()["data"]
        session_id = tokens["session"]["id"]

        response = client.delete(
            f"/v1/auth/sessions/{session_id}",
            headers={**bearer(tokens), "Idempotency-Key": "revoke-1"},
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"session_id": session_id, "revoked": True}
        after = client.get("/v1/auth/me", headers=bearer(tokens))
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "SESSION_NOT_ACTIVE"

    def test_cannot_revoke_other_users_session(self, client):
        student = login(client).json()["data"]
        admin = login(client, ADMIN, key="admin-login").json()["data"]

        response = client.delete(
            f"/v1/auth/sessions/{admin['session']['id']}",
            headers={**bearer(student), "Idempotency-Key": "revoke-2"},
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "SESSION_NOT_FOUND"
        assert client.get("/v1/auth/me", headers=bearer(admin)).status_code == 200

    def test_revoke_requires_idempotency_key(self, client):
        tokens = login(client).json()["data"]

        response = client.delete(
            f"/v1/auth/sessions/{tokens['session']['id']}", headers=bearer(tokens)
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "IDEMPOTENCY_KEY_REQUIRED"

    def test_revoke_all_sessions(self, client):
        first = login(client, key="a").json()["data"]
        login(client, key="b")

        response = client.delete("/v1/auth/sessions", headers=bearer(first))

        assert response.status_code == 200
        assert response.json()["data"] == {"revoked": 2}
        assert client.get("/v1/auth/me", headers=bearer(first)).status_code == 401


class TestRoles:
    def test_student_cannot_list_other_users_sessions(self, client):
        tokens = login(client).json()["data"]

        response = client.get("/v1/admin/users/user-admin/sessions", headers=bearer(tokens))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ROLE_MISMATCH"

    def test_admin_lists_any_users_sessions(self, client):
        student = login(client).json()["data"]
        admin = login(client, ADMIN, key="admin-login").json()["data"]

        response = client.get("/v1/admin/users/user-student/sessions", headers=bearer(admin))

        assert response.status_code == 200
        sessions = response.json()["data"]["sessions"]
        assert [s["id"] for s in sessions] == [student["session"]["id"]]


class TestRateLimiting:
    def test_exceeding_default_policy_returns_429(self, make_client):
        client = make_client(
            rate_limit_default_capacity=3, rate_limit_default_window_ms=3_600_000
        )
        tokens = login(client).json()["data"]

        for _ in range(3):
            assert client.get("/v1/auth/me", headers=bearer(tokens)).status_code == 200
        response = client.get("/v1/auth/me", headers=bearer(tokens))

        assert response.status_code == 429
        body = response.json()
        assert body["error"]["code"] == "RATE_LIMIT_EXCEEDED"
        retry_after = int(response.headers["Retry-After"])
        assert retry_after >= 1
        assert body["error"]["details"] == {"retry_after_seconds": retry_after}

    def test_login_has_its_own_tighter_limit(self, client):
        for attempt in range(5):
            response = login(client, {**STUDENT, "password": "wrong-password"}, key=f"k{attempt}")
            assert response.status_code == 401
        response = login(client, key="k-final")

        assert response.status_code == 429
        assert "Retry-After" in response.headers

    def test_unauthenticated_requests_are_throttled(self, make_client):
        client = make_client(
            rate_limit_default_capacity=2, rate_limit_default_window_ms=3_600_000
        )
        for _ in range(2):
            assert client.get("/v1/auth/me").status_code == 401
        assert client.get("/v1/auth/me").status_code == 429


class TestIdempotentReplay:
    def test_repeated_login_replays_first_response(self, client):
        first = login(client, key="same-key")
        second = login(client, key="same-key")

        assert first.headers["X-Idempotent-Replay"] == "false"
        assert second.headers["X-Idempotent-Replay"] == "true"
        assert second.status_code == first.status_code
        assert second.content == first.content
        tokens = first.json()["data"]
        sessions = client.get("/v1/auth/sessions", headers=bearer(tokens)).json()["data"]
        assert len(sessions["sessions"]) == 1

    def test_query_string_is_part_of_the_key(self, client):
        first = client.post(
            "/v1/auth/login?attempt=1", json=STUDENT, headers={"Idempotency-Key": "q"}
        )
        second = client.post(
            "/v1/auth/login?attempt=2", json=STUDENT, headers={"Idempotency-Key": "q"}
        )

        assert second.headers["X-Idempotent-Replay"] == "false"
        assert first.json()["data"]["session"]["id"] != second.json()["data"]["session"]["id"]

    def test_different_keys_execute_separately(self, client):
        first = login(client, key="key-1").json()["data"]
        second = login(client, key="key-2").json()["data"]
        assert first["session"]["id"] != second["session"]["id"]

    def test_failures_are_not_cached(self, client):
        failed = login(client, {**STUDENT, "password": "wrong-password"}, key="retry-me")
        assert failed.status_code == 401

        retried = login(client, key="retry-me")

        assert retried.status_code == 200
        assert retried.headers["X-Idempotent-Replay"] == "false"

    def test_oversized_key_rejected(self, client):
        response = login(client, key="x" * 256)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_revoke_replay_is_scoped_to_user(self, client):
        student = login(client).json()["data"]
        admin = login(client, ADMIN, key="admin-login").json()["data"]

        own = client.delete(
            f"/v1/auth/sessions/{student['session']['id']}",
            headers={**bearer(student), "Idempotency-Key": "shared"},
        )
        other = client.delete(
            f"/v1/auth/sessions/{student['session']['id']}",
            headers={**bearer(admin), "Idempotency-Key": "shared"},
        )

        assert own.status_code == 200
        assert other.status_code == 404
        assert "X-Idempotent-Replay" not in other.headers


class TestEnvelopeAndTracing:
    def test_trace_id_is_echoed(self, client):
        response = client.get("/v1/auth/me", headers={"X-Trace-Id": "trace-abc-123"})

        assert response.headers["X-Trace-Id"] == "trace-abc-123"
        assert response.json()["trace_id"] == "trace-abc-123"

    def test_malformed_trace_id_is_replaced(self, client):
        response = client.get("/v1/auth/me", headers={"X-Trace-Id": "bad trace id!"})

        trace_id = response.headers["X-Trace-Id"]
        assert trace_id != "bad trace id!"
        assert response.json()["trace_id"] == trace_id

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/v1/does-not-exist")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_unexpected_error_is_opaque_500(self, client, monkeypatch):
        tokens = login(client).json()["data"]
        runtime = client.app.state.runtime

        async def explode(user_id):
            raise RuntimeError("database password is hunter2")

        monkeypatch.setattr(runtime.auth, "list_sessions", explode)

        response = client.get("/v1/auth/sessions", headers=bearer(tokens))

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "INTERNAL_SERVER_ERROR"
        assert error["message"] == "Internal server error."
        assert "hunter2" not in response.text
        assert response.headers.get("X-Trace-Id")

    def test_security_headers(self, client):
        response = client.get("/healthz")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"] == "no-store"

    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["checks"] == {"store": "memory"}


class TestInflightRejection:
    def test_duplicate_of_unfinished_request_conflicts(self, make_client):
        client = make_client(idempotency_reject_inflight=True)
        store = client.app.state.runtime.idempotency
        cache_key = build_cache_key("busy", "POST", "/v1/auth/login")
        asyncio.run(store.claim(cache_key))

        response = login(client, key="busy")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "IDEMPOTENCY_IN_PROGRESS"

    def test_claim_is_released_after_failure(self, make_client):
        client = make_client(idempotency_reject_inflight=True)

        failed = login(client, {**STUDENT, "password": "wrong-password"}, key="again")
        retried = login(client, key="again")

        assert failed.status_code == 401
        assert retried.status_code == 200
