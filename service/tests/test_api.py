import asyncio

from drival.errors import StorageFailure, UpstreamError

ADMIN_HEADERS = {"X-Admin-Key": "admin-test-key"}


def _start_session(client, user_id="user-1"):
    response = client.post("/api/session", json={"userId": user_id})
    assert response.status_code == 200
    return response.json()


def _bearer(session):
    return {"Authorization": f"Bearer {session['sessionToken']}"}


def test_health_check(client):
    """Test health check endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["monitoredSessions"] == 0


def test_create_session_returns_ephemeral_credentials(client, broker):
    """The client gets an ephemeral secret and signed tokens, never the server key."""
    response = client.post("/api/session", json={"userId": "user-1"})

    assert response.status_code == 200
    data = response.json()
    assert data["apiKey"] == "ek_test_secret"
    assert data["sessionId"].startswith("session_")
    assert data["sessionToken"].count(".") == 2
    assert data["heartbeatToken"].count(".") == 2
    assert data["quotaRemaining"] == 900
    assert data["sessionTimeLimit"] == 900
    assert data["warningThreshold"] is False
    assert "test-key-sk-12345" not in response.text
    assert broker.calls == 1


def test_create_session_requires_user_id(client, broker):
    """Missing userId is a 400 before anything else happens."""
    response = client.post("/api/session", json={})

    assert response.status_code == 400
    data = response.json()
    assert data["code"] == "BAD_REQUEST"
    assert any("userId" in detail for detail in data["details"])
    assert broker.calls == 0


def test_upstream_failure_releases_the_session(client, broker):
    """A rejected server key surfaces as 401 and leaves no active session behind."""
    broker.error = UpstreamError("Invalid OpenAI API key or insufficient permissions", status_code=401)

    response = client.post("/api/session", json={"userId": "user-1"})

    assert response.status_code == 401
    assert response.json()["code"] == "UPSTREAM_FAILED"

    usage = client.get("/api/admin/users/user-1/usage", headers=ADMIN_HEADERS).json()
    assert usage["activeSessions"] == []
    assert usage["quotaRemaining"] == 900


def test_second_session_denied_at_concurrency_limit(client):
    """Test that a user at maxConcurrentSessions is refused."""
    response = client.put(
        "/api/admin/users/user-1/limits",
        json={"maxConcurrentSessions": 1},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 200
    assert response.json()["maxConcurrentSessions"] == 1

    _start_session(client)
    response = client.post("/api/session", json={"userId": "user-1"})

    assert response.status_code == 429
    data = response.json()
    assert data["code"] == "ADMISSION_DENIED"
    assert data["reason"] == "Maximum concurrent sessions reached"


def test_disabled_user_denied(client):
    client.put("/api/admin/users/user-1/limits", json={"enabled": False}, headers=ADMIN_HEADERS)

    response = client.post("/api/session", json={"userId": "user-1"})

    assert response.status_code == 429
    assert response.json()["reason"] == "Usage limits disabled for user"


def test_heartbeat_charges_elapsed_time(client, clock):
    session = _start_session(client)
    clock.advance(60)

    response = client.post(
        "/api/heartbeat",
        json={"sessionToken": session["sessionToken"], "timestamp": clock()},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["sessionId"] == session["sessionId"]
    assert data["sessionTimeRemaining"] == 840
    assert data["warning"] is None


def test_heartbeat_with_stale_timestamp_is_rejected_without_side_effects(client, clock):
    """A replayed heartbeat from ten minutes ago must not touch any state."""
    session = _start_session(client)
    clock.advance(60)

    response = client.post(
        "/api/heartbeat",
        json={"sessionToken": session["sessionToken"], "timestamp": clock() - 10 * 60 * 1000},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "REPLAY_REJECTED"

    usage = client.get("/api/usage/me", headers=_bearer(session)).json()
    assert usage["quotaRemaining"] == 900
    assert usage["activeSessions"][0]["quota_used_seconds"] == 0
    assert usage["activeSessions"][0]["start_time"] == usage["activeSessions"][0]["last_heartbeat"]


def test_heartbeat_with_invalid_token(client, clock):
    response = client.post("/api/heartbeat", json={"sessionToken": "not-a-token", "timestamp": clock()})

    assert response.status_code == 401
    data = response.json()
    assert data["code"] == "INVALID_CREDENTIAL"
    assert data["action"] == "REQUIRE_NEW_SESSION"


def test_heartbeat_for_ended_session(client, clock):
    session = _start_session(client)
    client.post("/api/session/end", json={"sessionToken": session["sessionToken"]})

    response = client.post(
        "/api/heartbeat",
        json={"sessionToken": session["sessionToken"], "timestamp": clock()},
    )

    assert response.status_code == 401
    assert response.json()["code"] == "SESSION_NOT_FOUND"


def test_heartbeat_requires_a_token(client, clock):
    response = client.post("/api/heartbeat", json={"timestamp": clock()})

    assert response.status_code == 400
    assert response.json()["code"] == "BAD_REQUEST"


def test_heartbeat_token_from_tool_call(client, clock):
    session = _start_session(client)
    clock.advance(30)

    response = client.post(
        "/api/heartbeat",
        json={"heartbeatToken": session["heartbeatToken"], "timestamp": clock()},
    )

    assert response.status_code == 200
    assert response.json()["sessionTimeRemaining"] == 870

    clock.advance(301)
    response = client.post(
        "/api/heartbeat",
        json={"heartbeatToken": session["heartbeatToken"], "timestamp": clock()},
    )
    assert response.status_code == 401


def test_tool_call_heartbeats_last_the_whole_session(client, clock):
    """Each heartbeat hands back a new heartbeat token, so sessions outlive the token lifetime."""
    session = _start_session(client)
    heartbeat_token = session["heartbeatToken"]

    statuses = []
    for _ in range(10):
        clock.advance(60)
        response = client.post(
            "/api/heartbeat",
            json={"heartbeatToken": heartbeat_token, "timestamp": clock()},
        )
        statuses.append(response.status_code)
        heartbeat_token = response.json()["heartbeatToken"]

    assert statuses == [200] * 10
    assert response.json()["sessionTimeRemaining"] == 300


def test_exhausted_allowance_terminates_session(client, services, clock):
    services.usage.initial_session_seconds = 200
    session = _start_session(client)
    clock.advance(201)

    response = client.post(
        "/api/heartbeat",
        json={"heartbeatToken": session["heartbeatToken"], "timestamp": clock()},
    )

    assert response.status_code == 429
    data = response.json()
    assert data["code"] == "QUOTA_EXCEEDED"
    assert data["status"] == "session_terminated"
    assert data["sessionId"] == session["sessionId"]

    response = client.post("/api/session", json={"userId": "user-1"})
    assert response.status_code == 429
    assert response.json()["reason"] == "No session time remaining"


def test_end_session_is_idempotent(client, clock):
    session = _start_session(client)
    clock.advance(45)

    first = client.post("/api/session/end", json={"sessionToken": session["sessionToken"]})
    second = client.post("/api/session/end", json={"sessionToken": session["sessionToken"]})

    assert first.status_code == 200
    assert first.json()["ended"] is True
    assert second.status_code == 200
    assert second.json()["ended"] is False

    usage = client.get("/api/admin/users/user-1/usage", headers=ADMIN_HEADERS).json()
    assert usage["usage"]["total_seconds_consumed"] == 45
    assert usage["quotaRemaining"] == 855

    response = client.post("/api/session/end", json={"sessionToken": "garbage"})
    assert response.status_code == 401


def test_usage_me(client, clock):
    session = _start_session(client)
    clock.advance(20)

    response = client.get("/api/usage/me", headers=_bearer(session))

    assert response.status_code == 200
    data = response.json()
    assert data["userId"] == "user-1"
    assert data["sessionId"] == session["sessionId"]
    assert data["sessionRemaining"] == 880
    assert len(data["activeSessions"]) == 1


def test_usage_me_requires_bearer_token(client):
    assert client.get("/api/usage/me").status_code == 401
    response = client.get("/api/usage/me", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_CREDENTIAL"


def test_admin_routes_require_key(client):
    """Test that admin routes reject missing or wrong keys."""
    for headers in ({}, {"X-Admin-Key": "wrong"}):
        response = client.get("/api/admin/users/user-1/usage", headers=headers)
        assert response.status_code == 401
        data = response.json()
        assert "detail" in data
        assert data["detail"]["error"]["code"] == "ADMIN_ONLY"


def test_admin_reset_and_end_sessions(client, clock):
    _start_session(client)
    _start_session(client)
    clock.advance(100)

    response = client.post("/api/admin/users/user-1/end-sessions", headers=ADMIN_HEADERS)
    assert response.status_code == 200
    assert response.json() == {"userId": "user-1", "ended": 2}

    response = client.post("/api/admin/users/user-1/reset", headers=ADMIN_HEADERS)
    assert response.status_code == 200
    data = response.json()
    assert data["session_time_remaining"] == 900
    assert data["total_seconds_consumed"] == 200


def test_store_failure_returns_500(client, services, monkeypatch):
    """The service fails closed when the usage store is unavailable."""

    async def unavailable(*args, **kwargs):
        raise StorageFailure()

    monkeypatch.setattr(services.store, "get_user_limits", unavailable)

    response = client.post("/api/session", json={"userId": "user-1"})

    assert response.status_code == 500
    assert response.json()["code"] == "STORAGE_FAILURE"


def test_store_timeout_returns_500(client, services, monkeypatch):
    async def slow(*args, **kwargs):
        await asyncio.sleep(1)

    services.store_timeout_seconds = 0.01
    monkeypatch.setattr(services.store, "get_user_limits", slow)

    response = client.post("/api/session", json={"userId": "user-1"})

    assert response.status_code == 500
    assert response.json()["code"] == "STORAGE_FAILURE"

