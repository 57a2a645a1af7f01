import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from authbackend.api.deps import get_auth_service
from authbackend.core.database import get_db
from authbackend.core.exceptions import CacheUnavailableError
from authbackend.main import app
from authbackend.services.rate_limiter import rate_limiter

LOGIN = "/api/v1/auth/login"
REFRESH = "/api/v1/auth/refresh"
LOGOUT = "/api/v1/auth/logout"


@pytest.fixture
def client(db_engine, auth_service):
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)

    def _get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_auth_service] = lambda: auth_service
    rate_limiter.reset()
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        rate_limiter.reset()


def _register_and_login(client, identifier="alice", password="correct-password"):
    resp = client.post("/api/v1/auth/register", json={"identifier": identifier, "password": password})
    assert resp.status_code == 201
    resp = client.post(LOGIN, json={"identifier": identifier, "password": password})
    assert resp.status_code == 200
    return resp.json()


def test_login_returns_token_pair(client):
    body = _register_and_login(client)
    assert body["token_type"] == "bearer"
    assert body["expires_in"] == 15 * 60
    assert body["access_token"] and body["refresh_credential"]


def test_bad_credentials_get_one_generic_answer(client):
    _register_and_login(client)
    wrong = client.post(LOGIN, json={"identifier": "alice", "password": "nope"})
    unknown = client.post(LOGIN, json={"identifier": "mallory", "password": "nope"})

    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json()["error"] == unknown.json()["error"]
    assert wrong.json()["code"] == unknown.json()["code"] == "invalid_credentials"


def test_refresh_rotation_and_replay_over_http(client):
    r0 = _register_and_login(client)

    r1 = client.post(REFRESH, json={"refresh_credential": r0["refresh_credential"]})
    assert r1.status_code == 200

    replay = client.post(REFRESH, json={"refresh_credential": r0["refresh_credential"]})
    after = client.post(REFRESH, json={"refresh_credential": r1.json()["refresh_credential"]})
    tampered = client.post(REFRESH, json={"refresh_credential": "x.y.z"})

    for resp in (replay, after, tampered):
        assert resp.status_code == 401
        assert resp.json()["code"] == "reauthentication_required"
    # the client cannot tell replay, revocation and tampering apart
    assert replay.json()["error"] == after.json()["error"] == tampered.json()["error"]


def test_logout_always_succeeds(client):
    pair = _register_and_login(client)

    for credential in (pair["refresh_credential"], pair["refresh_credential"], "garbage"):
        resp = client.post(LOGOUT, json={"refresh_credential": credential})
        assert resp.status_code == 200
        assert resp.json()["success"] is True

    resp = client.post(REFRESH, json={"refresh_credential": pair["refresh_credential"]})
    assert resp.status_code == 401


def test_me_requires_valid_access_token(client):
    pair = _register_and_login(client)

    resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {pair['access_token']}"})
    assert resp.status_code == 200
    assert resp.json()["identifier"] == "alice"

    assert client.get("/api/v1/auth/me").status_code == 401
    bad = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {pair['refresh_credential']}"})
    assert bad.status_code == 401


def test_delete_account_ends_sessions(client):
    pair = _register_and_login(client)
    headers = {"Authorization": f"Bearer {pair['access_token']}"}

    assert client.delete("/api/v1/auth/me", headers=headers).status_code == 200
    assert client.get("/api/v1/auth/me", headers=headers).status_code == 401
    resp = client.post(REFRESH, json={"refresh_credential": pair["refresh_credential"]})
    assert resp.status_code == 401


def test_change_password_over_http(client):
    pair = _register_and_login(client)
    headers = {"Authorization": f"Bearer {pair['access_token']}"}

    resp = client.post(
        "/api/v1/auth/password",
        json={"current_password": "correct-password", "new_password": "even-better-password"},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["revoked_sessions"] == 1
    assert client.post(LOGIN, json={"identifier": "alice", "password": "even-better-password"}).status_code == 200


def test_duplicate_registration_conflicts(client):
    _register_and_login(client)
    resp = client.post("/api/v1/auth/register", json={"identifier": "ALICE", "password": "another-password"})
    assert resp.status_code == 409
    assert resp.json()["code"] == "conflict"


def test_request_shape_is_closed(client):
    resp = client.post(LOGIN, json={"identifier": "alice", "password": "pw", "role": "admin"})
    assert resp.status_code == 422
    assert resp.json()["code"] == "validation_error"
    assert client.post(REFRESH, json={}).status_code == 422


def test_login_rate_limit(client, monkeypatch):
    monkeypatch.setattr("authbackend.api.v1.auth.settings.LOGIN_RATE_LIMIT_PER_MINUTE", 2)
    for _ in range(2):
        assert client.post(LOGIN, json={"identifier": "alice", "password": "nope"}).status_code == 401
    resp = client.post(LOGIN, json={"identifier": "alice", "password": "nope"})
    assert resp.status_code == 429
    assert resp.json()["code"] == "rate_limited"


def test_cache_outage_is_retryable(client, auth_service, monkeypatch):
    pair = _register_and_login(client)

    def unavailable(*args, **kwargs):
        raise CacheUnavailableError()

    monkeypatch.setattr(auth_service.engine.cache, "get", unavailable)
    resp = client.post(REFRESH, json={"refresh_credential": pair["refresh_credential"]})

    assert resp.status_code == 503
    assert resp.json()["code"] == "service_unavailable"
    assert resp.headers["Retry-After"] == "1"


def test_health_reports_dependencies(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    readiness = resp.json()["readiness"]
    assert readiness["database"]["ok"] is True
    assert readiness["session_cache"]["ok"] is True


def test_register_has_its_own_rate_limit(client, monkeypatch):
    monkeypatch.setattr("authbackend.api.v1.auth.settings.REGISTER_RATE_LIMIT_PER_HOUR", 1)
    monkeypatch.setattr("authbackend.api.v1.auth.settings.LOGIN_RATE_LIMIT_PER_HOUR", 100)

    first = client.post("/api/v1/auth/register", json={"identifier": "alice", "password": "correct-password"})
    second = client.post("/api/v1/auth/register", json={"identifier": "bob", "password": "correct-password"})

    assert first.status_code == 201
    assert second.status_code == 429
    assert second.json()["code"] == "rate_limited"
    # logins are throttled separately
    assert client.post(LOGIN, json={"identifier": "alice", "password": "correct-password"}).status_code == 200
