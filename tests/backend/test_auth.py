from __future__ import annotations

from datetime import datetime, timedelta

import jwt
from fastapi.testclient import TestClient

from backend.app.auth import issue_session_token
from backend.app.main import create_app
from backend.app.models import SessionRecord, utc_now
from backend.app.sessions import InMemorySessionStore


def _auth_client(monkeypatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "true")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("DEMO_LOGIN_EMAIL", "recruiter@demo.local")
    return TestClient(create_app())


def _login(client: TestClient, email: str, password: str) -> str:
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["sessionId"]


def test_auth_blocks_missing_token_when_enabled(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    assert client.get("/api/vacancies").status_code == 401
    assert client.get("/api/auth/me").status_code == 401


def test_login_returns_session_usable_as_bearer(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    response = client.post(
        "/api/auth/login",
        json={"email": "recruiter@demo.local", "password": "password123"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["user"] == {
        "id": "recruiter@demo.local",
        "email": "recruiter@demo.local",
        "roles": ["recruiter"],
    }
    assert "expiresAtUtc" in body

    headers = {"Authorization": f"Bearer {body['sessionId']}"}
    assert client.get("/api/vacancies", headers=headers).status_code == 200
    me = client.get("/api/auth/me", headers=headers)
    assert me.json()["email"] == "recruiter@demo.local"


def test_wrong_password_is_rejected(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    response = client.post(
        "/api/auth/login",
        json={"email": "recruiter@demo.local", "password": "nope"},
    )
    assert response.status_code == 401


def test_logout_invalidates_session(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    token = _login(client, "admin@demo.local", "admin123")
    headers = {"Authorization": f"Bearer {token}"}

    assert client.post("/api/auth/logout", headers=headers).json() == {"success": True}
    assert client.get("/api/vacancies", headers=headers).status_code == 401


def test_demo_login_uses_configured_account(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    response = client.post("/api/auth/demo")
    assert response.status_code == 200
    assert response.json()["user"]["email"] == "recruiter@demo.local"


def test_token_signed_with_other_secret_is_rejected(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    forged = jwt.encode(
        {
            "sub": "intruder",
            "sid": "sess_forged",
            "roles": ["admin"],
            "exp": datetime.utcnow() + timedelta(hours=1),
        },
        "other-secret",
        algorithm="HS256",
    )
    response = client.get("/api/vacancies", headers={"Authorization": f"Bearer {forged}"})
    assert response.status_code == 401


def test_token_for_unknown_session_is_rejected(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    token = jwt.encode(
        {
            "sub": "recruiter@demo.local",
            "sid": "sess_never_created",
            "roles": ["recruiter"],
            "exp": datetime.utcnow() + timedelta(hours=1),
        },
        "test-secret",
        algorithm="HS256",
    )
    response = client.get("/api/vacancies", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert response.json()["detail"] == "session expired or logged out"


def test_only_admin_may_write_raw_settings(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    recruiter = {"Authorization": f"Bearer {_login(client, 'recruiter@demo.local', 'password123')}"}
    admin = {"Authorization": f"Bearer {_login(client, 'admin@demo.local', 'admin123')}"}

    payload = {"key": "company_name", "value": "Acme"}
    assert client.post("/api/settings", json=payload, headers=recruiter).status_code == 403
    assert client.post("/api/settings", json=payload, headers=admin).status_code == 200


def test_webhooks_and_ops_routes_are_public_when_auth_enabled(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    assert client.post("/api/webhooks/ghl", json={"id": "ghl_evt_1"}).status_code == 200
    assert client.get("/health").status_code == 200
    assert client.get("/api/health").status_code == 200
    assert client.get("/api/connectors/test").status_code == 200


def test_session_store_expires_sessions_lazily() -> None:
    store = InMemorySessionStore()
    session = store.create(email="recruiter@demo.local", roles=["recruiter"], ttl_hours=24)

    assert store.get(session.id) == session
    later = session.expires_at_utc + timedelta(seconds=1)
    assert store.get(session.id, now=later) is None
    assert store.get(session.id) is None


def test_me_reports_session_email_not_user_id(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    now = utc_now()
    session = SessionRecord(
        id="sess_custom",
        user_id="usr_42",
        email="ops@demo.local",
        roles=["recruiter"],
        expires_at_utc=now + timedelta(hours=1),
        created_at_utc=now,
    )
    client.app.state.session_store._sessions[session.id] = session
    token = issue_session_token(client.app.state.settings, session)

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json() == {"id": "usr_42", "email": "ops@demo.local", "roles": ["recruiter"]}
