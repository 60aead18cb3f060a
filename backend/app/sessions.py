from __future__ import annotations

from datetime import datetime, timedelta
from threading import Lock
from typing import Optional

from backend.app.models import SessionRecord, utc_now
from backend.app.persistence import SqlPersistence
from backend.app.store import new_id

# Demo accounts: email -> (password, roles).
DEMO_ACCOUNTS = {
    "recruiter@demo.local": ("password123", ["recruiter"]),
    "admin@demo.local": ("admin123", ["admin", "recruiter"]),
}


def authenticate_demo_account(email: str, password: str) -> Optional[list[str]]:
    account = DEMO_ACCOUNTS.get(email.strip().lower())
    if account is None or account[0] != password:
        return None
    return list(account[1])


class InMemorySessionStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._sessions: dict[str, SessionRecord] = {}

    def create(self, *, email: str, roles: list[str], ttl_hours: int) -> SessionRecord:
        now = utc_now()
        session = SessionRecord(
            id=new_id("sess"),
            user_id=email,
            email=email,
            roles=roles,
            expires_at_utc=now + timedelta(hours=ttl_hours),
            created_at_utc=now,
        )
        with self._lock:
            self._sessions[session.id] = session
        return session

    def get(self, session_id: str, *, now: Optional[datetime] = None) -> Optional[SessionRecord]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session and session.expires_at_utc <= (now or utc_now()):
                self._sessions.pop(session_id, None)
                return None
            return session

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)


class SqlSessionStore:
    """Sessions kept in the ``sessions`` table so they survive restarts."""

    def __init__(self, persistence: SqlPersistence) -> None:
        self.persistence = persistence

    def create(self, *, email: str, roles: list[str], ttl_hours: int) -> SessionRecord:
        now = utc_now()
        session = SessionRecord(
            id=new_id("sess"),
            user_id=email,
            email=email,
            roles=roles,
            expires_at_utc=now + timedelta(hours=ttl_hours),
            created_at_utc=now,
        )
        self.persistence.upsert("sessions", session)
        return session

    def get(self, session_id: str, *, now: Optional[datetime] = None) -> Optional[SessionRecord]:
        session = self.persistence.get("sessions", session_id)
        if session and session.expires_at_utc <= (now or utc_now()):
            self.persistence.delete("sessions", session_id)
            return None
        return session

    def delete(self, session_id: str) -> None:
        self.persistence.delete("sessions", session_id)
