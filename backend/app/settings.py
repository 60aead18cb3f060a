from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str
    session_ttl_hours: int
    demo_login_email: str
    openai_api_key: str
    vapi_api_key: str
    vapi_base_url: str
    vapi_assistant_id: str
    vapi_phone_number_id: str
    vapi_webhook_secret: str
    twilio_account_sid: str
    twilio_webhook_secret: str
    ghl_api_key: str
    ghl_webhook_secret: str
    call_window_timezone: str
    provider_timeout_seconds: int


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/recruit_caller.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        auth_enabled=_bool_env("AUTH_ENABLED", True),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
        session_ttl_hours=max(1, min(24 * 30, _int_env("SESSION_TTL_HOURS", 24))),
        demo_login_email=os.getenv("DEMO_LOGIN_EMAIL", "recruiter@demo.local").strip(),
        openai_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
        vapi_api_key=os.getenv("VAPI_API_KEY", "").strip(),
        vapi_base_url=os.getenv("VAPI_BASE_URL", "https://api.vapi.ai").strip().rstrip("/"),
        vapi_assistant_id=os.getenv("VAPI_ASSISTANT_ID", "").strip(),
        vapi_phone_number_id=os.getenv("VAPI_PHONE_NUMBER_ID", "").strip(),
        vapi_webhook_secret=os.getenv("VAPI_WEBHOOK_SECRET", "").strip(),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", "").strip(),
        twilio_webhook_secret=os.getenv("TWILIO_WEBHOOK_SECRET", "").strip(),
        ghl_api_key=os.getenv("GHL_API_KEY", "").strip(),
        ghl_webhook_secret=os.getenv("GHL_WEBHOOK_SECRET", "").strip(),
        call_window_timezone=os.getenv("CALL_WINDOW_TIMEZONE", "UTC").strip() or "UTC",
        provider_timeout_seconds=max(1, _int_env("PROVIDER_TIMEOUT_SECONDS", 15)),
    )
