# mindmate/config.py
import json
import os
from pathlib import Path

from dotenv import load_dotenv

# load .env into process env vars
ROOT = Path(__file__).resolve().parents[1]
load_dotenv(ROOT / ".env")


def _as_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in ("1", "true", "yes", "y", "on")


def _as_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, default)).strip())
    except Exception:
        return default


def _as_list(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default) or ""
    return [p.strip() for p in raw.replace(" ", ",").split(",") if p.strip()]


class Settings:
    # App
    ENV: str = os.getenv("ENV", "dev")
    PORT: int = _as_int("PORT", 8000)
    TZ: str = os.getenv("TZ", "UTC")
    APP_BASE_URL: str = os.getenv("APP_BASE_URL", "http://localhost:3000").rstrip("/")
    APP_NAME: str = os.getenv("APP_NAME", "MindMate")

    # Storage
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///data/app.db")

    # Auth
    JWT_SECRET: str = (os.getenv("JWT_SECRET") or "dev-secret").strip()
    ACCESS_TOKEN_EXPIRE_MINUTES: int = _as_int("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7)
    SESSION_COOKIE_NAME: str = os.getenv("SESSION_COOKIE_NAME", "session")
    PASSWORD_RESET_MINUTES: int = _as_int("PASSWORD_RESET_MINUTES", 60)

    # Scheduled-job endpoints (Authorization: Bearer <CRON_SECRET>)
    CRON_SECRET: str = (os.getenv("CRON_SECRET") or "").strip()

    # Google Tasks OAuth
    GOOGLE_CLIENT_ID: str = os.getenv("GOOGLE_CLIENT_ID", "")
    GOOGLE_CLIENT_SECRET: str = os.getenv("GOOGLE_CLIENT_SECRET", "")
    GOOGLE_OAUTH_REDIRECT_URI: str = os.getenv(
        "GOOGLE_OAUTH_REDIRECT_URI", "http://localhost:8000/google/callback"
    )
    GOOGLE_SCOPES: list[str] = _as_list("GOOGLE_SCOPES", "https://www.googleapis.com/auth/tasks")
    REMOTE_SYNC_INTERVAL_MINUTES: int = _as_int("REMOTE_SYNC_INTERVAL_MINUTES", 30)

    # Web push (VAPID)
    VAPID_PUBLIC_KEY: str = os.getenv("VAPID_PUBLIC_KEY", "").strip()
    VAPID_PRIVATE_KEY: str = os.getenv("VAPID_PRIVATE_KEY", "").strip()
    VAPID_SUBJECT: str = os.getenv("VAPID_SUBJECT", "mailto:admin@example.com").strip()

    # Notification loop
    NOTIFICATION_LOOP_SECONDS: int = _as_int("NOTIFICATION_LOOP_SECONDS", 30)
    NOTIFICATION_LOOP_MAX_HOURS: int = _as_int("NOTIFICATION_LOOP_MAX_HOURS", 24)
    NOTIFICATION_LOOP_AUTOSTART: bool = _as_bool("NOTIFICATION_LOOP_AUTOSTART", False)

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    JOBS_LOG_LEVEL: str = os.getenv("JOBS_LOG_LEVEL", "INFO").strip().upper()

    # Email
    EMAIL_DRY_RUN: bool = _as_bool("EMAIL_DRY_RUN", True)
    SMTP_HOST: str = os.getenv("SMTP_HOST", "")
    SMTP_PORT: int = _as_int("SMTP_PORT", 587)
    SMTP_USERNAME: str = os.getenv("SMTP_USERNAME", "")
    SMTP_PASSWORD: str = os.getenv("SMTP_PASSWORD", "")
    SENDGRID_API_KEY: str = os.getenv("SENDGRID_API_KEY", "").strip()
    FROM_EMAIL: str = os.getenv("FROM_EMAIL", "no-reply@example.com")
    FROM_NAME: str = os.getenv("FROM_NAME", "MindMate")

    # Extra CORS origins, JSON list or comma separated
    _raw_origins = os.getenv("CORS_ORIGINS", "")
    try:
        CORS_ORIGINS = json.loads(_raw_origins) if _raw_origins.strip().startswith("[") else \
            [o.strip() for o in _raw_origins.split(",") if o.strip()]
    except Exception:
        CORS_ORIGINS = []


settings = Settings()

# expose selected fields as module-level aliases
ENV = settings.ENV
TZ = settings.TZ
APP_NAME = settings.APP_NAME
APP_BASE_URL = settings.APP_BASE_URL
CRON_SECRET = settings.CRON_SECRET
JWT_SECRET = settings.JWT_SECRET

# Email aliases
EMAIL_DRY_RUN = settings.EMAIL_DRY_RUN
SMTP_HOST = settings.SMTP_HOST
SMTP_PORT = settings.SMTP_PORT
SMTP_USERNAME = settings.SMTP_USERNAME
SMTP_PASSWORD = settings.SMTP_PASSWORD
SENDGRID_API_KEY = settings.SENDGRID_API_KEY
FROM_EMAIL = settings.FROM_EMAIL
FROM_NAME = settings.FROM_NAME
