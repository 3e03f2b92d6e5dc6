import os
from typing import Optional


def get_setting(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return an environment setting with an optional default."""
    return os.getenv(name, default)


def _int_setting(name: str, default: int, minimum: int = 1) -> int:
    raw = str(get_setting(name) or "").strip()
    try:
        parsed = int(raw) if raw else default
    except ValueError:
        parsed = default
    return max(minimum, parsed)


def get_database_url() -> str:
    """
    Return the database URL for SQLAlchemy.
    Defaults to a local SQLite file for development if not provided.
    """
    return get_setting("DATABASE_URL") or get_setting("POSTGRES_CONNECTION_STRING") or "sqlite:///./data/crm.db"


def get_auth_session_secret() -> str:
    for key in ("AUTH_SESSION_SECRET", "APP_SESSION_SECRET", "JWT_SECRET", "SECRET_KEY"):
        value = str(get_setting(key) or "").strip()
        if value:
            return value
    return ""


def get_auth_session_ttl_seconds() -> int:
    # Clamped to 15 minutes .. 7 days.
    return min(7 * 24 * 60 * 60, _int_setting("AUTH_SESSION_TTL_SECONDS", 12 * 60 * 60, minimum=15 * 60))


def get_report_settings() -> dict:
    """
    Default look-back windows (in days) for the reporting endpoints.
    """
    return {
        "default_period_days": _int_setting("REPORTS_DEFAULT_PERIOD_DAYS", 30),
        "territory_period_days": _int_setting("REPORTS_TERRITORY_PERIOD_DAYS", 90),
    }


def get_rate_limit_settings() -> dict:
    """
    Fixed-window request limits applied per (caller, endpoint).
    """
    return {
        "window_seconds": _int_setting("RATE_LIMIT_WINDOW_SECONDS", 15 * 60),
        "max_requests": _int_setting("RATE_LIMIT_MAX_REQUESTS", 100),
        "max_login_attempts": _int_setting("RATE_LIMIT_MAX_LOGIN_ATTEMPTS", 5),
        "max_failures": _int_setting("RATE_LIMIT_MAX_FAILURES", 10),
    }
