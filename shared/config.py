import os
from typing import Optional


def get_setting(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return an environment setting with an optional default."""
    return os.getenv(name, default)


def get_required_setting(name: str) -> str:
    """Return a required environment setting or raise a ValueError."""
    value = os.getenv(name)
    if not value:
        raise ValueError(f"Missing required environment variable: {name}")
    return value


def get_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off", ""}


def get_database_url() -> str:
    """
    Return the database URL for SQLAlchemy.
    Defaults to a local SQLite file for development if not provided.
    """
    return os.getenv("DATABASE_URL") or os.getenv("POSTGRES_CONNECTION_STRING") or "sqlite:///./horizon_dialer.db"


def get_public_api_base() -> str:
    """
    Base URL for Twilio webhooks to call back into this API (no trailing slash).
    """
    return (os.getenv("API_PUBLIC_BASE_URL") or "http://localhost:7071").rstrip("/")


def get_voice_settings() -> dict:
    """
    Voice/dialer settings shared by the token endpoint and the TwiML webhooks.
    """
    try:
        ttl = int(os.getenv("VOICE_TOKEN_TTL_SECONDS", "3600"))
    except ValueError:
        ttl = 3600
    return {
        "token_ttl_seconds": max(300, min(24 * 3600, ttl)),
        "fallback_caller_id": (os.getenv("TWILIO_CALLER_ID") or "+18881234567").strip(),
        "validate_signature": get_flag("TWILIO_VALIDATE_SIGNATURE", default=True),
        "twilio_api_base": (os.getenv("TWILIO_API_BASE_URL") or "https://api.twilio.com").rstrip("/"),
    }
