"""
Runtime configuration for KEYWARD.

All values come from environment variables; sensitive values go through
``get_secret`` so Docker secret files work as well.
"""
import os
from dataclasses import dataclass
from functools import lru_cache

from .utils.secrets import get_secret


@dataclass(frozen=True)
class Settings:
    """Relying-party identity, lifetimes and verifier tolerances."""

    database_url: str
    rp_id: str = "localhost"
    origin: str = "http://localhost:4321"
    # Accepted TOTP steps on either side of the current one (0 = strict).
    totp_window: int = 0
    session_days: int = 30
    password_reset_minutes: int = 10
    challenge_ttl_seconds: int = 300

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = os.getenv("KEYWARD_DATABASE_URL")
        if not database_url:
            host = os.getenv("POSTGRES_HOST", "localhost")
            port = os.getenv("POSTGRES_PORT", "5432")
            db = os.getenv("POSTGRES_DB", "keyward")
            user = os.getenv("POSTGRES_USER", "keyward_user")
            password = get_secret("POSTGRES_PASSWORD", "")
            database_url = f"postgresql://{user}:{password}@{host}:{port}/{db}"

        return cls(
            database_url=database_url,
            rp_id=os.getenv("KEYWARD_RP_ID", "localhost"),
            origin=os.getenv("KEYWARD_ORIGIN", "http://localhost:4321"),
            totp_window=int(os.getenv("KEYWARD_TOTP_WINDOW", "0")),
            session_days=int(os.getenv("KEYWARD_SESSION_DAYS", "30")),
            password_reset_minutes=int(os.getenv("KEYWARD_PASSWORD_RESET_MINUTES", "10")),
            challenge_ttl_seconds=int(os.getenv("KEYWARD_WEBAUTHN_CHALLENGE_TTL", "300")),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process-wide settings, read once from the environment."""
    return Settings.from_env()
