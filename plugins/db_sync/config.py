"""
Runtime Configuration

Settings come from environment variables (optionally loaded from a .env file)
and are read once into an immutable SyncSettings instance.
"""

from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional
import logging
import os

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        logger.warning(f"Invalid integer for {name}={raw!r}, using default {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid number for {name}={raw!r}, using default {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    val = os.environ.get(name)
    if val is None:
        return default
    return val.lower() in ('true', '1', 'yes', 'on')


@dataclass(frozen=True)
class SyncSettings:
    """Engine and agent service settings."""

    batch_size: int = 5000
    concurrent_tables: int = 5
    agent_timeout: float = 30.0
    agent_max_attempts: int = 3
    agent_backoff_base: float = 1.0
    agent_backoff_max: float = 5.0
    agent_auth_key: Optional[str] = None
    allow_cookie_auth: bool = True
    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"
    db_connect_timeout: int = 30
    db_query_timeout: int = 60
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "SyncSettings":
        origins = os.environ.get("CORS_ORIGINS", "*")
        return cls(
            batch_size=_env_int("SYNC_BATCH_SIZE", 5000),
            concurrent_tables=_env_int("CONCURRENT_TABLES", 5),
            agent_timeout=_env_float("AGENT_TIMEOUT_SECONDS", 30.0),
            agent_max_attempts=_env_int("AGENT_MAX_ATTEMPTS", 3),
            agent_backoff_base=_env_float("AGENT_BACKOFF_BASE", 1.0),
            agent_backoff_max=_env_float("AGENT_BACKOFF_MAX", 5.0),
            agent_auth_key=os.environ.get("AGENT_AUTH_KEY") or None,
            allow_cookie_auth=_env_bool("ALLOW_COOKIE_AUTH", True),
            jwt_secret=os.environ.get("JWT_SECRET") or None,
            jwt_algorithm=os.environ.get("JWT_ALGORITHM", "HS256"),
            db_connect_timeout=_env_int("DB_CONNECT_TIMEOUT", 30),
            db_query_timeout=_env_int("DB_QUERY_TIMEOUT", 60),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            port=_env_int("PORT", 8000),
        )


@lru_cache()
def get_settings() -> SyncSettings:
    """Load .env (if present) and return the cached settings."""
    load_dotenv()
    return SyncSettings.from_env()
