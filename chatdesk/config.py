"""Runtime configuration for the ChatDesk backend.

Values are read from the environment once (after an optional ``.env`` file has
been loaded) and cached.  Tests that need different values should call
``get_settings.cache_clear()`` after patching the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

try:  # Load environment variables from a .env file if present
    from dotenv import load_dotenv

    load_dotenv()
except Exception:  # pragma: no cover - optional dependency
    pass


APP_NAME = "ChatDesk"


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)  # type: ignore[arg-type]
    except ValueError as exc:  # pragma: no cover - clearly surface misconfiguration
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    """Resolved application settings."""

    environment: str = "development"
    log_level: str = "INFO"
    session_secret: str = "chatdesk-dev-secret"
    session_cookie_name: str = "chatdesk.sid"
    session_ttl_seconds: int = 86400
    openai_api_key: Optional[str] = None
    ai_model: str = "gpt-4o"
    use_offline_model: bool = False
    completion_idle_timeout: float = 60.0
    stream_pacing_seconds: float = 0.0
    presence_queue_size: int = 64
    max_upload_bytes: int = 10 * 1024 * 1024

    @property
    def secure_cookies(self) -> bool:
        return self.environment == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the active settings derived from the environment."""

    return Settings(
        environment=os.getenv("ENVIRONMENT", "development").lower(),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        session_secret=os.getenv("SESSION_SECRET") or "chatdesk-dev-secret",
        session_cookie_name=os.getenv("SESSION_COOKIE_NAME") or "chatdesk.sid",
        session_ttl_seconds=max(60, _env_int("SESSION_TTL_SECONDS", 86400)),
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        ai_model=os.getenv("AI_MODEL", "gpt-4o"),
        use_offline_model=_env_flag("USE_OFFLINE_MODEL"),
        completion_idle_timeout=max(0.0, _env_float("COMPLETION_IDLE_TIMEOUT", 60.0)),
        stream_pacing_seconds=max(0.0, _env_float("STREAM_PACING_SECONDS", 0.0)),
        presence_queue_size=max(1, _env_int("PRESENCE_QUEUE_SIZE", 64)),
        max_upload_bytes=max(1, _env_int("MAX_UPLOAD_BYTES", 10 * 1024 * 1024)),
    )


__all__ = ["APP_NAME", "Settings", "get_settings"]
