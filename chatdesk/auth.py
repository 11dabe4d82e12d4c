"""Authentication helpers: password hashing, registration and session tokens."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import jwt
import structlog
from passlib.context import CryptContext

from chatdesk.config import Settings
from chatdesk.errors import ValidationFailure
from chatdesk.storage import ChatStore

logger = structlog.get_logger(__name__)

# Password hashing context using bcrypt
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

SESSION_TOKEN_ALGORITHM = "HS256"
MIN_PASSWORD_LENGTH = 6


def hash_password(password: str) -> str:
    """Hash a plaintext password using a secure algorithm."""

    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    """Verify a plaintext password against a stored hash."""

    try:
        return pwd_context.verify(password, hashed)
    except Exception:
        return False


def register_user(
    store: ChatStore,
    username: str,
    password: str,
    *,
    is_admin: bool = False,
    domain: Optional[str] = None,
    practice_area: Optional[str] = None,
) -> Dict[str, Any]:
    """Register a new user and return the stored row."""

    username = (username or "").strip()
    if not username:
        raise ValidationFailure("Username is required")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationFailure(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        )
    if store.get_user_by_username(username) is not None:
        raise ValidationFailure("Username already exists")

    user = store.create_user(
        username,
        hash_password(password),
        is_admin=is_admin,
        domain=domain,
        practice_area=practice_area,
    )
    logger.info("user_registered", user_id=user.get("id"), is_admin=is_admin)
    return user


def authenticate_user(store: ChatStore, username: str, password: str) -> Optional[Dict[str, Any]]:
    """Return the user row when the credentials are valid, otherwise ``None``."""

    user = store.get_user_by_username((username or "").strip())
    if not user:
        return None
    if not verify_password(password, user["password_hash"]):
        return None
    return user


def create_session_token(session_id: str, user: Dict[str, Any], settings: Settings) -> str:
    """Sign a cookie value that carries the session identifier."""

    payload = {
        "sid": session_id,
        "sub": str(user["id"]),
        "exp": datetime.now(timezone.utc) + timedelta(seconds=settings.session_ttl_seconds),
    }
    return jwt.encode(payload, settings.session_secret, algorithm=SESSION_TOKEN_ALGORITHM)


def decode_session_token(token: Optional[str], settings: Settings) -> Optional[str]:
    """Return the session identifier inside *token* or ``None`` if invalid."""

    if not token:
        return None
    try:
        data = jwt.decode(token, settings.session_secret, algorithms=[SESSION_TOKEN_ALGORITHM])
    except jwt.PyJWTError:
        return None
    sid = data.get("sid")
    if not isinstance(sid, str) or not sid:
        return None
    return sid


def start_session(
    store: ChatStore,
    user: Dict[str, Any],
    settings: Settings,
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Tuple[str, str]:
    """Create a session row for *user*; returns ``(session_id, cookie_value)``."""

    session_id = store.create_session(
        int(user["id"]),
        ttl_seconds=settings.session_ttl_seconds,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return session_id, create_session_token(session_id, user, settings)


__all__ = [
    "hash_password",
    "verify_password",
    "register_user",
    "authenticate_user",
    "create_session_token",
    "decode_session_token",
    "start_session",
    "MIN_PASSWORD_LENGTH",
]
