"""Session validation for HTTP routes and the presence channel upgrade."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from starlette.requests import cookie_parser

from chatdesk.auth import decode_session_token
from chatdesk.config import Settings
from chatdesk.errors import PersistenceError
from chatdesk.storage import ChatStore

logger = structlog.get_logger(__name__)

# Policy violation; closing before accept makes the server refuse the upgrade.
WS_UNAUTHORIZED_CLOSE_CODE = 1008
DENIAL_RESPONSE_EXTENSION = "websocket.http.response"


@dataclass(frozen=True)
class SessionUser:
    """The authenticated principal behind a request or channel."""

    session_id: str
    user_id: int
    username: str
    is_admin: bool = False


class SessionValidator:
    """Resolve session cookies against the session store."""

    def __init__(self, store: ChatStore, settings: Settings) -> None:
        self._store = store
        self._settings = settings

    @property
    def cookie_name(self) -> str:
        return self._settings.session_cookie_name

    def validate_token(self, token: Optional[str]) -> Optional[SessionUser]:
        """Return the session user for a raw cookie value, or ``None``."""

        session_id = decode_session_token(token, self._settings)
        if session_id is None:
            return None
        try:
            row = self._store.get_active_session(session_id)
        except PersistenceError as exc:
            logger.warning("session_lookup_failed", error=str(exc))
            return None
        if row is None:
            return None
        return SessionUser(
            session_id=row["session_id"],
            user_id=int(row["user_id"]),
            username=row["username"],
            is_admin=bool(row["is_admin"]),
        )

    def validate_cookie_header(self, cookie_header: Optional[str]) -> Optional[SessionUser]:
        """Extract the session cookie from a ``Cookie`` header and validate it."""

        if not cookie_header:
            return None
        cookies = cookie_parser(cookie_header)
        return self.validate_token(cookies.get(self.cookie_name))

    async def authenticate_websocket(self, websocket: WebSocket) -> SessionUser:
        """Validate the handshake of *websocket* before it is accepted.

        Unauthenticated handshakes get an HTTP 401 denial response when the
        server supports it, otherwise a policy-violation close (1008).  Either
        way :class:`WebSocketDisconnect` is raised so the route never reaches
        ``accept``.
        """

        user = await asyncio.to_thread(self.validate_cookie_header, websocket.headers.get("cookie"))
        if user is None:
            details = {"path": websocket.url.path}
            if websocket.client:
                details["client"] = websocket.client.host
            logger.info("websocket_rejected", **details)
            if DENIAL_RESPONSE_EXTENSION in (websocket.scope.get("extensions") or {}):
                await websocket.send_denial_response(
                    JSONResponse({"error": "Authentication required"}, status_code=401)
                )
            else:
                await websocket.close(code=WS_UNAUTHORIZED_CLOSE_CODE)
            raise WebSocketDisconnect(code=WS_UNAUTHORIZED_CLOSE_CODE)
        return user


__all__ = ["SessionUser", "SessionValidator", "WS_UNAUTHORIZED_CLOSE_CODE"]
