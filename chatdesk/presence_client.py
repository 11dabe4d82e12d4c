"""Python client for the ``/ws`` presence channel.

Mirrors what a browser tab does: generate an identity once, join a thread on
every (re)connect, reconnect after a fixed delay when the socket drops, and
send ``leave`` before a deliberate close.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import structlog
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake

logger = structlog.get_logger(__name__)

EventCallback = Callable[[Dict[str, Any]], Any]
Connector = Callable[..., Awaitable[Any]]

DEFAULT_RECONNECT_DELAY = 3.0


class PresenceClient:
    def __init__(
        self,
        url: str,
        thread_id: str,
        domain: Optional[str] = None,
        *,
        cookie: Optional[str] = None,
        on_event: Optional[EventCallback] = None,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        identity: Optional[str] = None,
        connect: Optional[Connector] = None,
    ) -> None:
        self.url = url
        self.thread_id = thread_id
        self.domain = domain
        self.identity = identity or uuid.uuid4().hex
        self.reconnect_delay = reconnect_delay
        self.present: Set[str] = set()
        self.typing: Set[str] = set()
        self.attempts = 0
        self._cookie = cookie
        self._on_event = on_event
        self._connect = connect or ws_connect
        self._ws: Any = None
        self._stopped = False
        self._joined = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._joined.is_set()

    async def wait_joined(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._joined.wait(), timeout)

    async def run(self) -> None:
        """Connect and relay events until :meth:`close` is called."""

        while not self._stopped:
            self.attempts += 1
            try:
                await self._run_once()
            except (OSError, InvalidHandshake, ConnectionClosed, asyncio.TimeoutError) as exc:
                logger.warning(
                    "presence_client_disconnected",
                    url=self.url,
                    attempt=self.attempts,
                    error=str(exc),
                )
            finally:
                self._ws = None
                self._joined.clear()
            if self._stopped:
                break
            logger.info("presence_client_reconnecting", delay=self.reconnect_delay)
            await asyncio.sleep(self.reconnect_delay)

    async def _run_once(self) -> None:
        headers = {"Cookie": self._cookie} if self._cookie else None
        ws = await self._connect(self.url, additional_headers=headers)
        self._ws = ws
        try:
            await self._send({"type": "join", "userId": self.identity, "threadId": self.thread_id, "domain": self.domain})
            self._joined.set()
            async for raw in ws:
                self._handle(raw)
        finally:
            if not self._stopped:
                try:
                    await ws.close()
                except Exception as exc:  # pragma: no cover - already closed
                    logger.debug("presence_client_close_failed", error=str(exc))

    def _handle(self, raw: Any) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", "replace")
        try:
            event = json.loads(raw)
        except ValueError:
            logger.debug("presence_client_bad_frame")
            return
        if not isinstance(event, dict):
            return
        kind = event.get("type")
        user_id = event.get("userId")
        if kind == "user_joined" and user_id:
            self.present.add(user_id)
        elif kind == "user_left" and user_id:
            self.present.discard(user_id)
            self.typing.discard(user_id)
        elif kind == "typing" and user_id:
            if event.get("isTyping"):
                self.typing.add(user_id)
            else:
                self.typing.discard(user_id)
        if self._on_event is not None:
            self._on_event(event)

    async def _send(self, payload: Dict[str, Any]) -> bool:
        ws = self._ws
        if ws is None:
            return False
        await ws.send(json.dumps({k: v for k, v in payload.items() if v is not None}))
        return True

    async def send_typing(self, is_typing: bool) -> bool:
        """Send a typing update; returns ``False`` while disconnected."""

        if not self.connected:
            return False
        return await self._send(
            {"type": "typing", "userId": self.identity, "threadId": self.thread_id, "isTyping": bool(is_typing)}
        )

    async def close(self) -> None:
        """Send ``leave``, close the socket and stop reconnecting."""

        self._stopped = True
        ws = self._ws
        if ws is None:
            return
        try:
            if self._joined.is_set():
                await self._send({"type": "leave", "userId": self.identity, "threadId": self.thread_id})
            await ws.close()
        except ConnectionClosed:
            pass
        finally:
            self._ws = None
            self._joined.clear()


__all__ = ["PresenceClient", "DEFAULT_RECONNECT_DELAY"]
