"""Thread-scoped presence and typing broadcast over WebSockets.

Each accepted socket gets a :class:`PresenceChannel` with its own bounded
outbound queue and writer task, so fan-out never awaits a peer.  The registry
of joined connections is owned by a :class:`PresenceBroadcaster` instance and
is only mutated from synchronous code running on the event loop.
"""

from __future__ import annotations

import asyncio
import enum
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set

import structlog
from fastapi import WebSocket
from prometheus_client import Counter, Gauge
from starlette.websockets import WebSocketState

from chatdesk.metrics import get_or_create_metric
from chatdesk.session_gate import SessionUser
from chatdesk.time_utils import epoch_millis

logger = structlog.get_logger(__name__)

Authenticator = Callable[[WebSocket], Awaitable[SessionUser]]

PRESENCE_CONNECTIONS = get_or_create_metric(
    Gauge,
    "chatdesk_presence_connections",
    "Open presence channels",
)
PRESENCE_EVENTS_DROPPED = get_or_create_metric(
    Counter,
    "chatdesk_presence_events_dropped_total",
    "Presence events dropped before relay",
    ("reason",),
)
PRESENCE_SLOW_CONSUMERS = get_or_create_metric(
    Counter,
    "chatdesk_presence_slow_consumers_total",
    "Presence channels closed because their outbound queue was full",
)

# Try again later: the peer could not keep up with the event rate.
SLOW_CONSUMER_CLOSE_CODE = 1013
REPLACED_CLOSE_CODE = 4000


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    JOINED = "joined"
    TYPING = "typing"
    IDLE = "idle"
    LEFT = "left"


_ACTIVE_STATES = frozenset({ConnectionState.JOINED, ConnectionState.TYPING, ConnectionState.IDLE})


class PresenceProtocolError(ValueError):
    """A client event that cannot be relayed."""

    reason = "malformed"


class InvalidTransition(PresenceProtocolError):
    """An event that is not legal in the connection's current state."""

    reason = "invalid_transition"


def transition(
    state: ConnectionState, event: str, is_typing: Optional[bool] = None
) -> ConnectionState:
    """Return the state reached from *state* on *event* or raise :class:`InvalidTransition`."""

    if event == "join" and state is ConnectionState.CONNECTING:
        return ConnectionState.JOINED
    if event == "typing" and state in _ACTIVE_STATES:
        return ConnectionState.TYPING if is_typing else ConnectionState.IDLE
    if event == "leave" and state in _ACTIVE_STATES:
        return ConnectionState.LEFT
    if event == "close" and state is not ConnectionState.LEFT:
        return ConnectionState.LEFT
    raise InvalidTransition(f"{event!r} is not allowed while {state.value}")


@dataclass(frozen=True)
class PresenceEvent:
    """A validated client to server event."""

    type: str
    user_id: str
    thread_id: Optional[str] = None
    domain: Optional[str] = None
    is_typing: Optional[bool] = None

    @classmethod
    def parse(cls, raw: str) -> "PresenceEvent":
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise PresenceProtocolError("payload is not valid JSON") from exc
        if not isinstance(data, dict):
            raise PresenceProtocolError("payload must be a JSON object")

        event_type = data.get("type")
        if event_type not in {"join", "typing", "leave"}:
            raise PresenceProtocolError(f"unsupported event type {event_type!r}")

        user_id = data.get("userId")
        if not isinstance(user_id, str) or not user_id.strip():
            raise PresenceProtocolError("userId is required")

        thread_id = data.get("threadId")
        if thread_id is not None and not isinstance(thread_id, str):
            raise PresenceProtocolError("threadId must be a string")
        if event_type == "join" and not (thread_id or "").strip():
            raise PresenceProtocolError("threadId is required to join")

        is_typing = data.get("isTyping")
        if event_type == "typing" and not isinstance(is_typing, bool):
            raise PresenceProtocolError("isTyping must be a boolean")

        domain = data.get("domain")
        return cls(
            type=event_type,
            user_id=user_id.strip(),
            thread_id=thread_id.strip() if isinstance(thread_id, str) else None,
            domain=domain if isinstance(domain, str) else None,
            is_typing=is_typing if event_type == "typing" else None,
        )


class PresenceChannel:
    """One accepted socket with a bounded, non-blocking outbound queue."""

    def __init__(
        self,
        websocket: Any,
        *,
        queue_size: int = 64,
        on_overflow: Optional[Callable[["PresenceChannel"], None]] = None,
    ) -> None:
        self.websocket = websocket
        self.state = ConnectionState.CONNECTING
        self.identity: Optional[str] = None
        self.session_user: Optional[SessionUser] = None
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=queue_size)
        self._on_overflow = on_overflow
        self._writer: Optional[asyncio.Task[None]] = None
        self._close_task: Optional[asyncio.Task[None]] = None
        self._closing = False
        self._socket_closed = False

    @property
    def closed(self) -> bool:
        return self._closing

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain_forever())

    def send_nowait(self, payload: Mapping[str, Any]) -> bool:
        """Queue *payload* for delivery; never suspends."""

        if self._closing:
            return False
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            PRESENCE_SLOW_CONSUMERS.inc()
            logger.warning("presence_slow_consumer", identity=self.identity)
            self.close_soon(SLOW_CONSUMER_CLOSE_CODE)
            if self._on_overflow is not None:
                self._on_overflow(self)
            return False
        return True

    async def _drain_forever(self) -> None:
        while True:
            payload = await self._queue.get()
            try:
                await self.websocket.send_json(payload)
            except Exception as exc:
                logger.debug("presence_send_failed", identity=self.identity, error=str(exc))
                self._closing = True
                self._discard_pending()
                return
            finally:
                self._queue.task_done()

    def _discard_pending(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued payload has been handed to the socket."""

        if self._writer is None or self._writer.done():
            return
        await self._queue.join()

    def close_soon(self, code: int = 1000) -> None:
        if self._closing:
            return
        self._closing = True
        self._close_task = asyncio.create_task(self.aclose(code))

    async def wait_closed(self) -> None:
        if self._close_task is not None:
            await self._close_task

    async def aclose(self, code: int = 1000) -> None:
        """Stop the writer and close the socket if it is still open."""

        self._closing = True
        if self._socket_closed:
            return
        self._socket_closed = True
        writer = self._writer
        if writer is not None and not writer.done():
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass
        self._discard_pending()
        ws = self.websocket
        if (
            getattr(ws, "application_state", WebSocketState.CONNECTED) is WebSocketState.DISCONNECTED
            or getattr(ws, "client_state", WebSocketState.CONNECTED) is WebSocketState.DISCONNECTED
        ):
            return
        try:
            await ws.close(code=code)
        except Exception as exc:  # already closed by the peer
            logger.debug("presence_close_failed", identity=self.identity, error=str(exc))


@dataclass
class ConnectionRecord:
    """A joined connection, keyed by the client generated identity."""

    identity: str
    thread_id: str
    channel: PresenceChannel
    domain: Optional[str] = None
    session_user_id: Optional[int] = None
    joined_at: int = field(default_factory=epoch_millis)
    is_typing: bool = False


class PresenceBroadcaster:
    """Relay join/leave/typing events to every connection in the same thread."""

    def __init__(self, *, queue_size: int = 64) -> None:
        self.queue_size = queue_size
        self._records: Dict[str, ConnectionRecord] = {}
        self._channels: Set[PresenceChannel] = set()

    # -- introspection -------------------------------------------------

    def records(self) -> List[ConnectionRecord]:
        return list(self._records.values())

    def get(self, identity: str) -> Optional[ConnectionRecord]:
        return self._records.get(identity)

    def thread_members(self, thread_id: str) -> List[str]:
        return [r.identity for r in self._records.values() if r.thread_id == thread_id]

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    # -- socket lifecycle ----------------------------------------------

    async def handle(self, websocket: WebSocket, authenticator: Authenticator) -> None:
        """Authenticate *websocket*, then relay its events until it closes."""

        user = await authenticator(websocket)
        await websocket.accept()
        channel = self.open_channel(websocket, user)
        try:
            while True:
                message = await websocket.receive()
                if message.get("type") == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None and message.get("bytes") is not None:
                    raw = message["bytes"].decode("utf-8", "replace")
                if raw is None:
                    continue
                self.dispatch(channel, raw)
        except Exception as exc:  # pragma: no cover - transport failure
            logger.debug("presence_receive_error", identity=channel.identity, error=str(exc))
        finally:
            await self.close_channel(channel)

    def open_channel(self, websocket: Any, user: Optional[SessionUser] = None) -> PresenceChannel:
        """Register an accepted socket and queue the connection acknowledgement."""

        channel = PresenceChannel(
            websocket, queue_size=self.queue_size, on_overflow=self._on_overflow
        )
        channel.session_user = user
        channel.start()
        self._channels.add(channel)
        PRESENCE_CONNECTIONS.inc()
        channel.send_nowait({"type": "connection", "status": "connected"})
        logger.info(
            "presence_channel_opened",
            user_id=user.user_id if user else None,
            channels=len(self._channels),
        )
        return channel

    async def close_channel(self, channel: PresenceChannel, code: int = 1000) -> None:
        self.disconnect(channel)
        if channel in self._channels:
            self._channels.discard(channel)
            PRESENCE_CONNECTIONS.dec()
        await channel.aclose(code)

    async def close_all(self) -> None:
        """Close every channel; used on application shutdown."""

        for channel in list(self._channels):
            await self.close_channel(channel, code=1001)
        self._records.clear()

    # -- event handling ------------------------------------------------

    def dispatch(self, channel: PresenceChannel, raw: str) -> None:
        """Parse and apply one inbound frame; bad frames are logged and dropped."""

        try:
            self.apply(channel, PresenceEvent.parse(raw))
        except PresenceProtocolError as exc:
            PRESENCE_EVENTS_DROPPED.labels(reason=exc.reason).inc()
            logger.info(
                "presence_event_dropped",
                identity=channel.identity,
                state=channel.state.value,
                reason=exc.reason,
                error=str(exc),
            )

    def apply(self, channel: PresenceChannel, event: PresenceEvent) -> None:
        """Apply a validated event; raises :class:`PresenceProtocolError` subclasses."""

        if event.type == "join":
            self._join(channel, event)
        elif event.type == "typing":
            self._typing(channel, event)
        else:
            self._leave(channel, event)

    def disconnect(self, channel: PresenceChannel) -> Optional[ConnectionRecord]:
        """Handle the channel going away; safe to call more than once."""

        if channel.state is ConnectionState.LEFT:
            return None
        channel.state = transition(channel.state, "close")
        record = self._record_of(channel)
        if record is None:
            return None
        self._remove(record)
        return record

    def _join(self, channel: PresenceChannel, event: PresenceEvent) -> None:
        next_state = transition(channel.state, "join")
        if event.thread_id is None:
            raise PresenceProtocolError("join requires threadId")
        stale = self._records.get(event.user_id)
        if stale is not None and stale.channel is not channel:
            logger.info("presence_stale_record_replaced", identity=event.user_id, thread_id=stale.thread_id)
            stale.channel.state = ConnectionState.LEFT
            self._remove(stale)
            stale.channel.close_soon(REPLACED_CLOSE_CODE)

        channel.state = next_state
        channel.identity = event.user_id
        record = ConnectionRecord(
            identity=event.user_id,
            thread_id=event.thread_id,
            channel=channel,
            domain=event.domain,
            session_user_id=channel.session_user.user_id if channel.session_user else None,
        )
        self._records[record.identity] = record
        logger.info("presence_joined", identity=record.identity, thread_id=record.thread_id)
        self._broadcast(
            record.thread_id,
            {"type": "user_joined", "userId": record.identity, "timestamp": epoch_millis()},
        )

    def _typing(self, channel: PresenceChannel, event: PresenceEvent) -> None:
        next_state = transition(channel.state, "typing", event.is_typing)
        record = self._owned_record(channel, event)
        channel.state = next_state
        record.is_typing = bool(event.is_typing)
        self._broadcast(
            record.thread_id,
            {"type": "typing", "userId": record.identity, "isTyping": record.is_typing},
        )

    def _leave(self, channel: PresenceChannel, event: PresenceEvent) -> None:
        next_state = transition(channel.state, "leave")
        record = self._owned_record(channel, event)
        channel.state = next_state
        self._remove(record)

    def _record_of(self, channel: PresenceChannel) -> Optional[ConnectionRecord]:
        if channel.identity is None:
            return None
        record = self._records.get(channel.identity)
        if record is None or record.channel is not channel:
            return None
        return record

    def _owned_record(self, channel: PresenceChannel, event: PresenceEvent) -> ConnectionRecord:
        record = self._record_of(channel)
        if record is None:
            raise InvalidTransition("connection has no registered presence")
        if event.user_id != record.identity:
            raise PresenceProtocolError("userId does not match the joined identity")
        return record

    def _remove(self, record: ConnectionRecord) -> bool:
        """Drop *record* if it is still the registered one; broadcasts ``user_left`` once."""

        if self._records.get(record.identity) is not record:
            return False
        del self._records[record.identity]
        logger.info("presence_left", identity=record.identity, thread_id=record.thread_id)
        self._broadcast(
            record.thread_id,
            {"type": "user_left", "userId": record.identity, "timestamp": epoch_millis()},
        )
        return True

    def _broadcast(self, thread_id: str, payload: Mapping[str, Any]) -> None:
        targets = [r for r in self._records.values() if r.thread_id == thread_id]
        for record in targets:
            record.channel.send_nowait(payload)

    def _on_overflow(self, channel: PresenceChannel) -> None:
        # Removal and its user_left wait until the current broadcast is done.
        channel.state = ConnectionState.LEFT
        asyncio.get_running_loop().call_soon(self._evict, channel)

    def _evict(self, channel: PresenceChannel) -> None:
        record = self._record_of(channel)
        if record is not None:
            self._remove(record)


__all__ = [
    "ConnectionRecord",
    "ConnectionState",
    "InvalidTransition",
    "PresenceBroadcaster",
    "PresenceChannel",
    "PresenceEvent",
    "PresenceProtocolError",
    "transition",
]
