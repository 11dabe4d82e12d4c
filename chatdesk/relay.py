"""Relay a streaming completion to one HTTP client as Server-Sent Events."""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple

import structlog
from prometheus_client import Counter, Histogram

from chatdesk.errors import ChatDeskError, CompletionError, CompletionStalled
from chatdesk.metrics import get_or_create_metric
from chatdesk.openai_client import CompletionClient, split_words
from chatdesk.prompts import build_chat_messages, resolve_system_prompt
from chatdesk.storage import ChatStore

logger = structlog.get_logger(__name__)

CHAT_STREAMS_TOTAL = get_or_create_metric(
    Counter,
    "chatdesk_chat_streams_total",
    "Chat completion streams by terminal outcome",
    ("outcome",),
)

CHAT_STREAM_SECONDS = get_or_create_metric(
    Histogram,
    "chatdesk_chat_stream_seconds",
    "Wall clock duration of chat completion streams",
)

UPSTREAM_ERROR_MESSAGE = "Failed to generate response"
STALLED_ERROR_MESSAGE = "The assistant stopped responding. Please try again."
SAVE_ERROR_MESSAGE = "Failed to save response"


def sse_event(payload: Mapping[str, Any]) -> str:
    """Encode *payload* as one ``data:`` frame of an event stream."""

    return f"data: {json.dumps(dict(payload), ensure_ascii=False)}\n\n"


@dataclass
class StreamingTurn:
    """State of one in-flight assistant response.

    Lives for exactly one HTTP request; the buffer is never shared.
    """

    thread_id: str
    domain: str
    user_id: Optional[int]
    sub_feature: Optional[str] = None
    user_turn_id: Optional[int] = None
    fragments: List[str] = field(default_factory=list)

    def append(self, fragment: str) -> None:
        self.fragments.append(fragment)

    @property
    def text(self) -> str:
        return "".join(self.fragments)


class CompletionRelay:
    """Persist a user turn, stream the model's reply and persist the result."""

    def __init__(
        self,
        store: ChatStore,
        client: CompletionClient,
        *,
        idle_timeout: float = 60.0,
        pacing_seconds: float = 0.0,
    ) -> None:
        self._store = store
        self._client = client
        self.idle_timeout = idle_timeout
        self.pacing_seconds = pacing_seconds

    def accept_turn(
        self,
        *,
        thread_id: str,
        domain: str,
        content: str,
        user_id: Optional[int],
        sub_feature: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[int] = None,
    ) -> Tuple[StreamingTurn, List[Dict[str, str]]]:
        """Store the user's turn and build the message list for the model.

        Blocking; run it off the event loop.  Raises
        :class:`~chatdesk.errors.PersistenceError` when the store fails, in
        which case nothing has been streamed yet.
        """

        user_turn_id = self._store.append_turn(
            thread_id,
            domain,
            "user",
            content,
            sub_feature,
            user_id,
            metadata=metadata,
            timestamp=timestamp,
        )
        system_prompt, source = resolve_system_prompt(self._store, domain, sub_feature)
        history = self._store.list_turns(thread_id, user_id=user_id)
        messages = build_chat_messages(system_prompt, history)
        logger.info(
            "chat_turn_accepted",
            thread_id=thread_id,
            domain=domain,
            sub_feature=sub_feature,
            prompt_source=source,
            history_turns=len(history),
            user_turn_id=user_turn_id,
        )
        turn = StreamingTurn(
            thread_id=thread_id,
            domain=domain,
            user_id=user_id,
            sub_feature=sub_feature,
            user_turn_id=user_turn_id,
        )
        return turn, messages

    async def _next_fragment(self, iterator: AsyncIterator[str]) -> str:
        if self.idle_timeout <= 0:
            return await iterator.__anext__()
        try:
            return await asyncio.wait_for(iterator.__anext__(), timeout=self.idle_timeout)
        except asyncio.TimeoutError as exc:
            raise CompletionStalled(
                f"No output from the model for {self.idle_timeout:g} seconds"
            ) from exc

    def _paced(self, fragment: str) -> List[str]:
        if self.pacing_seconds <= 0:
            return [fragment]
        return split_words(fragment) or [fragment]

    async def stream(
        self, turn: StreamingTurn, messages: List[Dict[str, str]]
    ) -> AsyncIterator[str]:
        """Yield SSE frames: content fragments then exactly one ``done`` or ``error``."""

        started = time.perf_counter()
        upstream = self._client.stream_chat(messages)
        iterator = upstream.__aiter__()
        outcome = "error"
        error_message: Optional[str] = None
        try:
            try:
                while True:
                    try:
                        fragment = await self._next_fragment(iterator)
                    except StopAsyncIteration:
                        break
                    if not fragment:
                        continue
                    for piece in self._paced(fragment):
                        turn.append(piece)
                        yield sse_event({"content": piece})
                        if self.pacing_seconds > 0:
                            await asyncio.sleep(self.pacing_seconds)
            except CompletionStalled as exc:
                logger.warning("chat_upstream_stalled", thread_id=turn.thread_id, error=str(exc))
                error_message = STALLED_ERROR_MESSAGE
            except CompletionError as exc:
                logger.error("chat_upstream_failed", thread_id=turn.thread_id, error=str(exc))
                error_message = UPSTREAM_ERROR_MESSAGE
            except Exception as exc:
                logger.exception("chat_upstream_unexpected_error", thread_id=turn.thread_id)
                error_message = UPSTREAM_ERROR_MESSAGE

            if error_message is not None:
                yield sse_event({"error": error_message})
                return

            try:
                message_id = await asyncio.to_thread(
                    self._store.append_turn,
                    turn.thread_id,
                    turn.domain,
                    "assistant",
                    turn.text,
                    turn.sub_feature,
                    turn.user_id,
                )
            except ChatDeskError as exc:
                logger.error("chat_response_save_failed", thread_id=turn.thread_id, error=str(exc))
                yield sse_event({"error": SAVE_ERROR_MESSAGE})
                return

            outcome = "done"
            logger.info(
                "chat_stream_completed",
                thread_id=turn.thread_id,
                message_id=message_id,
                fragments=len(turn.fragments),
                characters=len(turn.text),
            )
            yield sse_event({"done": True, "messageId": message_id})
        except (asyncio.CancelledError, GeneratorExit):
            outcome = "cancelled"
            logger.info(
                "chat_stream_cancelled",
                thread_id=turn.thread_id,
                fragments=len(turn.fragments),
            )
            raise
        finally:
            await _close_quietly(upstream)
            CHAT_STREAMS_TOTAL.labels(outcome=outcome).inc()
            CHAT_STREAM_SECONDS.observe(time.perf_counter() - started)


async def _close_quietly(upstream: Any) -> None:
    aclose = getattr(upstream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as exc:  # pragma: no cover - best effort cleanup
        logger.debug("chat_upstream_close_failed", error=str(exc))


__all__ = ["CompletionRelay", "StreamingTurn", "sse_event"]
