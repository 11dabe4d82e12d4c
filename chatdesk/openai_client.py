"""
Streaming wrapper for the OpenAI Chat Completion API with an offline fallback.

Behaviour hierarchy:
1. If USE_OFFLINE_MODEL is set, stream a deterministic placeholder without any
   external calls.
2. Otherwise call the real OpenAI API with ``stream=True``.

Any exception raised by the SDK is converted into a
:class:`~chatdesk.errors.CompletionError` so callers have a consistent error
path.  Cancellation is never converted.
"""

from __future__ import annotations

import hashlib
import re
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence

import structlog

from chatdesk.config import Settings
from chatdesk.errors import CompletionError

# ``openai`` is imported lazily only when needed to avoid requiring network
# configuration in offline deterministic mode.

logger = structlog.get_logger(__name__)

IMAGE_DESCRIPTION_PROMPT = (
    "Please analyze this image and provide a detailed description of what you see. "
    "Include any relevant details about objects, text, or notable elements in the image."
)

_WORD_RE = re.compile(r"\S+\s*|\s+")


class CompletionClient(Protocol):
    """What the chat relay and file extraction need from a model provider."""

    def stream_chat(self, messages: Sequence[Dict[str, str]]) -> AsyncIterator[str]:
        ...

    async def describe_image(self, content_b64: str, mime_type: str) -> str:
        ...


def _deterministic_placeholder(messages: Sequence[Dict[str, str]]) -> str:
    """Return a deterministic placeholder string based on the message content."""

    joined = "\n".join(f"{m.get('role')}:{m.get('content', '')}" for m in messages)
    h = hashlib.sha1(joined.encode("utf-8")).hexdigest()[:12]
    return f"Offline response ({h})"


def split_words(text: str) -> List[str]:
    """Split *text* into word fragments whose concatenation is *text*."""

    return _WORD_RE.findall(text)


class OfflineCompletionClient:
    """Deterministic client used when no network model may be called."""

    async def stream_chat(self, messages: Sequence[Dict[str, str]]) -> AsyncIterator[str]:
        for fragment in split_words(_deterministic_placeholder(messages)):
            yield fragment

    async def describe_image(self, content_b64: str, mime_type: str) -> str:
        digest = hashlib.sha1(content_b64.encode("utf-8")).hexdigest()[:12]
        return f"Offline image description ({mime_type}, {digest})"


class OpenAICompletionClient:
    """Chat completions through the ``openai`` SDK's async client."""

    def __init__(self, api_key: Optional[str], model: str = "gpt-4o", temperature: float = 0.7) -> None:
        self._api_key = api_key
        self._model = model
        self._temperature = temperature
        self._client: Any = None

    @property
    def model(self) -> str:
        return self._model

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        if not self._api_key:
            raise CompletionError("OpenAI key not configured.")
        from openai import AsyncOpenAI

        self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def stream_chat(self, messages: Sequence[Dict[str, str]]) -> AsyncIterator[str]:
        """Yield content deltas as they arrive from the API."""

        client = self._get_client()
        try:
            stream = await client.chat.completions.create(
                model=self._model,
                messages=list(messages),
                temperature=self._temperature,
                stream=True,
            )
        except Exception as exc:  # pragma: no cover - network errors / SDK issues
            raise CompletionError(f"Error calling OpenAI: {exc}") from exc

        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        except CompletionError:
            raise
        except Exception as exc:  # pragma: no cover - network errors / SDK issues
            raise CompletionError(f"OpenAI stream failed: {exc}") from exc
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                try:
                    await close()
                except Exception as exc:  # pragma: no cover - best effort cleanup
                    logger.debug("openai_stream_close_failed", error=str(exc))

    async def describe_image(self, content_b64: str, mime_type: str) -> str:
        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=self._model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": IMAGE_DESCRIPTION_PROMPT},
                            {
                                "type": "image_url",
                                "image_url": {"url": f"data:{mime_type};base64,{content_b64}"},
                            },
                        ],
                    }
                ],
            )
        except Exception as exc:  # pragma: no cover - network errors / SDK issues
            raise CompletionError(f"Error calling OpenAI: {exc}") from exc
        return response.choices[0].message.content or "Could not analyze image"


def get_completion_client(settings: Settings) -> CompletionClient:
    """Return the client matching the configured mode."""

    if settings.use_offline_model:
        return OfflineCompletionClient()
    return OpenAICompletionClient(settings.openai_api_key, model=settings.ai_model)


__all__ = [
    "CompletionClient",
    "OfflineCompletionClient",
    "OpenAICompletionClient",
    "get_completion_client",
    "split_words",
]
