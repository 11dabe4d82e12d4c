"""Turn uploaded base64 payloads into searchable text."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass

import structlog

from chatdesk.errors import CompletionError, ValidationFailure
from chatdesk.openai_client import CompletionClient

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ExtractedFile:
    content: str
    size: int


def decode_base64(content_b64: str, *, max_bytes: int) -> bytes:
    """Strictly decode *content_b64*; strips an optional ``data:`` URI prefix."""

    payload = content_b64 or ""
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", 1)[1]
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationFailure("File content is not valid base64") from exc
    if len(raw) > max_bytes:
        raise ValidationFailure(f"File exceeds the {max_bytes} byte limit")
    return raw


async def extract_file_content(
    content_b64: str,
    file_type: str,
    client: CompletionClient,
    *,
    max_bytes: int,
) -> ExtractedFile:
    """Return the text stored for an upload.

    Images are described by the model; every other type is decoded as UTF-8
    with replacement characters for invalid bytes.
    """

    raw = decode_base64(content_b64, max_bytes=max_bytes)
    mime = (file_type or "").strip().lower()
    if mime.startswith("image/"):
        encoded = base64.b64encode(raw).decode("ascii")
        try:
            description = await client.describe_image(encoded, mime)
        except CompletionError as exc:
            logger.error("file_image_description_failed", file_type=mime, error=str(exc))
            raise ValidationFailure(f"Failed to extract content from file: {exc}") from exc
        logger.info("file_content_extracted", file_type=mime, mode="image", size=len(raw))
        return ExtractedFile(content=description, size=len(raw))

    text = raw.decode("utf-8", errors="replace")
    logger.info(
        "file_content_extracted",
        file_type=mime,
        mode="text" if mime.startswith("text/") else "fallback_text",
        size=len(raw),
    )
    return ExtractedFile(content=text, size=len(raw))


__all__ = ["ExtractedFile", "decode_base64", "extract_file_content"]
