"""Stream transcoder — provider-native chunks in, uniform SSE frames out.

Every delta becomes one ``data: {"choices":[{"delta":{"content":...}}]}``
frame and the stream always closes with exactly one ``data: [DONE]``.
Chunks that cannot be understood are skipped; a provider error ends the
stream without retracting anything already sent.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from langchain_core.messages import BaseMessageChunk

from chess_coach.errors import MalformedFrame, ProviderError, ProviderStreamError
from chess_coach.schemas import TERMINATION_FRAME, EventFrame

logger = logging.getLogger(__name__)


def extract_content(content: Any) -> str:
    """Normalize message content — Anthropic can return a list of blocks or a string."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        # Text from content blocks: [{"type": "text", "text": "..."}]; tool/json blocks carry no text
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and isinstance(block.get("text"), str):
                parts.append(block["text"])
        return "".join(parts)
    raise MalformedFrame(f"Unsupported content type {type(content).__name__}")


def _event_text(event: dict) -> str:
    """Text carried by a raw Anthropic stream event; raises on error events."""
    event_type = event.get("type")
    if event_type == "error":
        error = event.get("error")
        message = error.get("message") if isinstance(error, dict) else error
        raise ProviderStreamError(str(message or "Stream error"))
    if event_type == "content_block_delta":
        delta = event.get("delta")
        if not isinstance(delta, dict):
            raise MalformedFrame("content_block_delta without a delta object")
        text = delta.get("text", "")
        if not isinstance(text, str):
            raise MalformedFrame("content_block_delta text is not a string")
        return text
    if event_type is None:
        raise MalformedFrame("event without a type")
    # message_start, content_block_start, ping, message_delta, message_stop ...
    return ""


def chunk_text(chunk: Any) -> str:
    """Text delta carried by one provider-native chunk ("" for none).

    Raises MalformedFrame for chunks that cannot be parsed and
    ProviderStreamError for explicit error chunks.
    """
    if isinstance(chunk, BaseMessageChunk):
        return extract_content(chunk.content)
    if isinstance(chunk, (bytes, bytearray)):
        try:
            chunk = chunk.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedFrame(f"undecodable bytes: {e}") from e
    if isinstance(chunk, str):
        try:
            chunk = json.loads(chunk)
        except json.JSONDecodeError as e:
            raise MalformedFrame(f"invalid JSON: {e}") from e
    if isinstance(chunk, dict):
        return _event_text(chunk)
    raise MalformedFrame(f"unsupported chunk type {type(chunk).__name__}")


class StreamTranscoder:
    """Converts one provider stream into wire frames.

    With ``raise_before_first_frame`` set, a provider error that arrives
    before any frame was produced propagates to the caller, so the HTTP
    layer can still answer with an error status instead of a stream.
    """

    def __init__(self, *, raise_before_first_frame: bool = True) -> None:
        self.raise_before_first_frame = raise_before_first_frame
        self.frames_sent = 0
        self.skipped = 0
        self.terminated = False
        self.error: ProviderError | None = None

    async def transcode(self, chunks: AsyncIterable[Any]) -> AsyncIterator[str]:
        if self.terminated:
            raise RuntimeError("Transcoder already produced a terminated stream")

        try:
            async for chunk in chunks:
                try:
                    text = chunk_text(chunk)
                except MalformedFrame as e:
                    self.skipped += 1
                    logger.warning(f"Skipping malformed provider chunk: {e.detail}")
                    continue
                if not text:
                    continue
                self.frames_sent += 1
                yield EventFrame.from_delta(text).encode()
        except ProviderError as e:
            self.error = e
            if self.frames_sent == 0 and self.raise_before_first_frame:
                raise
            logger.error(
                f"Provider stream aborted after {self.frames_sent} frames: {e.detail}"
            )
        except Exception as e:
            if self.frames_sent == 0:
                raise
            # partial output stands; still terminate
            logger.error(
                f"Provider stream failed after {self.frames_sent} frames: {type(e).__name__}: {e}",
                exc_info=True,
            )

        self.terminated = True
        logger.info(f"Stream complete: frames={self.frames_sent}, skipped={self.skipped}")
        yield TERMINATION_FRAME
