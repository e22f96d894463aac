"""Client stream consumer — rebuilds the assistant reply from the SSE wire.

``ChatStreamConsumer.send`` posts one chat turn and grows the last
assistant message of a ``Conversation`` as frames arrive. ``cancel()``
aborts the in-flight read; whatever was applied before stays.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable
from enum import Enum

import httpx
from pydantic import ValidationError

from chess_coach.errors import MalformedFrame
from chess_coach.schemas import DONE_MARKER, EventFrame, Message

logger = logging.getLogger(__name__)

FALLBACK_MESSAGE = "Sorry, I encountered an error. Please try again."


class TurnOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"  # user action, not an error
    FAILED = "failed"


class ReplyWriter:
    """The single writer allowed to grow a conversation's streaming reply."""

    def __init__(self, conversation: Conversation, message: Message) -> None:
        self._conversation = conversation
        self.message = message
        self.closed = False

    def write(self, delta: str) -> None:
        if self.closed:
            raise RuntimeError("Reply writer is closed")
        self.message.content += delta

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._conversation._writer = None

    def __enter__(self) -> ReplyWriter:
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class Conversation:
    """Ordered turns. Only appended to; only the streaming reply grows in place."""

    def __init__(self, messages: list[Message] | None = None) -> None:
        self.messages: list[Message] = list(messages or [])
        self._writer: ReplyWriter | None = None

    @property
    def streaming(self) -> bool:
        return self._writer is not None

    @property
    def last(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def append(self, message: Message) -> None:
        if self._writer is not None:
            raise RuntimeError("Conversation has a reply streaming into it")
        self.messages.append(message)

    def open_reply(self) -> ReplyWriter:
        """Append an empty assistant message and claim the writer slot."""
        self.append(Message(role="assistant", content=""))
        self._writer = ReplyWriter(self, self.messages[-1])
        return self._writer


def decode_line(line: str) -> EventFrame | str | None:
    """Decode one wire line.

    Returns an EventFrame, DONE_MARKER for the termination frame, or None
    for blank lines and non-data fields. Raises MalformedFrame.
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if data == DONE_MARKER:
        return DONE_MARKER
    try:
        return EventFrame.model_validate_json(data)
    except ValidationError as e:
        raise MalformedFrame(f"{data[:80]!r}: {e.error_count()} validation errors") from e


async def apply_stream(reply: ReplyWriter, lines: AsyncIterable[str]) -> bool:
    """Apply frames from ``lines`` to ``reply`` in order.

    Returns True once the termination frame arrives, False if the lines
    run out first.
    """
    async for line in lines:
        try:
            frame = decode_line(line)
        except MalformedFrame as e:
            logger.warning(f"Skipping malformed frame: {e.detail}")
            continue
        if frame is None:
            continue
        if frame == DONE_MARKER:
            return True
        if frame.content:
            reply.write(frame.content)
    return False


class ChatStreamConsumer:
    """Sends chat turns to the relay and streams replies into a Conversation."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        *,
        client: httpx.AsyncClient | None = None,
        api_key: str | None = None,
        timeout: float = 120.0,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._owns_client = client is None
        self._api_key = api_key
        self._task: asyncio.Task | None = None

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    def cancel(self) -> bool:
        """Abort the in-flight turn. Returns False if there was nothing to cancel."""
        if not self.in_flight:
            return False
        self._task.cancel()
        return True

    async def send(
        self, conversation: Conversation, content: str, *, position: str, model: str
    ) -> TurnOutcome:
        """Append a user turn and stream the reply into ``conversation``."""
        previous = self._task
        if previous is not None and not previous.done():
            previous.cancel()
            await asyncio.wait({previous})

        conversation.append(Message(role="user", content=content))
        task = asyncio.create_task(self._stream_turn(conversation, position, model))
        self._task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if self._task is task and task.done():
                self._task = None

        if task.cancelled():
            logger.info("Chat turn cancelled")
            return TurnOutcome.CANCELLED
        return task.result()

    async def _stream_turn(self, conversation: Conversation, position: str, model: str) -> TurnOutcome:
        body = {
            "messages": [m.model_dump() for m in conversation.messages],
            "position": position,
            "model": model,
        }
        headers = {"X-API-Key": self._api_key} if self._api_key else {}

        completed = False
        try:
            async with self._client.stream("POST", "/chat", json=body, headers=headers) as response:
                if response.status_code != 200:
                    await response.aread()
                    logger.error(f"Chat request failed ({response.status_code}): {_error_text(response)}")
                else:
                    with conversation.open_reply() as reply:
                        completed = await apply_stream(reply, response.aiter_lines())
                    if not completed:
                        logger.error("Stream ended without a termination frame")
        except httpx.HTTPError as e:
            logger.error(f"Chat transport error: {type(e).__name__}: {e}")

        if completed:
            return TurnOutcome.COMPLETED
        conversation.append(Message(role="assistant", content=FALLBACK_MESSAGE))
        return TurnOutcome.FAILED

    async def aclose(self) -> None:
        self.cancel()
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> ChatStreamConsumer:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


def _error_text(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text
    if isinstance(data, dict):
        return str(data.get("error") or data.get("detail") or response.text)
    return response.text
