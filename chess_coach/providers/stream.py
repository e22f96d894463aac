"""Provider stream adapter — a lazy, single-use sequence of provider-native chunks.

Wraps ``chat_model.astream`` so that chunks surface in receipt order, a
``cancel()`` call closes the upstream HTTP stream promptly, and provider
failures come out as distinct ProviderError kinds.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

import anthropic
import httpx
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from chess_coach.errors import (
    ProviderError,
    ProviderRejected,
    ProviderStreamError,
    ProviderTransportError,
)
from chess_coach.schemas import Message

logger = logging.getLogger(__name__)

CLOSE_TIMEOUT_SECONDS = 2.0


def to_provider_messages(messages: list[Message]) -> list[BaseMessage]:
    """Convert conversation turns to LangChain messages, dropping system turns."""
    converted: list[BaseMessage] = []
    for message in messages:
        if message.role == "system":
            continue
        if message.role == "assistant":
            converted.append(AIMessage(content=message.content))
        else:
            converted.append(HumanMessage(content=message.content))
    return converted


def map_provider_error(exc: BaseException) -> ProviderError | None:
    """Translate an SDK/transport exception into a ProviderError, or None if unrelated."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, (anthropic.APIConnectionError, httpx.TransportError)):
        return ProviderTransportError(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, anthropic.APIStatusError):
        status = exc.status_code
        if status < 400:
            # error event delivered inside an already-open 200 stream
            return ProviderStreamError(f"{type(exc).__name__}: {exc.message}")
        if status in (401, 403):
            kind = "credential"
        elif status == 429:
            kind = "rate_limited"
        elif status in (400, 404, 413, 422):
            kind = "malformed_request"
        else:
            kind = "upstream"
        return ProviderRejected(kind, f"{status} {type(exc).__name__}: {exc.message}")
    return None


class ProviderStream:
    """Provider-native chunks for one completion. Iterate it exactly once."""

    def __init__(self, chat_model: Any, messages: list[Message], *, model_id: str = "") -> None:
        self._chat_model = chat_model
        self._messages = to_provider_messages(messages)
        self._cancelled = asyncio.Event()
        self._started = False
        self.model_id = model_id
        self.chunks_received = 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop producing chunks; the upstream stream is closed by the iterator."""
        if not self._cancelled.is_set():
            logger.info(f"Provider stream cancelled (model={self.model_id}, chunks={self.chunks_received})")
        self._cancelled.set()

    def __aiter__(self) -> AsyncIterator[Any]:
        if self._started:
            raise RuntimeError("Provider stream can only be consumed once")
        self._started = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Any]:
        if not self._messages:
            raise ProviderRejected("malformed_request", "No user or assistant turns to send")

        upstream = self._chat_model.astream(self._messages)
        cancel_wait = asyncio.ensure_future(self._cancelled.wait())
        pending: asyncio.Future | None = None
        try:
            while not self._cancelled.is_set():
                pending = asyncio.ensure_future(anext(upstream))
                done, _ = await asyncio.wait(
                    {pending, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                if pending not in done:
                    break

                finished, pending = pending, None
                try:
                    chunk = finished.result()
                except StopAsyncIteration:
                    return
                except Exception as e:
                    mapped = map_provider_error(e)
                    if mapped is None:
                        raise
                    logger.warning(f"Provider error (model={self.model_id}): {mapped.detail}")
                    raise mapped from e

                self.chunks_received += 1
                yield chunk
        finally:
            cancel_wait.cancel()
            if pending is not None and not pending.done():
                pending.cancel()
                await asyncio.wait({pending})
            await self._close_upstream(upstream)

    async def _close_upstream(self, upstream: Any) -> None:
        aclose = getattr(upstream, "aclose", None)
        if aclose is None:
            return
        try:
            await asyncio.wait_for(aclose(), timeout=CLOSE_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(f"Provider stream did not close within {CLOSE_TIMEOUT_SECONDS}s")
        except RuntimeError as e:
            logger.debug(f"Provider stream already closing: {e}")
