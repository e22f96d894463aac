"""Runtime — bridges a chat request to engine analysis and provider streaming.

Validates the position and credential, runs the engine, augments the
latest user turn, opens the provider stream and yields SSE frames.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, AsyncIterator

import chess

from chess_coach.config import RelayConfig
from chess_coach.engine import EngineSession
from chess_coach.errors import InvalidPosition, PromptAugmentationError
from chess_coach.prompt import augment
from chess_coach.providers import ChatModelFactory, ProviderStream, build_chat_model
from chess_coach.schemas import ChatRequest
from chess_coach.transcoder import StreamTranscoder

logger = logging.getLogger(__name__)


def validate_position(position: str) -> str:
    """Check that ``position`` is a structurally valid FEN.

    Returns the normalized FEN. Raises InvalidPosition otherwise.
    """
    try:
        board = chess.Board(position)
    except ValueError as e:
        raise InvalidPosition(f"Unparseable FEN {position!r}: {e}") from e

    if not board.is_valid():
        raise InvalidPosition(f"Illegal setup {position!r}: status={board.status()!r}")
    return board.fen()


async def start_chat(
    config: RelayConfig,
    request: ChatRequest,
    engine: EngineSession,
    build_model: ChatModelFactory = build_chat_model,
) -> AsyncIterator[str]:
    """Run everything that can fail before the first byte is sent.

    Order: position, credential, engine analysis, augmentation, provider
    stream. Returns an iterator of SSE frames whose first frame is already
    in hand; errors up to that point raise RelayError subclasses.
    """
    position = validate_position(request.position)
    model, api_key = config.resolve_credential(request.model)
    if not any(m.role == "user" for m in request.messages):
        raise PromptAugmentationError("Conversation has no user turn")

    logger.info(
        f"Chat turn: model={model.id}, turns={len(request.messages)}, "
        f"depth={config.engine.depth}, engine_pending={engine.pending}"
    )

    analysis = await engine.analyze(position, config.engine.depth)
    messages = augment(request.messages, position, analysis)

    provider = ProviderStream(build_model(model, api_key), messages, model_id=model.id)
    transcoder = StreamTranscoder()
    frames = transcoder.transcode(provider)

    try:
        first = await anext(frames)
    except BaseException:
        provider.cancel()
        await frames.aclose()
        raise

    return _relay(first, frames, provider)


async def _relay(
    first: str, frames: AsyncGenerator[str, None], provider: ProviderStream
) -> AsyncIterator[str]:
    """Yield the primed first frame, then the rest; close upstream on exit."""
    try:
        yield first
        async for frame in frames:
            yield frame
    finally:
        # client disconnects land here too
        provider.cancel()
        await frames.aclose()
