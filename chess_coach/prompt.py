"""Prompt augmentation — attach the board position and engine output to the user's question."""

from __future__ import annotations

import logging

from chess_coach.errors import PromptAugmentationError
from chess_coach.schemas import Message

logger = logging.getLogger(__name__)

POSITION_HEADER = "Chess position (FEN): "

TEMPLATE = (
    POSITION_HEADER + "{position}\n"
    "Stockfish analysis:\n"
    "{analysis}\n"
    "\n"
    "User question: {question}"
)


def is_augmented(message: Message) -> bool:
    return message.content.startswith(POSITION_HEADER)


def augment(messages: list[Message], position: str, analysis: str) -> list[Message]:
    """Return a copy of ``messages`` with the latest user turn augmented.

    Only the most recent user turn is rewritten; every other turn is passed
    through untouched. A turn that already carries the position header is
    left as is, so augmentation never stacks.

    Raises PromptAugmentationError if there is no user turn.
    """
    index = next(
        (i for i in range(len(messages) - 1, -1, -1) if messages[i].role == "user"),
        None,
    )
    if index is None:
        raise PromptAugmentationError("No user message to attach the analysis to")

    result = list(messages)
    target = result[index]
    if is_augmented(target):
        logger.debug("Latest user turn already augmented, leaving it unchanged")
        return result

    result[index] = target.model_copy(
        update={
            "content": TEMPLATE.format(
                position=position,
                analysis=analysis,
                question=target.content,
            )
        }
    )
    return result
