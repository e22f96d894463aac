"""Request/response models — the contract between relay and clients."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

TERMINATION_FRAME = "data: [DONE]\n\n"
DONE_MARKER = "[DONE]"
FRAME_PREFIX = "data: "


class Message(BaseModel):
    """One conversation turn."""

    role: Literal["user", "assistant", "system"]
    content: str


class ChatRequest(BaseModel):
    """Incoming request body for POST /chat.

    ``model`` is only a lookup key; the credential it selects is resolved
    server-side and never travels with the request.
    """

    messages: list[Message]
    position: str
    model: str


class Delta(BaseModel):
    content: str = ""


class Choice(BaseModel):
    delta: Delta


class EventFrame(BaseModel):
    """One increment of assistant output on the wire.

    Encoded as ``data: {"choices":[{"delta":{"content":"..."}}]}`` followed
    by a blank line. The stream ends with the literal TERMINATION_FRAME.
    """

    choices: list[Choice]

    @classmethod
    def from_delta(cls, text: str) -> EventFrame:
        return cls(choices=[Choice(delta=Delta(content=text))])

    @property
    def content(self) -> str:
        return self.choices[0].delta.content if self.choices else ""

    def encode(self) -> str:
        return f"{FRAME_PREFIX}{self.model_dump_json()}\n\n"


class ErrorResponse(BaseModel):
    """Body of every non-stream error response."""

    error: str
