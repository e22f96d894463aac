"""Error taxonomy — every failure the relay can report to a client.

Each error carries the HTTP status it maps to and the message a client is
allowed to see. Engine and provider details stay in the logs.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for errors with a defined client-facing response."""

    status_code: int = 500
    user_message: str = "Internal server error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.user_message)
        self.detail = detail or self.user_message


# ---------------------------------------------------------------------------
# Request validation — raised before any engine or provider work
# ---------------------------------------------------------------------------


class InvalidPosition(RelayError):
    status_code = 400
    user_message = "Invalid chess position"


class MissingCredential(RelayError):
    status_code = 400
    user_message = "API key not found for selected model"


class PromptAugmentationError(RelayError):
    """The conversation has no user turn to attach the analysis to."""

    status_code = 400
    user_message = "Conversation must contain a user message"


# ---------------------------------------------------------------------------
# Engine session faults
# ---------------------------------------------------------------------------


class EngineError(RelayError):
    status_code = 503
    user_message = "The analysis engine is unavailable. Please try again."


class EngineUnavailable(EngineError):
    """Process could not be started, exited, or closed its streams."""


class EngineTimeout(EngineError):
    """No sentinel line within the analysis deadline."""


class EngineBusy(EngineError):
    """The pending-analysis queue is full."""


# ---------------------------------------------------------------------------
# Provider faults
# ---------------------------------------------------------------------------


class ProviderError(RelayError):
    status_code = 502
    user_message = "The model provider could not complete the request. Please try again."


class ProviderTransportError(ProviderError):
    """Network failure or timeout talking to the provider."""


class ProviderRejected(ProviderError):
    """The provider answered with a non-success status.

    ``kind`` is one of: credential, rate_limited, malformed_request, upstream.
    """

    _STATUS_BY_KIND = {
        "credential": 502,
        "rate_limited": 429,
        "malformed_request": 500,
        "upstream": 502,
    }
    _MESSAGE_BY_KIND = {
        "credential": "The model provider rejected the configured credential.",
        "rate_limited": "The model provider is rate limiting requests. Please wait and try again.",
    }

    def __init__(self, kind: str, detail: str | None = None) -> None:
        if kind not in self._STATUS_BY_KIND:
            raise ValueError(f"Unknown rejection kind: {kind}")
        super().__init__(detail)
        self.kind = kind
        self.status_code = self._STATUS_BY_KIND[kind]
        self.user_message = self._MESSAGE_BY_KIND.get(kind, ProviderError.user_message)


class ProviderStreamError(ProviderError):
    """The provider sent an explicit error event inside the stream."""


# ---------------------------------------------------------------------------
# Wire decoding
# ---------------------------------------------------------------------------


class MalformedFrame(RelayError):
    """A chunk or frame that cannot be decoded. Never fatal: callers skip it."""

    status_code = 502
    user_message = "Malformed stream frame"
