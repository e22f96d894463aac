"""Model providers — chat-model construction and the streaming adapter."""

from chess_coach.providers.registry import (
    PROVIDER_REGISTRY,
    ChatModelFactory,
    ProviderDefinition,
    build_chat_model,
    resolve_provider,
)
from chess_coach.providers.stream import ProviderStream, map_provider_error, to_provider_messages

__all__ = [
    "PROVIDER_REGISTRY",
    "ChatModelFactory",
    "ProviderDefinition",
    "ProviderStream",
    "build_chat_model",
    "map_provider_error",
    "resolve_provider",
    "to_provider_messages",
]
