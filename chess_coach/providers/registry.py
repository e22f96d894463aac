"""Provider registry — hardcoded provider definitions.

The only place where chat-model classes are constructed. Model entries in
config.yaml reference these providers by name.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from langchain_anthropic import ChatAnthropic

if TYPE_CHECKING:
    from chess_coach.config import ModelConfig

ChatModelFactory = Callable[["ModelConfig", str], Any]


def _build_anthropic(model: ModelConfig, api_key: str) -> ChatAnthropic:
    kwargs: dict[str, Any] = {
        "model": model.upstream_model,
        "max_tokens": model.max_tokens,
        "api_key": api_key,
        "max_retries": model.max_retries,
    }
    if model.timeout_seconds is not None:
        kwargs["timeout"] = model.timeout_seconds
    return ChatAnthropic(**kwargs)


@dataclass
class ProviderDefinition:
    name: str
    description: str
    credential_env: str
    build: ChatModelFactory


PROVIDER_REGISTRY: dict[str, ProviderDefinition] = {
    "anthropic": ProviderDefinition(
        name="anthropic",
        description="Anthropic Messages API via langchain-anthropic.",
        credential_env="ANTHROPIC_API_KEY",
        build=_build_anthropic,
    ),
}


def resolve_provider(name: str) -> ProviderDefinition:
    """Look up a provider by name. Raises ValueError if not found."""
    if name not in PROVIDER_REGISTRY:
        raise ValueError(
            f"Unknown provider '{name}'. "
            f"Available providers: {list(PROVIDER_REGISTRY.keys())}"
        )
    return PROVIDER_REGISTRY[name]


def build_chat_model(model: ModelConfig, api_key: str) -> Any:
    """Create the streaming chat model for a configured model entry."""
    return resolve_provider(model.provider).build(model, api_key)
