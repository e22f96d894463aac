"""Configuration loader — reads config.yaml, validates with Pydantic.

Two sections: the engine process settings and a static table of chat
models. Providers (how a model is reached) are hardcoded in
providers/registry.py; model entries reference them by name.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from chess_coach.errors import MissingCredential

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"


class EngineSettings(BaseModel):
    """How to run and talk to the analysis engine."""

    command: list[str] = ["stockfish"]
    depth: int = Field(20, gt=0)
    sentinel: str = "bestmove"
    timeout_seconds: float = Field(30.0, gt=0)
    timeout_per_depth_seconds: float = Field(1.0, ge=0)
    start_timeout_seconds: float = Field(10.0, gt=0)
    max_pending: int = Field(0, ge=0)  # 0 = unbounded
    options: dict[str, str | int | bool] = {}
    health_check_minutes: int = Field(0, ge=0)  # 0 = disabled

    @field_validator("command")
    @classmethod
    def must_have_command(cls, v: list[str]) -> list[str]:
        if not v or not v[0]:
            raise ValueError("engine.command must name an executable")
        return v


class ModelConfig(BaseModel):
    """One selectable chat model — its provider and where its credential lives."""

    id: str
    provider: str = "anthropic"
    model: str | None = None  # upstream model name; defaults to id
    api_key: SecretStr | None = None
    api_key_env: str | None = None  # defaults to the provider's env var
    max_tokens: int = Field(4096, gt=0)
    max_retries: int = Field(0, ge=0)
    timeout_seconds: float | None = None

    @property
    def upstream_model(self) -> str:
        return self.model or self.id


class RelayConfig(BaseModel):
    """Top-level relay configuration."""

    engine: EngineSettings = EngineSettings()
    models: list[ModelConfig]

    # Auth & CORS
    api_key: str | None = None
    allowed_origins: list[str] = ["*"]

    @model_validator(mode="after")
    def validate_models(self) -> RelayConfig:
        from chess_coach.providers.registry import PROVIDER_REGISTRY

        seen: set[str] = set()
        for entry in self.models:
            if entry.id in seen:
                raise ValueError(f"Duplicate model id '{entry.id}'")
            seen.add(entry.id)
            if entry.provider not in PROVIDER_REGISTRY:
                raise ValueError(
                    f"Model '{entry.id}' references unknown provider '{entry.provider}'. "
                    f"Available: {sorted(PROVIDER_REGISTRY.keys())}"
                )
        return self

    def get_model(self, model_id: str) -> ModelConfig | None:
        """Return a model entry by id, or None if not configured."""
        for entry in self.models:
            if entry.id == model_id:
                return entry
        return None

    def resolve_credential(self, model_id: str) -> tuple[ModelConfig, str]:
        """Return the model entry and its API key.

        Inline ``api_key`` wins over the environment. Raises MissingCredential
        when the model is unknown or no key can be found.
        """
        from chess_coach.providers.registry import resolve_provider

        entry = self.get_model(model_id)
        if entry is None:
            raise MissingCredential(f"Model '{model_id}' is not configured")

        if entry.api_key is not None and entry.api_key.get_secret_value():
            return entry, entry.api_key.get_secret_value()

        env_var = entry.api_key_env or resolve_provider(entry.provider).credential_env
        key = os.environ.get(env_var, "") if env_var else ""
        if not key:
            raise MissingCredential(
                f"No credential for model '{model_id}' (checked config and ${env_var})"
            )
        return entry, key


# ---------------------------------------------------------------------------
# Module-level config cache
# ---------------------------------------------------------------------------

_config: RelayConfig | None = None
_config_path: str = DEFAULT_CONFIG_PATH


def default_config_path() -> str:
    return os.environ.get("CHESS_COACH_CONFIG", DEFAULT_CONFIG_PATH)


def load_config(path: str | None = None) -> RelayConfig:
    """Read config.yaml from disk, validate, and cache."""
    global _config, _config_path
    _config_path = path or default_config_path()

    config_file = Path(_config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_file.resolve()}")

    raw = yaml.safe_load(config_file.read_text()) or {}
    _config = RelayConfig(**raw)

    logger.info(
        f"Loaded config: models={[m.id for m in _config.models]}, "
        f"engine={' '.join(_config.engine.command)}"
    )
    return _config


def set_config(config: RelayConfig) -> RelayConfig:
    """Install an already-built config (used by tests and embedding code)."""
    global _config
    _config = config
    return _config


def get_config() -> RelayConfig:
    """Return cached config. Raises if not yet loaded."""
    if _config is None:
        raise RuntimeError("Config not loaded — call load_config() first")
    return _config


def reload_config() -> RelayConfig:
    """Re-read config from disk. Called by /reload endpoint."""
    logger.info(f"Reloading config from {_config_path}")
    return load_config(_config_path)
