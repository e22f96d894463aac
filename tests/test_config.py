"""Tests for config loading and credential resolution."""

import pytest
from pydantic import ValidationError

from chess_coach.config import (
    EngineSettings,
    RelayConfig,
    get_config,
    load_config,
    reload_config,
)
from chess_coach.errors import MissingCredential
from tests.conftest import MISSING_KEY_ENV

CONFIG_YAML = """
api_key: relay-secret
engine:
  command: ["stockfish", "--quiet"]
  depth: 12
  options:
    Threads: 2
models:
  - id: coach
    model: claude-test
    api_key_env: CHESS_COACH_TEST_KEY
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG_YAML)
    return path


class TestLoading:
    def test_load_from_yaml(self, config_file):
        config = load_config(str(config_file))

        assert get_config() is config
        assert config.api_key == "relay-secret"
        assert config.engine.command == ["stockfish", "--quiet"]
        assert config.engine.depth == 12
        assert config.engine.options == {"Threads": 2}
        assert config.engine.sentinel == "bestmove"
        assert config.models[0].upstream_model == "claude-test"

    def test_reload_picks_up_changes(self, config_file):
        load_config(str(config_file))
        config_file.write_text(CONFIG_YAML.replace("depth: 12", "depth: 8"))

        assert reload_config().engine.depth == 8

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_env_var_selects_file(self, config_file, monkeypatch):
        monkeypatch.setenv("CHESS_COACH_CONFIG", str(config_file))
        assert load_config().engine.depth == 12


class TestValidation:
    def test_unknown_provider_is_rejected(self):
        with pytest.raises(ValidationError, match="unknown provider"):
            RelayConfig(models=[{"id": "x", "provider": "carrier-pigeon"}])

    def test_duplicate_model_ids(self):
        with pytest.raises(ValidationError, match="Duplicate"):
            RelayConfig(models=[{"id": "x"}, {"id": "x"}])

    def test_empty_engine_command(self):
        with pytest.raises(ValidationError):
            EngineSettings(command=[])

    def test_depth_must_be_positive(self):
        with pytest.raises(ValidationError):
            EngineSettings(depth=0)


class TestCredentials:
    def test_inline_key_wins_over_environment(self, monkeypatch):
        monkeypatch.setenv(MISSING_KEY_ENV, "from-env")
        config = RelayConfig(models=[{"id": "m", "api_key": "inline", "api_key_env": MISSING_KEY_ENV}])

        entry, key = config.resolve_credential("m")
        assert entry.id == "m"
        assert key == "inline"

    def test_key_from_environment(self, monkeypatch):
        monkeypatch.setenv(MISSING_KEY_ENV, "from-env")
        config = RelayConfig(models=[{"id": "m", "api_key_env": MISSING_KEY_ENV}])

        assert config.resolve_credential("m")[1] == "from-env"

    def test_provider_default_env_var(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "provider-default")
        config = RelayConfig(models=[{"id": "m"}])

        assert config.resolve_credential("m")[1] == "provider-default"

    def test_empty_env_var_is_missing(self, monkeypatch):
        monkeypatch.setenv(MISSING_KEY_ENV, "")
        config = RelayConfig(models=[{"id": "m", "api_key_env": MISSING_KEY_ENV}])

        with pytest.raises(MissingCredential):
            config.resolve_credential("m")

    def test_unknown_model(self):
        config = RelayConfig(models=[{"id": "m", "api_key": "k"}])
        with pytest.raises(MissingCredential):
            config.resolve_credential("other")

    def test_secrets_are_masked_in_dumps(self):
        config = RelayConfig(models=[{"id": "m", "api_key": "inline-secret"}])
        assert "inline-secret" not in config.model_dump_json()
