"""Shared fixtures: fake engine process, scripted chat model, test config."""

import asyncio
import os
import sys
from pathlib import Path

import anthropic
import httpx
import pytest
from langchain_core.messages import AIMessageChunk

ROOT = Path(__file__).resolve().parent.parent
os.environ.setdefault("CHESS_COACH_CONFIG", str(ROOT / "config.yaml"))

from chess_coach.config import RelayConfig, set_config  # noqa: E402
from chess_coach.engine import EngineSession, EngineState  # noqa: E402

FAKE_ENGINE = [sys.executable, str(Path(__file__).resolve().parent / "fake_engine.py")]

START_FEN = "rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1"
AFTER_E4_FEN = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1"

MISSING_KEY_ENV = "CHESS_COACH_TEST_MISSING_KEY"


class ScriptedChatModel:
    """Stands in for ChatAnthropic: ``astream`` replays a script.

    Script items: str -> AIMessageChunk with that content, Exception -> raised,
    anything else -> yielded as a raw provider chunk.
    """

    def __init__(self, script, delay=0.0):
        self.script = list(script)
        self.delay = delay
        self.calls = []
        self.closed = False

    async def astream(self, messages):
        self.calls.append(list(messages))
        try:
            for item in self.script:
                if self.delay:
                    await asyncio.sleep(self.delay)
                if isinstance(item, Exception):
                    raise item
                if isinstance(item, str):
                    yield AIMessageChunk(content=item)
                else:
                    yield item
        finally:
            self.closed = True


class SpyEngine:
    """Engine session double that records calls instead of running a process."""

    def __init__(self, analysis="info depth 1 score cp 30 pv e2e4\nbestmove e2e4", error=None):
        self.analysis = analysis
        self.error = error
        self.calls = []
        self.state = EngineState.IDLE
        self.pending = 0

    async def analyze(self, position, depth):
        self.calls.append((position, depth))
        if self.error is not None:
            raise self.error
        return self.analysis

    def get_metrics(self):
        return {"state": self.state.value, "total_requests": len(self.calls)}


def status_error(cls, status):
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    response = httpx.Response(status, request=request)
    return cls("provider said no", response=response, body=None)


def connection_error():
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    return anthropic.APIConnectionError(request=request)


@pytest.fixture
async def engine():
    session = EngineSession(
        FAKE_ENGINE,
        timeout_seconds=5.0,
        timeout_per_depth_seconds=0.0,
        start_timeout_seconds=5.0,
    )
    yield session
    await session.close()


@pytest.fixture
def relay_config(monkeypatch):
    monkeypatch.delenv(MISSING_KEY_ENV, raising=False)
    config = RelayConfig(
        engine={"command": FAKE_ENGINE, "depth": 4, "timeout_seconds": 5},
        models=[
            {"id": "m1", "provider": "anthropic", "model": "claude-test", "api_key": "test-key"},
            {"id": "m2", "provider": "anthropic", "api_key_env": MISSING_KEY_ENV},
        ],
    )
    set_config(config)
    return config
