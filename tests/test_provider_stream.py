"""Tests for the provider stream adapter and provider registry."""

import asyncio

import anthropic
import pytest
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, HumanMessage

from chess_coach.config import ModelConfig
from chess_coach.errors import (
    ProviderRejected,
    ProviderStreamError,
    ProviderTransportError,
)
from chess_coach.providers import (
    ProviderStream,
    build_chat_model,
    map_provider_error,
    resolve_provider,
    to_provider_messages,
)
from chess_coach.schemas import Message
from tests.conftest import ScriptedChatModel, connection_error, status_error

USER_ONLY = [Message(role="user", content="What's best here?")]


async def _collect(stream):
    return [chunk async for chunk in stream]


class TestMessageConversion:
    def test_system_turns_are_dropped(self):
        converted = to_provider_messages([
            Message(role="system", content="You are a coach."),
            Message(role="user", content="Hi"),
            Message(role="assistant", content="Hello"),
            Message(role="system", content="Be brief."),
            Message(role="user", content="Best move?"),
        ])

        assert [type(m) for m in converted] == [HumanMessage, AIMessage, HumanMessage]
        assert [m.content for m in converted] == ["Hi", "Hello", "Best move?"]

    @pytest.mark.asyncio
    async def test_model_never_sees_system_turns(self):
        model = ScriptedChatModel(["ok"])
        messages = [Message(role="system", content="secret rules")] + USER_ONLY
        await _collect(ProviderStream(model, messages))

        assert [m.content for m in model.calls[0]] == ["What's best here?"]


class TestStreaming:
    @pytest.mark.asyncio
    async def test_chunks_arrive_in_order(self):
        stream = ProviderStream(ScriptedChatModel(["The ", "best ", "move is e4."]), USER_ONLY)
        chunks = await _collect(stream)

        assert [c.content for c in chunks] == ["The ", "best ", "move is e4."]
        assert stream.chunks_received == 3

    @pytest.mark.asyncio
    async def test_stream_is_single_use(self):
        stream = ProviderStream(ScriptedChatModel(["a"]), USER_ONLY)
        await _collect(stream)
        with pytest.raises(RuntimeError):
            await _collect(stream)

    @pytest.mark.asyncio
    async def test_cancel_between_chunks_stops_and_closes_upstream(self):
        model = ScriptedChatModel([str(i) for i in range(20)])
        stream = ProviderStream(model, USER_ONLY)

        received = []
        async for chunk in stream:
            received.append(chunk.content)
            if len(received) == 2:
                stream.cancel()

        assert received == ["0", "1"]
        assert model.closed is True

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_a_chunk(self):
        model = ScriptedChatModel(["slow"], delay=5.0)
        stream = ProviderStream(model, USER_ONLY)

        async def cancel_soon():
            await asyncio.sleep(0.05)
            stream.cancel()

        canceller = asyncio.create_task(cancel_soon())
        chunks = await asyncio.wait_for(_collect(stream), timeout=1.0)
        await canceller

        assert chunks == []
        assert stream.cancelled is True
        assert model.closed is True

    @pytest.mark.asyncio
    async def test_no_sendable_turns_is_malformed_request(self):
        stream = ProviderStream(ScriptedChatModel(["x"]), [Message(role="system", content="only")])
        with pytest.raises(ProviderRejected) as exc_info:
            await _collect(stream)
        assert exc_info.value.kind == "malformed_request"


class TestErrorMapping:
    @pytest.mark.parametrize(
        "cls,status,kind",
        [
            (anthropic.AuthenticationError, 401, "credential"),
            (anthropic.PermissionDeniedError, 403, "credential"),
            (anthropic.RateLimitError, 429, "rate_limited"),
            (anthropic.BadRequestError, 400, "malformed_request"),
            (anthropic.NotFoundError, 404, "malformed_request"),
            (anthropic.InternalServerError, 500, "upstream"),
        ],
    )
    def test_status_errors_map_to_rejection_kinds(self, cls, status, kind):
        mapped = map_provider_error(status_error(cls, status))
        assert isinstance(mapped, ProviderRejected)
        assert mapped.kind == kind

    def test_rate_limit_is_reported_as_429(self):
        mapped = map_provider_error(status_error(anthropic.RateLimitError, 429))
        assert mapped.status_code == 429

    def test_connection_error_is_transport(self):
        assert isinstance(map_provider_error(connection_error()), ProviderTransportError)

    def test_error_event_inside_open_stream(self):
        mapped = map_provider_error(status_error(anthropic.APIStatusError, 200))
        assert isinstance(mapped, ProviderStreamError)

    def test_unrelated_exceptions_are_not_mapped(self):
        assert map_provider_error(ValueError("nope")) is None

    @pytest.mark.asyncio
    async def test_stream_raises_mapped_error_after_partial_output(self):
        model = ScriptedChatModel(["partial", status_error(anthropic.RateLimitError, 429)])
        stream = ProviderStream(model, USER_ONLY)

        received = []
        with pytest.raises(ProviderRejected) as exc_info:
            async for chunk in stream:
                received.append(chunk.content)

        assert received == ["partial"]
        assert exc_info.value.kind == "rate_limited"


class TestRegistry:
    def test_builds_anthropic_chat_model(self):
        entry = ModelConfig(id="coach", model="claude-test", max_tokens=1024)
        model = build_chat_model(entry, "test-key")

        assert isinstance(model, ChatAnthropic)
        assert model.model == "claude-test"
        assert model.max_tokens == 1024

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            resolve_provider("carrier-pigeon")
