"""
Tests for concierge.api.gateway — message translation, response parsing and
error mapping, with the Anthropic SDK client replaced by an AsyncMock.
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import anthropic
import httpx
import pytest

from concierge.api.gateway import (
    GatewayInitError,
    LanguageModelGateway,
    MalformedResponse,
    ProviderError,
    to_anthropic_messages,
)
from concierge.config import ModelConfig
from concierge.tools.registry import ToolDefinition


def _response(*blocks, stop_reason="end_turn"):
    return SimpleNamespace(
        content=list(blocks),
        stop_reason=stop_reason,
        usage=SimpleNamespace(input_tokens=12, output_tokens=7),
    )


def _text(text):
    return SimpleNamespace(type="text", text=text)


def _tool_use(id_, name, input_):
    return SimpleNamespace(type="tool_use", id=id_, name=name, input=input_)


def _gateway(create):
    client = SimpleNamespace(messages=SimpleNamespace(create=create))
    return LanguageModelGateway(ModelConfig(api_key="test-key"), client=client)


_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


class TestMessageTranslation:
    def test_system_messages_lifted_out(self):
        system, messages = to_anthropic_messages(
            [
                {"role": "system", "content": "You are helpful."},
                {"role": "user", "content": "Hi"},
            ]
        )
        assert system == "You are helpful."
        assert messages == [{"role": "user", "content": [{"type": "text", "text": "Hi"}]}]

    def test_tool_round_becomes_tool_use_and_tool_result_blocks(self):
        _, messages = to_anthropic_messages(
            [
                {"role": "user", "content": "Email Sam"},
                {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {"id": "c1", "name": "send_email", "arguments": {"to": "sam@acme.com"}},
                        {"id": "c2", "name": "list_tasks", "arguments": "not-a-dict"},
                    ],
                },
                {"role": "tool", "tool_call_id": "c1", "content": '{"status": "success"}'},
                {"role": "tool", "tool_call_id": "c2", "content": '{"error": "x"}', "is_error": True},
            ]
        )
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        uses = messages[1]["content"]
        assert uses[0] == {
            "type": "tool_use",
            "id": "c1",
            "name": "send_email",
            "input": {"to": "sam@acme.com"},
        }
        assert uses[1]["input"] == {}
        results = messages[2]["content"]
        assert [r["tool_use_id"] for r in results] == ["c1", "c2"]
        assert "is_error" not in results[0]
        assert results[1]["is_error"] is True

    def test_history_starting_with_assistant_gets_user_lead_in(self):
        _, messages = to_anthropic_messages(
            [
                {"role": "assistant", "content": "Earlier answer"},
                {"role": "user", "content": "Follow-up"},
            ]
        )
        assert messages[0]["role"] == "user"
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]

    def test_unknown_role_rejected(self):
        with pytest.raises(ValueError):
            to_anthropic_messages([{"role": "narrator", "content": "?"}])


class TestComplete:
    def test_missing_api_key_fails_fast(self):
        with pytest.raises(GatewayInitError):
            LanguageModelGateway(ModelConfig(api_key=None))

    @pytest.mark.asyncio
    async def test_text_reply(self):
        create = AsyncMock(return_value=_response(_text("Jane mentioned baseball.")))
        gateway = _gateway(create)

        completion = await gateway.complete([{"role": "user", "content": "Who?"}], temperature=0.3)

        assert completion.content == "Jane mentioned baseball."
        assert completion.tool_calls == []
        kwargs = create.await_args.kwargs
        assert kwargs["temperature"] == 0.3
        assert "tools" not in kwargs
        assert gateway.telemetry["total_input_tokens"] == 12

    @pytest.mark.asyncio
    async def test_tool_calls_parsed_and_tools_sent(self):
        create = AsyncMock(
            return_value=_response(
                _text("Let me check."),
                _tool_use("c1", "search_data", {"query": "baseball"}),
                stop_reason="tool_use",
            )
        )
        tool = ToolDefinition(
            name="search_data",
            description="Search",
            input_schema={"type": "object", "properties": {"query": {"type": "string"}}},
        )
        gateway = _gateway(create)

        completion = await gateway.complete([{"role": "user", "content": "Who?"}], tools=[tool])

        assert completion.has_tool_calls
        assert completion.tool_calls[0].name == "search_data"
        assert completion.tool_calls[0].arguments == {"query": "baseball"}
        assert create.await_args.kwargs["tools"][0]["name"] == "search_data"

    @pytest.mark.asyncio
    async def test_empty_reply_is_malformed(self):
        gateway = _gateway(AsyncMock(return_value=_response(_text(""))))
        with pytest.raises(MalformedResponse):
            await gateway.complete([{"role": "user", "content": "Hi"}])

    @pytest.mark.asyncio
    async def test_connection_error_mapped(self):
        create = AsyncMock(side_effect=anthropic.APIConnectionError(request=_REQUEST))
        gateway = _gateway(create)
        with pytest.raises(ProviderError) as exc_info:
            await gateway.complete([{"role": "user", "content": "Hi"}])
        assert exc_info.value.category == "connection"

    @pytest.mark.asyncio
    async def test_rate_limit_mapped_with_status(self):
        response = httpx.Response(429, request=_REQUEST)
        create = AsyncMock(
            side_effect=anthropic.RateLimitError("slow down", response=response, body=None)
        )
        gateway = _gateway(create)
        with pytest.raises(ProviderError) as exc_info:
            await gateway.complete([{"role": "user", "content": "Hi"}])
        assert exc_info.value.category == "rate_limit"
        assert exc_info.value.status == 429

    @pytest.mark.asyncio
    async def test_slow_provider_times_out(self):
        async def never_returns(**kwargs):
            await asyncio.sleep(10)

        config = ModelConfig(api_key="test-key")
        client = SimpleNamespace(messages=SimpleNamespace(create=never_returns))
        gateway = LanguageModelGateway(config, client=client)
        gateway._timeout = 0.05

        with pytest.raises(ProviderError) as exc_info:
            await gateway.complete([{"role": "user", "content": "Hi"}])
        assert exc_info.value.category == "timeout"
