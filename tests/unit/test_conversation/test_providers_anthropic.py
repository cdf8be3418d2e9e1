"""Unit tests for branchchat.conversation.providers.anthropic."""

from __future__ import annotations

import json
from dataclasses import replace

import httpx
import pytest

from branchchat.conversation.events import Complete, ErrorEvent, StreamEvent, ToolCallDetected
from branchchat.conversation.models import (
    Attachment,
    Message,
    ThoughtsStatus,
    ToolCall,
    ToolDefinition,
    ToolSuccess,
    tool_call_message,
    tool_response_message,
)
from branchchat.conversation.providers.anthropic import AnthropicProvider, build_messages
from branchchat.conversation.providers.base import ProviderRequest
from branchchat.conversation.thinking import Tokens

WEATHER = ToolDefinition(
    name="get_weather",
    description="Current weather for a city.",
    parameters={
        "type": "object",
        "properties": {"location": {"type": "string"}},
        "required": ["location"],
    },
)


def _request(**overrides) -> ProviderRequest:
    values = {
        "messages": [Message.user("What's the weather in SF?")],
        "model": "claude-sonnet-4-5",
        "api_key": "sk-ant-test",
    }
    values.update(overrides)
    return ProviderRequest(**values)


async def _stream(provider: AnthropicProvider, request: ProviderRequest) -> list[StreamEvent]:
    events: list[StreamEvent] = []
    await provider.stream(request, events.append)
    return events


def _block_start(index: int, block: dict) -> tuple[str, dict]:
    return "content_block_start", {"type": "content_block_start", "index": index, "content_block": block}


def _delta(index: int, delta: dict) -> tuple[str, dict]:
    return "content_block_delta", {"type": "content_block_delta", "index": index, "delta": delta}


def _stop(index: int) -> tuple[str, dict]:
    return "content_block_stop", {"type": "content_block_stop", "index": index}


@pytest.mark.anyio
async def test_thinking_text_and_tool_use(scripted_http, sse) -> None:
    body = sse.events(
        ("message_start", {"type": "message_start", "message": {"id": "msg_1"}}),
        _block_start(0, {"type": "thinking", "thinking": ""}),
        _delta(0, {"type": "thinking_delta", "thinking": "Need the weather tool."}),
        _delta(0, {"type": "signature_delta", "signature": "sig-abc"}),
        _stop(0),
        _block_start(1, {"type": "text", "text": ""}),
        _delta(1, {"type": "text_delta", "text": "Checking."}),
        _stop(1),
        _block_start(2, {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {}}),
        _delta(2, {"type": "input_json_delta", "partial_json": '{"location":'}),
        _delta(2, {"type": "input_json_delta", "partial_json": ' "SF"}'}),
        _stop(2),
        ("message_delta", {"type": "message_delta", "delta": {"stop_reason": "tool_use"}}),
        ("message_stop", {"type": "message_stop"}),
    )
    client, transport = scripted_http((200, body))
    provider = AnthropicProvider("http://test", client)

    events = await _stream(provider, _request(tools=[WEATHER], thinking_budget=Tokens(2048)))

    terminal = events[-1]
    assert isinstance(terminal, ToolCallDetected)
    assert terminal.tool_call == ToolCall(
        id="toolu_1",
        tool_id="get_weather",
        parameters={"location": "SF"},
        provider="anthropic",
        thought_signature="sig-abc",
    )
    assert terminal.preceding_text == "Checking."
    assert terminal.thoughts == "Need the weather tool."
    assert terminal.thoughts_status is ThoughtsStatus.PRESENT

    request = transport.requests[0]
    assert request.url.path == "/v1/messages"
    assert request.headers["x-api-key"] == "sk-ant-test"
    assert request.headers["anthropic-version"] == "2023-06-01"


def test_thinking_budget_raises_max_tokens_and_drops_temperature() -> None:
    provider = AnthropicProvider("http://test", httpx.AsyncClient())
    body = provider.build_body(_request(thinking_budget=Tokens(2048), temperature=0.5))
    assert body["thinking"] == {"type": "enabled", "budget_tokens": 2048}
    assert body["max_tokens"] == 2048 + 8192
    assert "temperature" not in body


def test_max_tokens_capped() -> None:
    provider = AnthropicProvider("http://test", httpx.AsyncClient())
    body = provider.build_body(_request(thinking_budget=Tokens(126_000)))
    assert body["max_tokens"] == 128_000


def test_zero_budget_disables_thinking() -> None:
    provider = AnthropicProvider("http://test", httpx.AsyncClient())
    body = provider.build_body(_request(thinking_budget=Tokens(0), temperature=0.3))
    assert body["thinking"] == {"type": "disabled"}
    assert body["max_tokens"] == 8192
    assert body["temperature"] == 0.3


def test_system_prompt_and_tools_in_body() -> None:
    provider = AnthropicProvider("http://test", httpx.AsyncClient())
    body = provider.build_body(
        _request(messages=[Message.system("extra"), Message.user("hi")], system_prompt="base", tools=[WEATHER])
    )
    assert body["system"] == "base\n\nextra"
    assert body["messages"] == [{"role": "user", "content": [{"type": "text", "text": "hi"}]}]
    assert body["tools"][0]["input_schema"]["required"] == ["location"]
    assert "thinking" not in body


@pytest.mark.anyio
async def test_http_error_uses_error_message(scripted_http) -> None:
    error = {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}
    client, _ = scripted_http((529, json.dumps(error)))
    events = await _stream(AnthropicProvider("http://test", client), _request())
    assert events == [ErrorEvent("HTTP 529: Overloaded")]


@pytest.mark.anyio
async def test_in_stream_error_event(scripted_http, sse) -> None:
    body = sse.events(
        _block_start(0, {"type": "text", "text": ""}),
        _delta(0, {"type": "text_delta", "text": "Par"}),
        ("error", {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}),
    )
    client, _ = scripted_http((200, body))
    events = await _stream(AnthropicProvider("http://test", client), _request())
    assert events[-1] == ErrorEvent("Anthropic API error (overloaded_error): Overloaded")


@pytest.mark.anyio
async def test_unreachable_endpoint(scripted_http) -> None:
    client, _ = scripted_http(httpx.ConnectError("connection refused"))
    events = await _stream(AnthropicProvider("http://test", client), _request())
    assert len(events) == 1
    assert events[0].message.startswith("Could not connect to anthropic")


@pytest.mark.anyio
async def test_redacted_thinking_is_unavailable(scripted_http, sse) -> None:
    body = sse.events(
        _block_start(0, {"type": "redacted_thinking", "data": "opaque"}),
        _stop(0),
        _block_start(1, {"type": "text", "text": "Hello"}),
        _stop(1),
        ("message_stop", {"type": "message_stop"}),
    )
    client, _ = scripted_http((200, body))
    events = await _stream(AnthropicProvider("http://test", client), _request())
    assert events[-1].full_text == "Hello"
    assert events[-1].thoughts_status is ThoughtsStatus.UNAVAILABLE


def test_build_messages_merges_tool_turns() -> None:
    call = ToolCall(id="toolu_1", tool_id="get_weather", parameters={"location": "SF"})
    result = ToolSuccess("sunny")
    turns = build_messages(
        [
            Message.user("weather?", attachments=(Attachment("a.png", "image/png"),)),
            Message.assistant("Let me look."),
            tool_call_message(call, result),
            tool_response_message(call, result),
            Message.assistant("It is sunny."),
        ]
    )
    assert [t["role"] for t in turns] == ["user", "assistant", "user", "assistant"]
    assert turns[0]["content"] == [{"type": "text", "text": "weather?"}]
    assert [b["type"] for b in turns[1]["content"]] == ["text", "tool_use"]
    assert turns[1]["content"][1]["input"] == {"location": "SF"}
    assert turns[2]["content"] == [
        {"type": "tool_result", "tool_use_id": "toolu_1", "content": "sunny"}
    ]


@pytest.mark.anyio
async def test_chunks_with_wrong_field_types_are_skipped(scripted_http, sse) -> None:
    body = sse.events(
        ("content_block_delta", {"type": "content_block_delta", "index": 0, "delta": "x"}),
        _block_start(1, {"type": "text", "text": ""}),
        _delta(1, {"type": "text_delta", "text": 7}),
        _delta(1, {"type": "text_delta", "text": "Hello"}),
        _stop(1),
        ("message_stop", {"type": "message_stop"}),
    )
    client, _ = scripted_http((200, body))
    events = await _stream(AnthropicProvider("http://test", client), _request())
    assert events[-1] == Complete("Hello")


@pytest.mark.anyio
async def test_redacted_thinking_travels_with_tool_call(scripted_http, sse) -> None:
    body = sse.events(
        _block_start(0, {"type": "redacted_thinking", "data": "encrypted-blob"}),
        _stop(0),
        _block_start(1, {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {}}),
        _delta(1, {"type": "input_json_delta", "partial_json": '{"location": "SF"}'}),
        _stop(1),
        ("message_stop", {"type": "message_stop"}),
    )
    client, _ = scripted_http((200, body))
    events = await _stream(
        AnthropicProvider("http://test", client),
        _request(tools=[WEATHER], thinking_budget=Tokens(2048)),
    )

    call = events[-1].tool_call
    assert call.redacted_thinking == ("encrypted-blob",)

    recorded = tool_call_message(call, ToolSuccess("sunny"))
    restored = Message.from_dict(recorded.to_dict())
    turns = build_messages([Message.user("weather?"), restored])
    assert turns[1]["content"][0] == {"type": "redacted_thinking", "data": "encrypted-blob"}
    assert turns[1]["content"][1]["type"] == "tool_use"


def test_build_messages_uses_message_thoughts_signature() -> None:
    call = ToolCall(id="toolu_1", tool_id="get_weather", parameters={"location": "SF"})
    recorded = replace(
        tool_call_message(call, ToolSuccess("sunny")),
        thoughts="Need the weather tool.",
        thoughts_signature="sig-msg",
    )
    turns = build_messages([Message.user("weather?"), recorded])
    assert turns[1]["content"][0] == {
        "type": "thinking",
        "thinking": "Need the weather tool.",
        "signature": "sig-msg",
    }
