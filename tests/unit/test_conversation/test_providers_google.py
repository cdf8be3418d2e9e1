"""Unit tests for branchchat.conversation.providers.google."""

from __future__ import annotations

import json

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
from branchchat.conversation.providers.base import ProviderRequest
from branchchat.conversation.providers.google import GoogleProvider, build_contents
from branchchat.conversation.thinking import Effort, Tokens


def _request(**overrides) -> ProviderRequest:
    values = {
        "messages": [Message.user("hi")],
        "model": "gemini-2.5-flash",
        "api_key": "g-key",
    }
    values.update(overrides)
    return ProviderRequest(**values)


async def _stream(provider: GoogleProvider, request: ProviderRequest) -> list[StreamEvent]:
    events: list[StreamEvent] = []
    await provider.stream(request, events.append)
    return events


def _candidate(parts: list[dict], finish_reason: str | None = None) -> dict:
    candidate: dict = {"content": {"role": "model", "parts": parts}}
    if finish_reason:
        candidate["finishReason"] = finish_reason
    return {"candidates": [candidate]}


@pytest.mark.anyio
async def test_thought_parts_then_text(scripted_http, sse) -> None:
    body = sse.data(
        _candidate([{"text": "Thinking it over.", "thought": True}]),
        _candidate([{"text": "Hello"}]),
        _candidate([{"text": " world"}], "STOP"),
    )
    client, transport = scripted_http((200, body))
    provider = GoogleProvider("http://test", client)

    events = await _stream(provider, _request(thinking_budget=Tokens(1024)))

    assert [type(e).__name__ for e in events] == [
        "ThinkingStarted",
        "ThinkingPartial",
        "ThinkingComplete",
        "PartialText",
        "PartialText",
        "Complete",
    ]
    assert events[-1].full_text == "Hello world"
    assert events[-1].thoughts == "Thinking it over."
    assert events[-1].thoughts_status is ThoughtsStatus.PRESENT

    request = transport.requests[0]
    assert request.url.path == "/v1beta/models/gemini-2.5-flash:streamGenerateContent"
    assert request.url.params["alt"] == "sse"
    assert request.headers["x-goog-api-key"] == "g-key"
    assert transport.json_body()["generationConfig"]["thinkingConfig"] == {
        "thinkingBudget": 1024,
        "includeThoughts": True,
    }


@pytest.mark.anyio
async def test_function_call_without_id_gets_one(scripted_http, sse) -> None:
    body = sse.data(
        _candidate(
            [
                {
                    "functionCall": {"name": "get_weather", "args": {"location": "SF"}},
                    "thoughtSignature": "sig-1",
                }
            ],
            "STOP",
        )
    )
    client, _ = scripted_http((200, body))
    events = await _stream(GoogleProvider("http://test", client), _request())

    terminal = events[-1]
    assert isinstance(terminal, ToolCallDetected)
    assert terminal.tool_call.id.startswith("google_")
    assert terminal.tool_call.parameters == {"location": "SF"}
    assert terminal.tool_call.thought_signature == "sig-1"


@pytest.mark.anyio
async def test_max_tokens_is_a_normal_finish(scripted_http, sse) -> None:
    body = sse.data(_candidate([{"text": "truncated"}], "MAX_TOKENS"))
    client, _ = scripted_http((200, body))
    events = await _stream(GoogleProvider("http://test", client), _request())
    assert events[-1].full_text == "truncated"


@pytest.mark.anyio
async def test_safety_block_is_an_error(scripted_http, sse) -> None:
    body = sse.data(_candidate([{"text": "I can"}]), _candidate([], "SAFETY"))
    client, _ = scripted_http((200, body))
    events = await _stream(GoogleProvider("http://test", client), _request())
    assert events[-1] == ErrorEvent("Response blocked: SAFETY")


@pytest.mark.anyio
async def test_blocked_prompt_is_an_error(scripted_http, sse) -> None:
    body = sse.data({"promptFeedback": {"blockReason": "OTHER"}})
    client, _ = scripted_http((200, body))
    events = await _stream(GoogleProvider("http://test", client), _request())
    assert events == [ErrorEvent("Prompt blocked: OTHER")]


@pytest.mark.anyio
async def test_http_error(scripted_http) -> None:
    error = {"error": {"code": 400, "message": "API key not valid", "status": "INVALID_ARGUMENT"}}
    client, _ = scripted_http((400, json.dumps(error)))
    events = await _stream(GoogleProvider("http://test", client), _request())
    assert events == [ErrorEvent("HTTP 400: API key not valid")]


def test_effort_budget_and_parameterless_tools() -> None:
    provider = GoogleProvider("http://test", httpx.AsyncClient())
    tools = [
        ToolDefinition(name="now", description="Current time."),
        ToolDefinition(
            name="lookup",
            description="Look up.",
            parameters={"type": "object", "properties": {"q": {"type": "string"}}},
        ),
    ]
    body = provider.build_body(
        _request(model="gemini-3-pro", thinking_budget=Effort("low"), tools=tools, system_prompt="sys")
    )
    declarations = body["tools"][0]["functionDeclarations"]
    assert "parameters" not in declarations[0]
    assert declarations[1]["parameters"]["properties"] == {"q": {"type": "string"}}
    assert body["generationConfig"]["thinkingConfig"] == {
        "thinkingLevel": "low",
        "includeThoughts": True,
    }
    assert body["systemInstruction"] == {"parts": [{"text": "sys"}]}


def test_build_contents_names_function_responses() -> None:
    call = ToolCall(id="google_1", tool_id="lookup", parameters={"q": "x"}, thought_signature="sig")
    result = ToolSuccess("42")
    contents = build_contents(
        [
            Message.user(
                "look", attachments=(Attachment("a.pdf", "application/pdf", google_file_uri="gs://a"),)
            ),
            tool_call_message(call, result),
            tool_response_message(call, result),
        ]
    )
    assert [c["role"] for c in contents] == ["user", "model", "user"]
    assert contents[0]["parts"][1] == {
        "fileData": {"mimeType": "application/pdf", "fileUri": "gs://a"}
    }
    assert contents[1]["parts"] == [
        {"functionCall": {"name": "lookup", "args": {"q": "x"}}, "thoughtSignature": "sig"}
    ]
    assert contents[2]["parts"][0]["functionResponse"] == {
        "name": "lookup",
        "response": {"result": "42"},
    }


@pytest.mark.anyio
async def test_chunks_with_wrong_field_types_are_skipped(scripted_http, sse) -> None:
    body = sse.data(
        {"candidates": [{"content": {"parts": ["x"]}}]},
        {"candidates": "oops"},
        _candidate([{"functionCall": {"name": {"bad": 1}, "args": {}}}]),
        _candidate([{"text": "Hello"}], "STOP"),
    )
    client, _ = scripted_http((200, body))
    events = await _stream(GoogleProvider("http://test", client), _request())
    assert events[-1] == Complete("Hello")
