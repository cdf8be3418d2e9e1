"""
Cohere v2 chat adapter.

Streams ``POST /v2/chat``.  Event types (``event:`` line or the payload's
``type`` field):

- ``content-delta``: answer text;
- ``tool-plan-delta``: the model's rationale before calling a tool, reported
  as thinking;
- ``tool-call-start`` / ``tool-call-delta`` / ``tool-call-end``: one tool
  call, keyed by ``index``, whose arguments arrive as JSON fragments;
- ``message-end``: end of the response, with an error when
  ``finish_reason`` is ``ERROR``.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence

from branchchat.conversation.models import Message, Role
from branchchat.conversation.providers.base import (
    LLMAPIError,
    ProviderRequest,
    StreamAccumulator,
    StreamingProvider,
    ToolCallBuffer,
    handle_chunk,
    split_system,
)
from branchchat.conversation.providers.sse import iter_sse_json

logger = logging.getLogger(__name__)


def _tool_call_delta(data: dict[str, Any]) -> dict[str, Any]:
    calls = (((data.get("delta") or {}).get("message") or {}).get("tool_calls")) or {}
    if isinstance(calls, list):
        calls = calls[0] if calls else {}
    return calls


class CohereProvider(StreamingProvider):
    """Adapter for Cohere's streaming v2 chat API."""

    name = "cohere"
    default_base_url = "https://api.cohere.com"

    def build_body(self, request: ProviderRequest) -> dict[str, Any]:
        system, history = split_system(request.messages, request.system_prompt)
        messages = build_messages(history)
        if system:
            messages.insert(0, {"role": "system", "content": system})
        body: dict[str, Any] = {"model": request.model, "messages": messages, "stream": True}
        if request.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
                for tool in request.tools
            ]
        if request.temperature is not None:
            body["temperature"] = request.temperature
        return body

    async def _run(self, request: ProviderRequest, acc: StreamAccumulator) -> None:
        headers = {
            "Authorization": f"Bearer {request.api_key}",
            "content-type": "application/json",
        }
        buffer = ToolCallBuffer(self.name)

        async with self._post_stream(
            f"{self.base_url}/v2/chat", self.build_body(request), headers
        ) as response:
            acc.begin()
            async for event, data in iter_sse_json(response.aiter_lines()):
                if handle_chunk(self.name, self._handle_event, event, data, acc, buffer):
                    break

            # Some gateways close the stream without tool-call-end.
            for call in buffer.complete_all():
                acc.set_tool_call(call)

    def _handle_event(
        self,
        event: str | None,
        data: dict[str, Any],
        acc: StreamAccumulator,
        buffer: ToolCallBuffer,
    ) -> bool:
        """Apply one stream event; return ``True`` at ``message-end``."""
        kind = event or data.get("type")
        index = data.get("index", 0)
        message = (data.get("delta") or {}).get("message") or {}

        if kind == "content-delta":
            acc.add_text((message.get("content") or {}).get("text"))
        elif kind == "tool-plan-delta":
            acc.add_thinking(message.get("tool_plan"))
        elif kind == "tool-call-start":
            call = _tool_call_delta(data)
            function = call.get("function") or {}
            buffer.start(
                index,
                call_id=call.get("id"),
                name=function.get("name"),
                arguments=function.get("arguments"),
            )
        elif kind == "tool-call-delta":
            function = _tool_call_delta(data).get("function") or {}
            buffer.append(index, function.get("arguments"))
        elif kind == "tool-call-end":
            acc.set_tool_call(buffer.complete(index))
        elif kind == "message-end":
            delta = data.get("delta") or {}
            if delta.get("finish_reason") == "ERROR":
                error = delta.get("error") or "unknown error"
                raise LLMAPIError(f"Cohere API error: {error}")
            return True
        return False


def build_messages(messages: Sequence[Message]) -> list[dict[str, Any]]:
    """Convert history into Cohere v2 chat messages."""
    result: list[dict[str, Any]] = []
    for message in messages:
        if message.role is Role.USER:
            result.append({"role": "user", "content": message.text})
        elif message.role is Role.ASSISTANT:
            result.append({"role": "assistant", "content": message.text})
        elif message.role is Role.TOOL_CALL and message.tool_call is not None:
            entry: dict[str, Any] = {
                "role": "assistant",
                "tool_calls": [
                    {
                        "id": message.tool_call_id,
                        "type": "function",
                        "function": {
                            "name": message.tool_call.tool_id,
                            "arguments": json.dumps(message.tool_call.parameters),
                        },
                    }
                ],
            }
            plan = message.text.strip() or (message.thoughts or "").strip()
            if plan:
                entry["tool_plan"] = plan
            result.append(entry)
        elif message.role is Role.TOOL_RESPONSE:
            result.append(
                {
                    "role": "tool",
                    "tool_call_id": message.tool_response_call_id,
                    "content": message.tool_response_output or message.text,
                }
            )
    return result
