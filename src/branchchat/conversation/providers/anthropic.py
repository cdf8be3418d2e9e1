"""
Anthropic Messages API adapter.

Streams ``POST /v1/messages`` with ``stream: true``.  The response uses the
``event:`` + ``data:`` SSE layout with content blocks:

- ``thinking`` / ``redacted_thinking`` blocks carry reasoning
  (``thinking_delta``); a redacted block means reasoning happened but is not
  readable, and its encrypted ``data`` is kept so it can be sent back with a
  tool call;
- ``text`` blocks carry the answer (``text_delta``);
- ``tool_use`` blocks carry a tool call whose input arrives as
  ``input_json_delta`` fragments and is complete at ``content_block_stop``.

History mapping: assistant text and the following ``tool_call`` message are
merged into one assistant turn (text + ``tool_use``); a ``tool_response``
becomes a user turn with a ``tool_result`` block.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
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
from branchchat.conversation.thinking import Tokens

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 8192
MAX_TOKENS_CEILING = 128_000


class AnthropicProvider(StreamingProvider):
    """Adapter for Anthropic's streaming Messages API."""

    name = "anthropic"
    default_base_url = "https://api.anthropic.com"

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def build_body(self, request: ProviderRequest) -> dict[str, Any]:
        system, history = split_system(request.messages, request.system_prompt)
        body: dict[str, Any] = {
            "model": request.model,
            "max_tokens": DEFAULT_MAX_TOKENS,
            "messages": build_messages(history),
            "stream": True,
        }
        if system:
            body["system"] = system
        if request.tools:
            body["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": {
                        "type": "object",
                        "properties": tool.properties,
                        "required": tool.required,
                    },
                }
                for tool in request.tools
            ]

        budget = request.thinking_budget
        thinking_on = isinstance(budget, Tokens) and budget.count > 0
        if isinstance(budget, Tokens):
            if thinking_on:
                body["thinking"] = {"type": "enabled", "budget_tokens": budget.count}
                body["max_tokens"] = min(budget.count + DEFAULT_MAX_TOKENS, MAX_TOKENS_CEILING)
            else:
                body["thinking"] = {"type": "disabled"}
        if request.temperature is not None:
            if thinking_on:
                logger.debug("Temperature is ignored while extended thinking is enabled")
            else:
                body["temperature"] = request.temperature
        return body

    # ------------------------------------------------------------------
    # Response
    # ------------------------------------------------------------------

    async def _run(self, request: ProviderRequest, acc: StreamAccumulator) -> None:
        headers = {
            "x-api-key": request.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        body = self.build_body(request)
        state = _ResponseState(ToolCallBuffer(self.name))

        async with self._post_stream(f"{self.base_url}/v1/messages", body, headers) as response:
            acc.begin()
            async for event, data in iter_sse_json(response.aiter_lines()):
                if handle_chunk(self.name, self._handle_event, event, data, acc, state):
                    break

    def _handle_event(
        self,
        event: str | None,
        data: dict[str, Any],
        acc: StreamAccumulator,
        state: _ResponseState,
    ) -> bool:
        """Apply one stream event; return ``True`` at ``message_stop``."""
        kind = event or data.get("type")
        index = data.get("index")
        buffer = state.buffer

        if kind == "content_block_start":
            block = data.get("content_block") or {}
            block_type = block.get("type")
            if block_type == "thinking":
                acc.open_thinking()
                acc.add_thinking(block.get("thinking"))
            elif block_type == "redacted_thinking":
                acc.open_thinking()
                if isinstance(block.get("data"), str):
                    state.redacted.append(block["data"])
            elif block_type == "text":
                acc.add_text(block.get("text"))
            elif block_type == "tool_use":
                initial = block.get("input")
                buffer.start(
                    index,
                    call_id=block.get("id"),
                    name=block.get("name"),
                    arguments=json.dumps(initial) if initial else None,
                )

        elif kind == "content_block_delta":
            delta = data.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "thinking_delta":
                acc.add_thinking(delta.get("thinking"))
            elif delta_type == "text_delta":
                acc.add_text(delta.get("text"))
            elif delta_type == "input_json_delta":
                buffer.append(index, delta.get("partial_json"))
            elif delta_type == "signature_delta":
                signature = delta.get("signature")
                if isinstance(signature, str) and signature:
                    state.signature = signature

        elif kind == "content_block_stop":
            if index in buffer:
                call = buffer.complete(index, thought_signature=state.signature)
                if call is not None and state.redacted:
                    call = replace(call, redacted_thinking=tuple(state.redacted))
                acc.set_tool_call(call)

        elif kind == "message_stop":
            return True

        elif kind == "error":
            error = data.get("error")
            if not isinstance(error, dict):
                error = {"message": str(error or "")}
            raise LLMAPIError(
                f"Anthropic API error ({error.get('type', 'unknown')}): "
                f"{error.get('message', '')}"
            )
        return False


@dataclass
class _ResponseState:
    buffer: ToolCallBuffer
    signature: str | None = None
    redacted: list[str] = field(default_factory=list)


def build_messages(messages: Sequence[Message]) -> list[dict[str, Any]]:
    """Convert history into alternating user/assistant turns."""
    turns: list[dict[str, Any]] = []

    def push(role: str, blocks: list[dict[str, Any]]) -> None:
        if not blocks:
            return
        if turns and turns[-1]["role"] == role:
            turns[-1]["content"].extend(blocks)
        else:
            turns.append({"role": role, "content": blocks})

    for message in messages:
        if message.role is Role.USER:
            if message.attachments:
                logger.debug("Skipping %d attachment(s) for Anthropic", len(message.attachments))
            push("user", [{"type": "text", "text": message.text}] if message.text else [])
        elif message.role is Role.ASSISTANT:
            push("assistant", [{"type": "text", "text": message.text}] if message.text else [])
        elif message.role is Role.TOOL_CALL and message.tool_call is not None:
            blocks: list[dict[str, Any]] = []
            # Reasoning blocks must precede tool_use while thinking is enabled.
            signature = message.thoughts_signature or message.tool_call.thought_signature
            if signature and message.thoughts:
                blocks.append(
                    {"type": "thinking", "thinking": message.thoughts, "signature": signature}
                )
            blocks.extend(
                {"type": "redacted_thinking", "data": data}
                for data in message.tool_call.redacted_thinking
            )
            if message.text.strip():
                blocks.append({"type": "text", "text": message.text})
            blocks.append(
                {
                    "type": "tool_use",
                    "id": message.tool_call_id,
                    "name": message.tool_call.tool_id,
                    "input": message.tool_call.parameters,
                }
            )
            push("assistant", blocks)
        elif message.role is Role.TOOL_RESPONSE:
            push(
                "user",
                [
                    {
                        "type": "tool_result",
                        "tool_use_id": message.tool_response_call_id,
                        "content": message.tool_response_output or message.text,
                    }
                ],
            )
    return turns
