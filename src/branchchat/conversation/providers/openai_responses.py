"""
OpenAI Responses API adapter.

Streams ``POST /responses`` through ``openai.AsyncOpenAI``.  Relevant events
(the payload's ``type`` field):

- ``response.output_item.added``: a ``reasoning`` item opens the thinking
  phase; a ``function_call`` item registers a call (``id``, ``call_id``,
  ``name``);
- ``response.reasoning_summary_text.delta``: reasoning summary text;
- ``response.output_text.delta``: answer text;
- ``response.function_call_arguments.delta`` / ``.done``: argument
  fragments keyed by ``item_id``; ``.done`` repeats the full argument string;
- ``response.output_item.done``: a finished item (fallback for calls whose
  argument events were not seen);
- ``response.completed``: end of the response (its ``output`` is used when
  no delta events arrived);
- ``response.failed`` / ``error``: failures.

Reasoning summaries require organisation verification on some accounts.  When
the server rejects ``reasoning.summary`` the request is resubmitted once
without it; reasoning still happens, so the thinking phase closes with status
``UNAVAILABLE``.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence

from branchchat.conversation.models import Message, Role, ToolCall
from branchchat.conversation.providers.base import (
    LLMAPIError,
    ProviderRequest,
    StreamAccumulator,
    ToolCallBuffer,
    handle_chunk,
    split_system,
)
from branchchat.conversation.providers.openai_compatible import OpenAISDKProvider
from branchchat.conversation.providers.sse import iter_sse_json
from branchchat.conversation.thinking import Effort

logger = logging.getLogger(__name__)


class OpenAIResponsesProvider(OpenAISDKProvider):
    """Adapter for OpenAI's streaming Responses API."""

    name = "openai"
    default_base_url = "https://api.openai.com/v1"

    def build_kwargs(self, request: ProviderRequest, with_summary: bool = True) -> dict[str, Any]:
        system, history = split_system(request.messages, request.system_prompt)
        kwargs: dict[str, Any] = {
            "model": request.model,
            "input": build_input(history),
            "stream": True,
        }
        if system:
            kwargs["instructions"] = system
        if request.tools:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                }
                for tool in request.tools
            ]
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        budget = request.thinking_budget
        if isinstance(budget, Effort):
            reasoning: dict[str, Any] = {"effort": budget.level}
            if with_summary and budget.level != "none":
                reasoning["summary"] = "detailed"
            kwargs["reasoning"] = reasoning
        return kwargs

    async def _run(self, request: ProviderRequest, acc: StreamAccumulator) -> None:
        kwargs = self.build_kwargs(request)
        try:
            await self._consume(request, kwargs, acc)
        except LLMAPIError as exc:
            summary_requested = "summary" in kwargs.get("reasoning", {})
            if exc.status_code == 400 and summary_requested and "reasoning.summary" in str(exc):
                logger.warning(
                    "Reasoning summaries unavailable for %s; resubmitting without them",
                    request.model,
                )
                await self._consume(request, self.build_kwargs(request, with_summary=False), acc)
            else:
                raise

    async def _consume(
        self, request: ProviderRequest, kwargs: dict[str, Any], acc: StreamAccumulator
    ) -> None:
        client = self._sdk_client(request.api_key)
        buffer = ToolCallBuffer(self.name)
        async with self._sdk_errors():
            async with client.responses.with_streaming_response.create(**kwargs) as response:
                acc.begin()
                async for _event, data in iter_sse_json(response.iter_lines()):
                    if handle_chunk(self.name, self._handle_event, data, acc, buffer):
                        break

    def _handle_event(
        self, data: dict[str, Any], acc: StreamAccumulator, buffer: ToolCallBuffer
    ) -> bool:
        """Apply one event; return True when the response is over."""
        kind = data.get("type")

        if kind == "response.output_item.added":
            item = data.get("item") or {}
            if item.get("type") == "reasoning":
                acc.open_thinking()
            elif item.get("type") == "function_call":
                buffer.start(
                    item.get("id") or item.get("call_id"),
                    call_id=item.get("call_id"),
                    name=item.get("name"),
                    arguments=item.get("arguments"),
                )

        elif kind == "response.reasoning_summary_part.added":
            if acc.thoughts:
                acc.add_thinking("\n\n")

        elif kind == "response.reasoning_summary_text.delta":
            acc.add_thinking(data.get("delta"))

        elif kind == "response.output_text.delta":
            acc.add_text(data.get("delta"))

        elif kind == "response.function_call_arguments.delta":
            buffer.append(data.get("item_id"), data.get("delta"))

        elif kind == "response.function_call_arguments.done":
            acc.set_tool_call(
                buffer.complete(
                    data.get("item_id"), arguments=data.get("arguments"), name=data.get("name")
                )
            )

        elif kind == "response.output_item.done":
            item = data.get("item") or {}
            if item.get("type") == "function_call":
                acc.set_tool_call(
                    buffer.complete(
                        item.get("id") or item.get("call_id"),
                        arguments=item.get("arguments"),
                        call_id=item.get("call_id"),
                        name=item.get("name"),
                    )
                )

        elif kind == "response.completed":
            if acc.tool_call is None and not acc.text:
                self._apply_output((data.get("response") or {}).get("output") or [], acc)
            return True

        elif kind == "response.incomplete":
            details = (data.get("response") or {}).get("incomplete_details") or {}
            logger.warning("Response incomplete: %s", details.get("reason", "unknown"))
            return True

        elif kind == "response.failed":
            error = (data.get("response") or {}).get("error") or {}
            raise LLMAPIError(f"OpenAI response failed: {error.get('message', 'unknown error')}")

        elif kind == "error":
            raise LLMAPIError(f"OpenAI stream error: {data.get('message', 'unknown error')}")

        return False

    def _apply_output(self, output: list[dict[str, Any]], acc: StreamAccumulator) -> None:
        """Read a completed response's ``output`` list."""
        for item in output:
            if item.get("type") == "message":
                for part in item.get("content") or []:
                    if part.get("type") == "output_text":
                        acc.add_text(part.get("text"))
            elif item.get("type") == "function_call":
                try:
                    parameters = json.loads(item.get("arguments") or "{}")
                except json.JSONDecodeError:
                    logger.warning("Unparseable function call arguments in completed response")
                    continue
                if isinstance(parameters, dict) and item.get("name"):
                    acc.set_tool_call(
                        ToolCall(
                            id=item.get("call_id") or item.get("id", ""),
                            tool_id=item["name"],
                            parameters=parameters,
                            provider=self.name,
                        )
                    )


def build_input(messages: Sequence[Message]) -> list[dict[str, Any]]:
    """Convert history into Responses API input items."""
    items: list[dict[str, Any]] = []
    for message in messages:
        if message.role is Role.USER:
            files = [a for a in message.attachments if a.openai_file_id]
            if files:
                content: Any = [{"type": "input_text", "text": message.text}]
                for attachment in files:
                    part_type = (
                        "input_image" if attachment.mime_type.startswith("image/") else "input_file"
                    )
                    content.append({"type": part_type, "file_id": attachment.openai_file_id})
            else:
                content = message.text
            items.append({"role": "user", "content": content})
        elif message.role is Role.ASSISTANT:
            items.append({"role": "assistant", "content": message.text})
        elif message.role is Role.TOOL_CALL and message.tool_call is not None:
            if message.text.strip():
                items.append({"role": "assistant", "content": message.text})
            items.append(
                {
                    "type": "function_call",
                    "call_id": message.tool_call_id,
                    "name": message.tool_call.tool_id,
                    "arguments": json.dumps(message.tool_call.parameters),
                }
            )
        elif message.role is Role.TOOL_RESPONSE:
            items.append(
                {
                    "type": "function_call_output",
                    "call_id": message.tool_response_call_id,
                    "output": message.tool_response_output or message.text,
                }
            )
    return items
