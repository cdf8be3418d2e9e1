"""
OpenAI-compatible Chat Completions adapter.

Works with any endpoint that speaks the ``/chat/completions`` streaming
protocol: OpenRouter, Ollama, LiteLLM proxies, vLLM, and OpenAI itself.  The
request goes through ``openai.AsyncOpenAI`` (auth, base URL handling and
error classes) while the raw SSE lines are read through the SDK's
streaming-response wrapper, so one malformed chunk is skipped instead of
aborting the response.

Chunk handling:

- ``choices[0].delta.content``: answer text;
- ``delta.reasoning_content`` / ``delta.reasoning`` /
  ``delta.reasoning_details``: reasoning text (gateway dependent);
- ``delta.tool_calls[*]``: tool-call fragments keyed by ``index``; the
  first fragment of an index carries the id and name;
- ``finish_reason == "tool_calls"``: every buffered call is complete;
- ``error``: an error reported inside the stream.

Also provides :class:`OpenAISDKProvider`, the base shared with the Responses
API adapter, which maps SDK exceptions onto the ``LLMError`` hierarchy.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Sequence

import httpx
from openai import APIConnectionError, APIStatusError, AsyncOpenAI, RateLimitError

from branchchat.conversation.models import Message, Role
from branchchat.conversation.providers.base import (
    LLMAPIError,
    LLMConnectionError,
    LLMRateLimitError,
    ProviderRequest,
    StreamAccumulator,
    StreamingProvider,
    ToolCallBuffer,
    describe_http_error,
    handle_chunk,
)
from branchchat.conversation.providers.sse import iter_sse_json
from branchchat.conversation.thinking import Effort, Tokens

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Shared SDK base
# ---------------------------------------------------------------------------


class OpenAISDKProvider(StreamingProvider):
    """Base for adapters that issue requests through ``openai.AsyncOpenAI``.

    The SDK client reuses this provider's ``httpx.AsyncClient`` and never
    retries on its own.
    """

    def _sdk_client(self, api_key: str) -> AsyncOpenAI:
        return AsyncOpenAI(
            base_url=self.base_url,
            api_key=api_key or "unused",
            http_client=self._client,
            max_retries=0,
            timeout=self.timeout,
        )

    @asynccontextmanager
    async def _sdk_errors(self) -> AsyncIterator[None]:
        """Translate SDK and transport exceptions into ``LLMError`` types."""
        try:
            yield
        except RateLimitError as exc:
            logger.warning("%s rate limit exceeded: %s", self.name, exc)
            raise LLMRateLimitError(
                describe_http_error(exc.status_code, _response_text(exc))
            ) from exc
        except APIConnectionError as exc:
            raise LLMConnectionError(f"Could not connect to {self.name}: {exc}") from exc
        except APIStatusError as exc:
            raise LLMAPIError(
                describe_http_error(exc.status_code, _response_text(exc)),
                status_code=exc.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise LLMConnectionError(f"Connection to {self.name} failed: {exc}") from exc


def _response_text(exc: APIStatusError) -> str:
    try:
        return exc.response.text
    except httpx.ResponseNotRead:
        return exc.message


# ---------------------------------------------------------------------------
# Chat Completions adapter
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider(OpenAISDKProvider):
    """Adapter for OpenAI-compatible ``/chat/completions`` streaming endpoints.

    Args:
        base_url: The API base URL (e.g. ``https://openrouter.ai/api/v1``).
        http_client: Optional shared ``httpx.AsyncClient``.
        timeout: Request timeout in seconds.
        name: Provider key used for the thinking-budget lookup
            (``"openrouter"`` or ``"openai_compatible"``).
    """

    name = "openai_compatible"
    default_base_url = "http://localhost:11434/v1"

    def __init__(
        self,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
        name: str | None = None,
    ) -> None:
        super().__init__(base_url=base_url, http_client=http_client, timeout=timeout)
        if name:
            self.name = name

    def build_kwargs(self, request: ProviderRequest) -> dict[str, Any]:
        messages = build_messages(request.messages)
        if request.system_prompt:
            messages.insert(0, {"role": "system", "content": request.system_prompt})
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "stream": True,
        }
        if request.tools:
            kwargs["tools"] = [
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
            kwargs["temperature"] = request.temperature

        budget = request.thinking_budget
        if self.name == "openrouter":
            if isinstance(budget, Effort):
                kwargs["extra_body"] = {"reasoning": {"effort": budget.level}}
            elif isinstance(budget, Tokens):
                kwargs["extra_body"] = {"reasoning": {"max_tokens": budget.count}}
        elif isinstance(budget, Effort):
            kwargs["reasoning_effort"] = budget.level
        return kwargs

    async def _run(self, request: ProviderRequest, acc: StreamAccumulator) -> None:
        client = self._sdk_client(request.api_key)
        buffer = ToolCallBuffer(self.name)
        kwargs = self.build_kwargs(request)

        async with self._sdk_errors():
            async with client.chat.completions.with_streaming_response.create(**kwargs) as response:
                acc.begin()
                async for _event, data in iter_sse_json(response.iter_lines()):
                    handle_chunk(self.name, self._handle_chunk, data, acc, buffer)

        for call in buffer.complete_all():
            acc.set_tool_call(call)

    def _handle_chunk(
        self, data: dict[str, Any], acc: StreamAccumulator, buffer: ToolCallBuffer
    ) -> None:
        error = data.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            raise LLMAPIError(
                f"{self.name} stream error: {message}",
                status_code=code if isinstance(code, int) else None,
            )

        choices = data.get("choices") or []
        if not choices:
            return
        choice = choices[0]
        delta = choice.get("delta") or {}

        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if isinstance(reasoning, str) and reasoning:
            acc.add_thinking(reasoning)
        else:
            for detail in delta.get("reasoning_details") or []:
                acc.add_thinking(detail.get("text") or detail.get("reasoning") or detail.get("summary"))

        acc.add_text(delta.get("content"))

        for fragment in delta.get("tool_calls") or []:
            index = fragment.get("index", 0)
            function = fragment.get("function") or {}
            buffer.start(index, call_id=fragment.get("id"), name=function.get("name"))
            buffer.append(index, function.get("arguments"))

        if choice.get("finish_reason") == "tool_calls":
            for call in buffer.complete_all():
                acc.set_tool_call(call)


def build_messages(messages: Sequence[Message]) -> list[dict[str, Any]]:
    """Convert history into Chat Completions messages."""
    result: list[dict[str, Any]] = []
    for message in messages:
        if message.role is Role.SYSTEM:
            result.append({"role": "system", "content": message.text})
        elif message.role is Role.USER:
            files = [a for a in message.attachments if a.openai_file_id]
            if files:
                content: Any = [{"type": "text", "text": message.text}] + [
                    {"type": "file", "file": {"file_id": a.openai_file_id}} for a in files
                ]
            else:
                content = message.text
            result.append({"role": "user", "content": content})
        elif message.role is Role.ASSISTANT:
            result.append({"role": "assistant", "content": message.text})
        elif message.role is Role.TOOL_CALL and message.tool_call is not None:
            result.append(
                {
                    "role": "assistant",
                    "content": message.text or None,
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
            )
        elif message.role is Role.TOOL_RESPONSE:
            result.append(
                {
                    "role": "tool",
                    "tool_call_id": message.tool_response_call_id,
                    "content": message.tool_response_output or message.text,
                }
            )
    return result
