"""
Poe bot protocol adapter.

Streams ``POST {base_url}/{model}`` using Poe's ``query`` request.  The
response uses the ``event:`` + ``data:`` SSE layout:

- ``text``: an answer fragment (``{"text": ...}``);
- ``replace_response``: the bot rewrote its answer, ``text`` replaces
  everything received so far;
- ``json``: a Chat Completions style chunk carrying tool-call fragments in
  ``choices[0].delta.tool_calls``; ``finish_reason == "tool_calls"``
  completes them;
- ``error``: an error reported inside the stream;
- ``done``: the end of the response.

Poe has no tool-message roles.  Tool traffic that follows the last user
message is sent in the request's ``tool_calls`` / ``tool_results`` fields;
tool messages further back are dropped from the query.

Example::

    provider = PoeProvider()
    await provider.stream(
        ProviderRequest(messages=history, model="Claude-Sonnet-4", api_key=key),
        on_event,
    )
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
    tool_names_by_call_id,
)
from branchchat.conversation.providers.sse import iter_sse_json

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "1.2"
CONTENT_TYPE = "text/markdown"


class PoeProvider(StreamingProvider):
    """Adapter for Poe's server-bot streaming protocol."""

    name = "poe"
    default_base_url = "https://api.poe.com/bot"

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def build_body(self, request: ProviderRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "version": PROTOCOL_VERSION,
            "type": "query",
            "query": build_query(request.messages, request.system_prompt),
            "user_id": "",
            "conversation_id": "",
            "message_id": "",
        }
        if request.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters or {},
                    },
                }
                for tool in request.tools
            ]
        tool_calls, tool_results = pending_tool_traffic(request.messages)
        if tool_calls:
            body["tool_calls"] = tool_calls
            body["tool_results"] = tool_results
        if request.temperature is not None:
            body["temperature"] = request.temperature
        return body

    # ------------------------------------------------------------------
    # Response
    # ------------------------------------------------------------------

    async def _run(self, request: ProviderRequest, acc: StreamAccumulator) -> None:
        headers = {
            "Authorization": f"Bearer {request.api_key}",
            "content-type": "application/json",
            "accept": "text/event-stream",
        }
        url = f"{self.base_url}/{request.model}"
        buffer = ToolCallBuffer(self.name)

        async with self._post_stream(url, self.build_body(request), headers) as response:
            acc.begin()
            async for event, data in iter_sse_json(response.aiter_lines()):
                if handle_chunk(self.name, self._handle_event, event, data, acc, buffer):
                    break

        for call in buffer.complete_all():
            acc.set_tool_call(call)

    def _handle_event(
        self,
        event: str | None,
        data: dict[str, Any],
        acc: StreamAccumulator,
        buffer: ToolCallBuffer,
    ) -> bool:
        """Apply one stream event; return ``True`` at ``done``."""
        if event == "text":
            acc.add_text(data.get("text"))
        elif event == "replace_response":
            acc.replace_text(data.get("text"))
        elif event == "json":
            choices = data.get("choices") or []
            if not choices:
                return False
            choice = choices[0]
            for fragment in (choice.get("delta") or {}).get("tool_calls") or []:
                index = fragment.get("index", 0)
                function = fragment.get("function") or {}
                buffer.start(index, call_id=fragment.get("id"), name=function.get("name"))
                buffer.append(index, function.get("arguments"))
            if choice.get("finish_reason") == "tool_calls":
                for call in buffer.complete_all():
                    acc.set_tool_call(call)
        elif event == "error":
            raise LLMAPIError(
                f"Poe API error ({data.get('error_type')}): {data.get('text') or 'Unknown error'}"
            )
        elif event == "done":
            return True
        else:
            logger.debug("Ignoring Poe event %r", event)
        return False


def build_query(messages: Sequence[Message], system_prompt: str = "") -> list[dict[str, Any]]:
    """Convert history into Poe ``query`` entries (roles system/user/bot)."""
    query: list[dict[str, Any]] = []
    if system_prompt.strip():
        query.append({"role": "system", "content": system_prompt, "content_type": CONTENT_TYPE})
    for message in messages:
        if message.role is Role.SYSTEM:
            query.append({"role": "system", "content": message.text, "content_type": CONTENT_TYPE})
        elif message.role is Role.USER:
            if message.attachments:
                logger.debug("Skipping %d attachment(s) for Poe", len(message.attachments))
            query.append({"role": "user", "content": message.text, "content_type": CONTENT_TYPE})
        elif message.role is Role.ASSISTANT:
            query.append({"role": "bot", "content": message.text, "content_type": CONTENT_TYPE})
    return query


def pending_tool_traffic(
    messages: Sequence[Message],
) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Return the ``tool_calls`` and ``tool_results`` after the last user message."""
    last_user = max((i for i, m in enumerate(messages) if m.role is Role.USER), default=-1)
    tail = messages[last_user + 1:]
    names = tool_names_by_call_id(tail)
    calls: list[dict[str, Any]] = []
    results: list[dict[str, Any]] = []
    for message in tail:
        if message.role is Role.TOOL_CALL and message.tool_call is not None:
            calls.append(
                {
                    "id": message.tool_call_id,
                    "type": "function",
                    "function": {
                        "name": message.tool_call.tool_id,
                        "arguments": json.dumps(message.tool_call.parameters),
                    },
                }
            )
        elif message.role is Role.TOOL_RESPONSE:
            results.append(
                {
                    "role": "tool",
                    "name": names.get(message.tool_response_call_id or "", ""),
                    "tool_call_id": message.tool_response_call_id,
                    "content": message.tool_response_output or message.text,
                }
            )
    return calls, results
