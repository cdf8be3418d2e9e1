"""
Google Gemini adapter (``streamGenerateContent`` with ``alt=sse``).

Each SSE chunk is a complete ``GenerateContentResponse``.  Parts flagged
``thought: true`` carry reasoning, plain ``text`` parts carry the answer and
``functionCall`` parts arrive whole (no argument fragments).  Gemini does not
always assign call ids, so one is generated when missing.  A part's
``thoughtSignature`` is kept on the ``ToolCall`` and replayed with the call in
the next request, as Gemini requires.
"""

from __future__ import annotations

import logging
from typing import Any, Sequence

from branchchat.conversation.models import Message, Role, ToolCall, new_id
from branchchat.conversation.providers.base import (
    LLMAPIError,
    ProviderRequest,
    StreamAccumulator,
    StreamingProvider,
    handle_chunk,
    split_system,
    tool_names_by_call_id,
)
from branchchat.conversation.providers.sse import iter_sse_json
from branchchat.conversation.thinking import Effort, Tokens

logger = logging.getLogger(__name__)

# Finish reasons that end a response normally.
_NORMAL_FINISH = {"STOP", "MAX_TOKENS", "FINISH_REASON_UNSPECIFIED"}


class GoogleProvider(StreamingProvider):
    """Adapter for the Gemini ``generateContent`` streaming API."""

    name = "google"
    default_base_url = "https://generativelanguage.googleapis.com"

    def build_body(self, request: ProviderRequest) -> dict[str, Any]:
        system, history = split_system(request.messages, request.system_prompt)
        body: dict[str, Any] = {"contents": build_contents(history)}
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        if request.tools:
            declarations = []
            for tool in request.tools:
                declaration: dict[str, Any] = {"name": tool.name, "description": tool.description}
                if tool.properties:
                    declaration["parameters"] = tool.parameters
                declarations.append(declaration)
            body["tools"] = [{"functionDeclarations": declarations}]

        generation: dict[str, Any] = {}
        if request.temperature is not None:
            generation["temperature"] = request.temperature
        budget = request.thinking_budget
        if isinstance(budget, Tokens):
            generation["thinkingConfig"] = {
                "thinkingBudget": budget.count,
                "includeThoughts": budget.count > 0,
            }
        elif isinstance(budget, Effort):
            generation["thinkingConfig"] = {"thinkingLevel": budget.level, "includeThoughts": True}
        if generation:
            body["generationConfig"] = generation
        return body

    async def _run(self, request: ProviderRequest, acc: StreamAccumulator) -> None:
        url = f"{self.base_url}/v1beta/models/{request.model}:streamGenerateContent?alt=sse"
        headers = {"x-goog-api-key": request.api_key, "content-type": "application/json"}

        async with self._post_stream(url, self.build_body(request), headers) as response:
            acc.begin()
            async for _event, data in iter_sse_json(response.aiter_lines()):
                handle_chunk(self.name, self._handle_chunk, data, acc)

    def _handle_chunk(self, data: dict[str, Any], acc: StreamAccumulator) -> None:
        error = data.get("error")
        if isinstance(error, dict):
            raise LLMAPIError(
                f"Google API error: {error.get('message', 'unknown error')}",
                status_code=error.get("code"),
            )
        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise LLMAPIError(f"Prompt blocked: {block_reason}")

        candidates = data.get("candidates") or []
        if not candidates:
            return
        candidate = candidates[0]
        for part in (candidate.get("content") or {}).get("parts") or []:
            self._handle_part(part, acc)

        reason = candidate.get("finishReason")
        if reason and reason not in _NORMAL_FINISH:
            raise LLMAPIError(f"Response blocked: {reason}")

    def _handle_part(self, part: dict[str, Any], acc: StreamAccumulator) -> None:
        function_call = part.get("functionCall")
        if function_call:
            name = function_call.get("name")
            args = function_call.get("args") or {}
            if not isinstance(name, str) or not name or not isinstance(args, dict):
                logger.warning("Dropping malformed Gemini function call: %r", function_call)
                return
            acc.set_tool_call(
                ToolCall(
                    id=function_call.get("id") or f"google_{new_id()}",
                    tool_id=name,
                    parameters=args,
                    provider=self.name,
                    thought_signature=part.get("thoughtSignature"),
                )
            )
        elif part.get("thought"):
            acc.add_thinking(part.get("text"))
        elif "text" in part:
            acc.add_text(part.get("text"))


def build_contents(messages: Sequence[Message]) -> list[dict[str, Any]]:
    """Convert history into Gemini ``contents`` (roles ``user`` / ``model``)."""
    names = tool_names_by_call_id(messages)
    contents: list[dict[str, Any]] = []

    def push(role: str, parts: list[dict[str, Any]]) -> None:
        if not parts:
            return
        if contents and contents[-1]["role"] == role:
            contents[-1]["parts"].extend(parts)
        else:
            contents.append({"role": role, "parts": parts})

    for message in messages:
        if message.role is Role.USER:
            parts: list[dict[str, Any]] = [{"text": message.text}] if message.text else []
            for attachment in message.attachments:
                if attachment.google_file_uri:
                    parts.append(
                        {
                            "fileData": {
                                "mimeType": attachment.mime_type,
                                "fileUri": attachment.google_file_uri,
                            }
                        }
                    )
            push("user", parts)
        elif message.role is Role.ASSISTANT:
            push("model", [{"text": message.text}] if message.text else [])
        elif message.role is Role.TOOL_CALL and message.tool_call is not None:
            parts = [{"text": message.text}] if message.text.strip() else []
            call_part: dict[str, Any] = {
                "functionCall": {
                    "name": message.tool_call.tool_id,
                    "args": message.tool_call.parameters,
                }
            }
            if message.tool_call.thought_signature:
                call_part["thoughtSignature"] = message.tool_call.thought_signature
            parts.append(call_part)
            push("model", parts)
        elif message.role is Role.TOOL_RESPONSE:
            name = names.get(message.tool_response_call_id or "", "")
            push(
                "user",
                [
                    {
                        "functionResponse": {
                            "name": name,
                            "response": {"result": message.tool_response_output or message.text},
                        }
                    }
                ],
            )
    return contents
