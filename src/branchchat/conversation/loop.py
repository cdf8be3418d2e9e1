"""
ToolCallingOrchestrator: the per-turn tool-calling engine.

One turn issues a provider request against the working history.  A
``Complete`` event ends the turn; a ``ToolCallDetected`` event runs the tool
through the registry, records a ``tool_call`` / ``tool_response`` message
pair, and issues the next request.  An ``ErrorEvent`` ends the turn as
failed.  The loop never retries a failed request; the caller decides whether
to resubmit.

Typical usage inside a ConversationSession::

    orchestrator = ToolCallingOrchestrator(provider=provider, registry=registry)
    outcome = await orchestrator.run(
        tree.messages,
        model="claude-sonnet-4-5",
        tools=registry.get_definitions(),
        on_event=print,
        on_tool_messages=persist_pair,
    )
    if isinstance(outcome, TurnDone):
        tree = tree.add_response_to_current_variant(outcome.message)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Sequence, Union

from branchchat.conversation.events import (
    Complete,
    ErrorEvent,
    EventCallback,
    StreamEvent,
    TerminalEvent,
    ToolCallDetected,
    is_terminal,
)
from branchchat.conversation.models import (
    Message,
    ToolDefinition,
    ToolError,
    ToolResult,
    tool_call_message,
    tool_response_message,
)
from branchchat.conversation.providers.base import ProviderAdapter, ProviderRequest
from branchchat.conversation.thinking import NO_BUDGET, ThinkingBudget, resolve_budget
from branchchat.conversation.tools.registry import ToolExecutor

logger = logging.getLogger(__name__)

MAX_TOOL_DEPTH = 25
MAX_DEPTH_ERROR = "maximum tool iterations reached"
NO_TERMINAL_EVENT_ERROR = "provider stream ended without a result"

# Receives each (tool_call, tool_response) pair as soon as the tool has run.
ToolMessagesCallback = Callable[[Message, Message], None]


@dataclass(frozen=True)
class TurnDone:
    """The model produced a final answer.

    Attributes:
        text: The full answer text.
        message: The assistant message to append to the conversation.
    """

    text: str
    message: Message


@dataclass(frozen=True)
class TurnFailed:
    """The turn ended without an answer."""

    error: str


TurnOutcome = Union[TurnDone, TurnFailed]


class ToolCallingOrchestrator:
    """Runs the request / tool-call / request loop for a single turn.

    Attributes:
        provider: The adapter used for every request of the turn.
        registry: Executes the tools the model asks for.
        max_tool_depth: Number of requests after which a turn that is still
            calling tools fails with :data:`MAX_DEPTH_ERROR`.
    """

    def __init__(
        self,
        provider: ProviderAdapter,
        registry: ToolExecutor,
        max_tool_depth: int = MAX_TOOL_DEPTH,
    ) -> None:
        if max_tool_depth < 1:
            raise ValueError("max_tool_depth must be at least 1")
        self.provider = provider
        self.registry = registry
        self.max_tool_depth = max_tool_depth

    async def run(
        self,
        history: Sequence[Message],
        *,
        model: str,
        system_prompt: str = "",
        api_key: str = "",
        tools: Sequence[ToolDefinition] | None = None,
        thinking_budget: ThinkingBudget = NO_BUDGET,
        temperature: float | None = None,
        on_event: EventCallback | None = None,
        on_tool_messages: ToolMessagesCallback | None = None,
    ) -> TurnOutcome:
        """Run one turn.

        Args:
            history: Conversation so far, ending with the user message being
                answered.  Not mutated; the loop works on a local copy.
            model: Target model identifier.
            system_prompt: Instructions sent with every request.
            api_key: Provider credential.
            tools: Tools enabled for this turn.  Calls to any other tool are
                answered with a ``ToolError``.
            thinking_budget: Requested reasoning budget; reconciled with the
                model's capabilities before sending.
            temperature: Optional sampling temperature.
            on_event: Receives every stream event of every request, in order.
            on_tool_messages: Receives each executed call as a
                ``(tool_call, tool_response)`` message pair.

        Returns:
            ``TurnDone`` or ``TurnFailed``.
        """
        enabled = list(tools or [])
        enabled_ids = {tool.name for tool in enabled}
        budget = resolve_budget(self.provider.name, model, thinking_budget)
        working: list[Message] = list(history)
        turn_start = time.monotonic()

        for iteration in range(self.max_tool_depth):
            logger.debug("Tool loop iteration %d/%d", iteration + 1, self.max_tool_depth)

            request = ProviderRequest(
                messages=list(working),
                model=model,
                system_prompt=system_prompt,
                api_key=api_key,
                tools=enabled,
                thinking_budget=budget,
                temperature=temperature,
            )
            request_t0 = time.monotonic()
            terminal = await self._request(request, on_event)
            logger.debug(
                "Provider call %d took %.3fs (%s)",
                iteration + 1,
                time.monotonic() - request_t0,
                type(terminal).__name__ if terminal else "no terminal event",
            )

            if isinstance(terminal, Complete):
                logger.info(
                    "Turn complete after %d request(s) in %.3fs",
                    iteration + 1,
                    time.monotonic() - turn_start,
                )
                message = Message.assistant(
                    terminal.full_text,
                    model=model,
                    thoughts=terminal.thoughts,
                    thinking_duration_seconds=terminal.thinking_duration_seconds,
                    thoughts_status=terminal.thoughts_status,
                )
                return TurnDone(text=terminal.full_text, message=message)

            if isinstance(terminal, ToolCallDetected):
                call_message, response_message = await self._run_tool(
                    terminal, enabled_ids, model
                )
                if on_tool_messages is not None:
                    on_tool_messages(call_message, response_message)
                working.extend((call_message, response_message))
                continue

            if isinstance(terminal, ErrorEvent):
                logger.warning("Turn failed on request %d: %s", iteration + 1, terminal.message)
                return TurnFailed(terminal.message)

            logger.error("%s returned without a terminal event", self.provider.name)
            return TurnFailed(NO_TERMINAL_EVENT_ERROR)

        logger.warning("Turn stopped after %d tool iterations", self.max_tool_depth)
        return TurnFailed(MAX_DEPTH_ERROR)

    async def _request(
        self, request: ProviderRequest, on_event: EventCallback | None
    ) -> TerminalEvent | None:
        """Issue one provider call and return its terminal event."""
        terminal: list[TerminalEvent] = []

        def _forward(event: StreamEvent) -> None:
            if is_terminal(event):
                if terminal:
                    logger.warning("%s sent a second terminal event", self.provider.name)
                    return
                terminal.append(event)
            if on_event is not None:
                on_event(event)

        await self.provider.stream(request, _forward)
        return terminal[0] if terminal else None

    async def _run_tool(
        self,
        detected: ToolCallDetected,
        enabled_ids: set[str],
        model: str,
    ) -> tuple[Message, Message]:
        call = detected.tool_call
        logger.debug("Running tool: %s(%s)", call.tool_id, call.parameters)
        result: ToolResult
        if call.tool_id not in enabled_ids:
            logger.warning("Model requested disabled tool %r", call.tool_id)
            result = ToolError(f"Tool {call.tool_id!r} is not enabled for this conversation")
        else:
            result = await self.registry.execute(call.tool_id, dict(call.parameters))

        call_message = replace(
            tool_call_message(
                call,
                result,
                preceding_text=detected.preceding_text,
                model=model,
                tool_name=self.registry.display_name(call.tool_id),
            ),
            thoughts=detected.thoughts,
            thinking_duration_seconds=detected.thinking_duration_seconds,
            thoughts_status=detected.thoughts_status,
        )
        return call_message, tool_response_message(call, result)
