"""
Tool registry for the tool-calling orchestrator.

``ToolRegistry`` maps tool identifiers to their definitions and async
handlers and executes calls with an optional timeout and retry policy.
Execution never raises: an unknown tool, a handler exception or a timeout
all come back as :class:`~branchchat.conversation.models.ToolError` so the
error text can be fed back to the model.

Typical usage::

    from branchchat.conversation.tools import DateTimeTool, ToolRegistry

    registry = ToolRegistry(timeout=10.0, max_retries=1)
    dt = DateTimeTool()
    registry.register(DateTimeTool.TOOL_DEFINITION, dt.as_handler())

    orchestrator = ToolCallingOrchestrator(provider=provider, registry=registry)
    outcome = await orchestrator.run(history, model="gpt-5", tools=registry.get_definitions())
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Protocol, Union

from branchchat.conversation.models import ToolDefinition, ToolError, ToolResult, ToolSuccess

logger = logging.getLogger(__name__)

# A handler receives the parsed parameters and returns either a plain string
# (treated as success) or a full ToolResult.
AsyncToolHandler = Callable[[dict[str, Any]], Awaitable[Union[str, ToolResult]]]


class ToolExecutor(Protocol):
    """What the orchestrator needs from a registry."""

    def display_name(self, tool_id: str) -> str: ...

    async def execute(self, tool_id: str, parameters: dict[str, Any]) -> ToolResult: ...


class ToolRegistry:
    """Registry mapping tool identifiers to their definitions and async handlers.

    Args:
        timeout: Maximum seconds per tool call.  ``None`` disables the
            timeout.  Default: ``30.0``.
        max_retries: Number of *additional* attempts on retryable failures.
            ``0`` means a single attempt only.
        retry_exceptions: Exception types that trigger a retry.  Defaults to
            ``(asyncio.TimeoutError,)`` for transient timeout failures.
    """

    def __init__(
        self,
        timeout: float | None = 30.0,
        max_retries: int = 0,
        retry_exceptions: tuple[type[BaseException], ...] = (asyncio.TimeoutError,),
    ) -> None:
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_exceptions = retry_exceptions
        self._tools: dict[str, tuple[ToolDefinition, AsyncToolHandler, str]] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        definition: ToolDefinition,
        handler: AsyncToolHandler,
        display_name: str | None = None,
    ) -> None:
        """Register a tool with its async handler.

        Args:
            definition: The tool's ``ToolDefinition``.
            handler: Async callable ``(params) -> str | ToolResult``.
            display_name: Human-readable name; defaults to the identifier.

        Raises:
            ValueError: If a tool with the same name is already registered.
        """
        if definition.name in self._tools:
            raise ValueError(
                f"Tool {definition.name!r} is already registered. "
                "Deregister it first before re-registering."
            )
        self._tools[definition.name] = (definition, handler, display_name or definition.name)
        logger.debug("Registered tool: %r", definition.name)

    def deregister(self, name: str) -> None:
        """Remove a registered tool by name.

        Raises:
            KeyError: If the tool is not registered.
        """
        if name not in self._tools:
            raise KeyError(f"Tool {name!r} is not registered.")
        del self._tools[name]
        logger.debug("Deregistered tool: %r", name)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_definitions(self, enabled: Iterable[str] | None = None) -> list[ToolDefinition]:
        """Return registered definitions (insertion order).

        Args:
            enabled: Restrict the result to these identifiers.
        """
        wanted = set(enabled) if enabled is not None else None
        return [
            definition
            for name, (definition, _handler, _display) in self._tools.items()
            if wanted is None or name in wanted
        ]

    def display_name(self, tool_id: str) -> str:
        entry = self._tools.get(tool_id)
        return entry[2] if entry else tool_id

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, tool_id: str, parameters: dict[str, Any]) -> ToolResult:
        """Run *tool_id* with *parameters*.

        Each attempt is bounded by ``timeout``; attempts failing with one of
        ``retry_exceptions`` are repeated up to ``max_retries`` more times.

        Returns:
            ``ToolSuccess`` with the handler's output, or ``ToolError`` for an
            unknown tool, a handler exception or an exhausted timeout.
        """
        entry = self._tools.get(tool_id)
        if entry is None:
            logger.warning("Unknown tool requested: %r", tool_id)
            return ToolError(f"Unknown tool: {tool_id!r}")

        _definition, handler, _display = entry
        total_attempts = self.max_retries + 1

        for attempt in range(1, total_attempts + 1):
            try:
                if self.timeout is not None:
                    output = await asyncio.wait_for(handler(parameters), timeout=self.timeout)
                else:
                    output = await handler(parameters)
            except Exception as exc:
                retryable = bool(self.retry_exceptions) and isinstance(exc, self.retry_exceptions)
                if retryable and attempt < total_attempts:
                    logger.warning(
                        "Tool %r attempt %d/%d failed (%s: %s); retrying…",
                        tool_id,
                        attempt,
                        total_attempts,
                        type(exc).__name__,
                        exc,
                    )
                    continue
                if isinstance(exc, asyncio.TimeoutError):
                    if self.timeout is None:
                        logger.error("Tool %r timed out: %s", tool_id, exc)
                        return ToolError(str(exc) or f"Tool {tool_id!r} timed out")
                    logger.error("Tool %r timed out after %.1fs", tool_id, self.timeout)
                    return ToolError(f"Tool {tool_id!r} timed out after {self.timeout}s")
                logger.error("Tool %r failed: %s", tool_id, exc, exc_info=True)
                return ToolError(str(exc) or type(exc).__name__)

            if isinstance(output, (ToolSuccess, ToolError)):
                return output
            return ToolSuccess(str(output))

        # Unreachable, but keeps type checkers happy.
        raise RuntimeError("ToolRegistry.execute: retry loop exited unexpectedly")  # pragma: no cover
