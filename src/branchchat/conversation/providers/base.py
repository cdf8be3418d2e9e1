"""
Provider adapter contract and the machinery shared by every adapter.

Defines the ``ProviderAdapter`` Protocol so the ``ToolCallingOrchestrator``
can work with any backend without knowing its wire format, plus:

- the exception hierarchy adapters raise internally (``LLMError`` and
  subclasses); :meth:`StreamingProvider.stream` turns any of them into a
  single :class:`~branchchat.conversation.events.ErrorEvent`;
- :class:`StreamAccumulator`, the per-call state that enforces the event
  ordering rules (one thinking start/complete pair per phase, exactly one
  terminal event, ``"empty response"`` when nothing arrived);
- :class:`ToolCallBuffer`, which assembles tool-call arguments that arrive as
  JSON fragments and only releases a call once its payload parses.

Adapters are stateless across calls: everything that belongs to one response
lives in the accumulator and buffer created for that call.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Hashable,
    Protocol,
    Sequence,
    TypeVar,
    runtime_checkable,
)

import httpx

from branchchat.conversation.events import (
    Complete,
    ErrorEvent,
    EventCallback,
    PartialText,
    StreamEvent,
    TextReplaced,
    ThinkingComplete,
    ThinkingPartial,
    ThinkingStarted,
    ToolCallDetected,
)
from branchchat.conversation.models import (
    Message,
    Role,
    ThoughtsStatus,
    ToolCall,
    ToolDefinition,
    new_id,
)
from branchchat.conversation.thinking import NO_BUDGET, ThinkingBudget, is_thinking_enabled

logger = logging.getLogger(__name__)

EMPTY_RESPONSE_ERROR = "empty response"

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Custom exception hierarchy
# ---------------------------------------------------------------------------


class LLMError(Exception):
    """Base exception for all LLM provider errors."""


class LLMRateLimitError(LLMError):
    """Raised when the LLM API returns a rate-limit (429) response."""


class LLMConnectionError(LLMError):
    """Raised when the LLM API endpoint cannot be reached."""


class LLMAPIError(LLMError):
    """Raised for other LLM API errors (e.g., 5xx, authentication failures).

    Attributes:
        status_code: HTTP status code from the API, or ``None`` if unavailable
            (errors reported inside an otherwise successful stream).
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def describe_http_error(status_code: int, body: str) -> str:
    """Build a readable error message from an error response body.

    Uses ``error.message`` (or a top-level ``message``) when the body is JSON,
    otherwise the raw body text.
    """
    text = body.strip()
    detail: str | None = None
    try:
        data: Any = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        data = None
    if isinstance(data, list) and data:
        data = data[0]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            detail = error.get("message")
        elif isinstance(error, str):
            detail = error
        detail = detail or data.get("message")
    return f"HTTP {status_code}: {detail or text or 'no response body'}"


def http_error(status_code: int, body: str) -> LLMError:
    """Return the exception matching an error status."""
    message = describe_http_error(status_code, body)
    if status_code == 429:
        return LLMRateLimitError(message)
    return LLMAPIError(message, status_code=status_code)


# Raised by chunk handlers when a JSON payload has the right framing but
# unexpected field types (a string where an object belongs, and so on).
MALFORMED_CHUNK_ERRORS = (AttributeError, TypeError, KeyError, ValueError, IndexError)


def handle_chunk(provider: str, handler: Callable[..., T], *args: Any) -> T | None:
    """Call ``handler(*args)`` for one decoded stream chunk.

    A chunk whose fields have unexpected types is logged and skipped so the
    rest of the response still arrives.  ``LLMError`` propagates.

    Returns:
        The handler's return value, or ``None`` when the chunk was skipped.
    """
    try:
        return handler(*args)
    except LLMError:
        raise
    except MALFORMED_CHUNK_ERRORS as exc:
        logger.warning(
            "%s: skipping malformed stream chunk (%s: %s)", provider, type(exc).__name__, exc
        )
        return None


def _require_str(value: Any, what: str) -> str:
    """Return *value* as text (``None`` becomes ``""``); reject other types."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise TypeError(f"{what} must be a string, got {type(value).__name__}")
    return value


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


@dataclass
class ProviderRequest:
    """Everything one adapter call needs.

    Attributes:
        messages: Ordered history (the projected conversation plus any tool
            messages produced earlier in the same turn).
        model: Target model identifier.
        system_prompt: Instructions sent ahead of the history.
        api_key: Credential for the provider.
        tools: Tool specifications enabled for this turn.
        thinking_budget: Reasoning budget, already reconciled with the model
            (see :func:`~branchchat.conversation.thinking.resolve_budget`).
        temperature: Optional sampling temperature.
    """

    messages: list[Message]
    model: str
    system_prompt: str = ""
    api_key: str = ""
    tools: list[ToolDefinition] = field(default_factory=list)
    thinking_budget: ThinkingBudget = NO_BUDGET
    temperature: float | None = None


def split_system(messages: Sequence[Message], system_prompt: str) -> tuple[str, list[Message]]:
    """Fold ``system`` messages from the history into the system prompt."""
    parts = [system_prompt] if system_prompt else []
    rest: list[Message] = []
    for message in messages:
        if message.role is Role.SYSTEM:
            if message.text:
                parts.append(message.text)
        else:
            rest.append(message)
    return "\n\n".join(parts), rest


def tool_names_by_call_id(messages: Sequence[Message]) -> dict[str, str]:
    """Map each recorded tool call id to the tool it invoked."""
    return {
        m.tool_call_id: m.tool_call.tool_id
        for m in messages
        if m.role is Role.TOOL_CALL and m.tool_call_id and m.tool_call
    }


# ---------------------------------------------------------------------------
# ProviderAdapter Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class ProviderAdapter(Protocol):
    """Protocol for streaming LLM backends used by the orchestrator.

    ``name`` is the provider key used for the thinking-budget lookup.
    """

    name: str

    async def stream(self, request: ProviderRequest, on_event: EventCallback) -> None:
        """Issue one request and deliver its events through *on_event*.

        Never raises for provider or transport failures; those arrive as an
        ``ErrorEvent``.  Exactly one terminal event is delivered.
        """
        ...


# ---------------------------------------------------------------------------
# Per-call accumulation
# ---------------------------------------------------------------------------


class StreamAccumulator:
    """Per-call state that turns raw provider callbacks into ordered events.

    Adapters call :meth:`add_thinking`, :meth:`add_text`,
    :meth:`replace_text`, :meth:`set_tool_call` as data arrives and :meth:`fail` on an in-stream
    error.  :meth:`finish` emits the terminal event.  Once a terminal event
    has been emitted every later call is ignored.
    """

    def __init__(
        self,
        on_event: EventCallback,
        provider: str,
        thinking_requested: bool = False,
    ) -> None:
        self.provider = provider
        self.thinking_requested = thinking_requested
        self.finished = False
        self.tool_call: ToolCall | None = None
        self._on_event = on_event
        self._text: list[str] = []
        self._thoughts: list[str] = []
        self._preceding_text = ""
        self._thinking_open = False
        self._thinking_seen = False
        self._thinking_started_at = 0.0
        self._thinking_seconds = 0.0

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def text(self) -> str:
        return "".join(self._text)

    @property
    def thoughts(self) -> str:
        return "".join(self._thoughts)

    @property
    def thinking_open(self) -> bool:
        return self._thinking_open

    @property
    def thoughts_status(self) -> ThoughtsStatus:
        if self.thoughts.strip():
            return ThoughtsStatus.PRESENT
        if self._thinking_seen or self.thinking_requested:
            return ThoughtsStatus.UNAVAILABLE
        return ThoughtsStatus.NONE

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def begin(self) -> None:
        """Mark the response as open.

        When reasoning was requested the thinking phase starts now, so a
        model that reasons without exposing any text still reports a
        thinking phase (with status ``UNAVAILABLE``).
        """
        if self.thinking_requested:
            self.open_thinking()

    def open_thinking(self) -> None:
        if self.finished or self._thinking_open:
            return
        self._thinking_open = True
        self._thinking_seen = True
        self._thinking_started_at = time.monotonic()
        self._emit(ThinkingStarted())

    def add_thinking(self, text: str | None) -> None:
        if not _require_str(text, "thinking text") or self.finished:
            return
        self.open_thinking()
        self._thoughts.append(text)
        self._emit(ThinkingPartial(text))

    def close_thinking(self) -> None:
        if not self._thinking_open:
            return
        self._thinking_open = False
        elapsed = time.monotonic() - self._thinking_started_at
        self._thinking_seconds += elapsed
        self._emit(ThinkingComplete(self.thoughts, elapsed, self.thoughts_status))

    def add_text(self, text: str | None) -> None:
        if not _require_str(text, "answer text") or self.finished:
            return
        self.close_thinking()
        self._text.append(text)
        self._emit(PartialText(text))

    def replace_text(self, text: str | None) -> None:
        """Discard the answer so far and continue from *text*."""
        if not _require_str(text, "answer text").strip() or self.finished:
            return
        self.close_thinking()
        self._text = [text]
        self._emit(TextReplaced(text))

    def set_tool_call(self, call: ToolCall | None) -> None:
        if call is None or self.finished:
            return
        self.close_thinking()
        if self.tool_call is not None:
            logger.warning(
                "%s: ignoring additional tool call %r (%s); one call per response",
                self.provider,
                call.tool_id,
                call.id,
            )
            return
        self.tool_call = call
        self._preceding_text = self.text

    # ------------------------------------------------------------------
    # Terminal events
    # ------------------------------------------------------------------

    def finish(self) -> None:
        """Emit the terminal event for a stream that ended normally."""
        if self.finished:
            return
        self.close_thinking()
        thoughts = self.thoughts or None
        duration = self._thinking_seconds if self._thinking_seen else None
        if self.tool_call is not None:
            self._terminate(
                ToolCallDetected(
                    tool_call=self.tool_call,
                    preceding_text=self._preceding_text,
                    thoughts=thoughts,
                    thinking_duration_seconds=duration,
                    thoughts_status=self.thoughts_status,
                )
            )
        elif self._text:
            self._terminate(
                Complete(
                    full_text=self.text,
                    thoughts=thoughts,
                    thinking_duration_seconds=duration,
                    thoughts_status=self.thoughts_status,
                )
            )
        else:
            self._terminate(ErrorEvent(EMPTY_RESPONSE_ERROR))

    def fail(self, message: str) -> None:
        if self.finished:
            return
        self.close_thinking()
        self._terminate(ErrorEvent(message))

    def _terminate(self, event: StreamEvent) -> None:
        self._emit(event)
        self.finished = True

    def _emit(self, event: StreamEvent) -> None:
        if self.finished:
            return
        self._on_event(event)


@dataclass
class _PendingCall:
    call_id: str | None = None
    name: str | None = None
    fragments: list[str] = field(default_factory=list)
    done: bool = False


class ToolCallBuffer:
    """Assembles streamed tool-call arguments.

    Fragments are keyed by whatever the provider uses to correlate them (a
    content-block index, an output item id, a tool-call index).  A call is
    released by :meth:`complete` only once its name is known and its argument
    text parses as a JSON object; an empty argument string means ``{}``.
    """

    def __init__(self, provider: str) -> None:
        self.provider = provider
        self._pending: dict[Hashable, _PendingCall] = {}

    def __contains__(self, key: Hashable) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return sum(1 for entry in self._pending.values() if not entry.done)

    def start(
        self,
        key: Hashable,
        call_id: str | None = None,
        name: str | None = None,
        arguments: str | None = None,
    ) -> None:
        call_id = _require_str(call_id, "tool call id") or None
        name = _require_str(name, "tool name") or None
        arguments = _require_str(arguments, "tool arguments")
        entry = self._pending.setdefault(key, _PendingCall())
        entry.call_id = call_id or entry.call_id
        entry.name = name or entry.name
        if arguments:
            entry.fragments.append(arguments)

    def append(self, key: Hashable, fragment: str | None) -> None:
        if _require_str(fragment, "tool arguments"):
            self._pending.setdefault(key, _PendingCall()).fragments.append(fragment)

    def complete(
        self,
        key: Hashable,
        arguments: str | None = None,
        call_id: str | None = None,
        name: str | None = None,
        thought_signature: str | None = None,
    ) -> ToolCall | None:
        """Finish the call under *key*.

        Args:
            key: Correlation key used while streaming.
            arguments: Full argument text when the provider repeats it on
                completion; it replaces the buffered fragments.
            call_id: Call id, if only known at completion.
            name: Tool name, if only known at completion.
            thought_signature: Opaque signature to carry on the call.

        Returns:
            The assembled ``ToolCall``, or ``None`` if the call was already
            completed, has no name, or its arguments do not parse.
        """
        entry = self._pending.setdefault(key, _PendingCall())
        if entry.done:
            return None
        entry.call_id = call_id or entry.call_id
        entry.name = name or entry.name
        entry.done = True
        raw = arguments if arguments is not None else "".join(entry.fragments)
        return self._build(entry, raw, thought_signature)

    def complete_all(self) -> list[ToolCall]:
        """Finish every call still open (stream ended without explicit stops)."""
        calls = [self.complete(key) for key, entry in list(self._pending.items()) if not entry.done]
        return [call for call in calls if call is not None]

    def _build(
        self, entry: _PendingCall, raw: str, thought_signature: str | None
    ) -> ToolCall | None:
        if not entry.name:
            logger.warning("%s: tool call without a name dropped", self.provider)
            return None
        text = raw.strip() or "{}"
        try:
            parameters = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.warning(
                "%s: tool call %r has unparseable arguments (%s): %r",
                self.provider,
                entry.name,
                exc,
                text[:200],
            )
            return None
        if not isinstance(parameters, dict):
            logger.warning("%s: tool call %r arguments are not an object", self.provider, entry.name)
            return None
        call_id = entry.call_id
        if not call_id:
            call_id = f"{self.provider}_{new_id()}"
            logger.debug("%s: generated id %s for tool call %r", self.provider, call_id, entry.name)
        return ToolCall(
            id=call_id,
            tool_id=entry.name,
            parameters=parameters,
            provider=self.provider,
            thought_signature=thought_signature,
        )


# ---------------------------------------------------------------------------
# Base implementation
# ---------------------------------------------------------------------------


class StreamingProvider:
    """Base class for adapters.

    Subclasses set ``name`` and ``default_base_url`` and implement
    :meth:`_run`, which reads the provider stream and feeds *acc*.  Raising an
    ``LLMError`` (or any other exception) from ``_run`` ends the call with an
    ``ErrorEvent``; returning normally ends it with whatever
    :meth:`StreamAccumulator.finish` decides.  Per-chunk handling goes through
    :func:`handle_chunk` so one bad chunk is skipped instead.

    Attributes:
        base_url: The API base URL.
        timeout: HTTP timeout in seconds for the owned client.
    """

    name: str = ""
    default_base_url: str = ""

    def __init__(
        self,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
    ) -> None:
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.timeout = timeout
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def stream(self, request: ProviderRequest, on_event: EventCallback) -> None:
        """Run one request; see :class:`ProviderAdapter`."""
        acc = StreamAccumulator(
            on_event,
            self.name,
            thinking_requested=is_thinking_enabled(request.thinking_budget),
        )
        logger.debug(
            "%s request: model=%s, messages=%d, tools=%d, thinking=%r",
            self.name,
            request.model,
            len(request.messages),
            len(request.tools),
            request.thinking_budget,
        )
        started = time.monotonic()
        try:
            await self._run(request, acc)
        except LLMError as exc:
            logger.error("%s request failed: %s", self.name, exc)
            acc.fail(str(exc))
            return
        except Exception as exc:
            logger.exception("%s: unexpected error while reading the response", self.name)
            acc.fail(f"{self.name} stream failed: {exc}")
            return
        acc.finish()
        logger.debug("%s response finished in %.3fs", self.name, time.monotonic() - started)

    async def _run(self, request: ProviderRequest, acc: StreamAccumulator) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        await self._client.aclose()

    @asynccontextmanager
    async def _post_stream(
        self,
        url: str,
        body: dict[str, Any],
        headers: dict[str, str],
    ) -> AsyncIterator[httpx.Response]:
        """POST *body* and yield the streaming response.

        Raises:
            LLMRateLimitError: On a 429 response.
            LLMAPIError: On any other status of 400 or above.
            LLMConnectionError: If the endpoint cannot be reached or the
                connection drops mid-stream.
        """
        try:
            async with self._client.stream("POST", url, json=body, headers=headers) as response:
                if response.status_code >= 400:
                    raw = (await response.aread()).decode("utf-8", errors="replace")
                    raise http_error(response.status_code, raw)
                yield response
        except httpx.HTTPError as exc:
            raise LLMConnectionError(f"Could not connect to {self.name}: {exc}") from exc
