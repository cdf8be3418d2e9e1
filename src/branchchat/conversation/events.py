"""
Streaming events emitted by provider adapters.

Every adapter call delivers, in order:

- any number of :class:`PartialText` / :class:`ThinkingPartial` events
  (and :class:`TextReplaced` when a provider rewrites its answer so far),
- at most one :class:`ThinkingStarted` before the first thinking partial and
  exactly one :class:`ThinkingComplete` for every thinking phase it opens,
- exactly one terminal event: :class:`Complete`, :class:`ToolCallDetected` or
  :class:`ErrorEvent`.

Nothing follows the terminal event.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Union

from branchchat.conversation.models import ThoughtsStatus, ToolCall


@dataclass(frozen=True)
class PartialText:
    """A fragment of the visible answer."""

    text: str


@dataclass(frozen=True)
class TextReplaced:
    """The provider replaced everything answered so far with ``text``."""

    text: str


@dataclass(frozen=True)
class ThinkingStarted:
    """The model entered its reasoning phase."""


@dataclass(frozen=True)
class ThinkingPartial:
    """A fragment of reasoning text."""

    text: str


@dataclass(frozen=True)
class ThinkingComplete:
    """The reasoning phase ended.

    Attributes:
        thoughts: Accumulated reasoning text (empty when none was exposed).
        elapsed_seconds: Wall time between start and completion.
        status: ``PRESENT`` when reasoning text arrived, ``UNAVAILABLE``
            otherwise.
    """

    thoughts: str
    elapsed_seconds: float
    status: ThoughtsStatus


@dataclass(frozen=True)
class Complete:
    """The response ended with a final answer."""

    full_text: str
    thoughts: str | None = None
    thinking_duration_seconds: float | None = None
    thoughts_status: ThoughtsStatus = ThoughtsStatus.NONE


@dataclass(frozen=True)
class ToolCallDetected:
    """The response ended with a request to run a tool."""

    tool_call: ToolCall
    preceding_text: str = ""
    thoughts: str | None = None
    thinking_duration_seconds: float | None = None
    thoughts_status: ThoughtsStatus = ThoughtsStatus.NONE


@dataclass(frozen=True)
class ErrorEvent:
    """The response failed.  ``message`` is human readable."""

    message: str


StreamEvent = Union[
    PartialText,
    TextReplaced,
    ThinkingStarted,
    ThinkingPartial,
    ThinkingComplete,
    Complete,
    ToolCallDetected,
    ErrorEvent,
]

TerminalEvent = Union[Complete, ToolCallDetected, ErrorEvent]

# Listener invoked synchronously, in receive order, for every event.
EventCallback = Callable[[StreamEvent], None]


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, (Complete, ToolCallDetected, ErrorEvent))
