"""
Value types shared by the conversation tree, the provider adapters and the
tool-calling orchestrator.

Everything here is an immutable dataclass.  "Editing" a message means building
a new one with :func:`dataclasses.replace`; the tree never mutates a message in
place.

The ``to_dict`` / ``from_dict`` pairs implement the persisted record format
(camelCase keys) so that stored conversations stay readable by any viewer that
understands that format.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


def new_id() -> str:
    """Return a fresh globally unique identifier."""
    return str(uuid.uuid4())


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(tz=timezone.utc).isoformat(timespec="seconds")


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Role(str, Enum):
    """Author of a message."""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL_CALL = "tool_call"
    TOOL_RESPONSE = "tool_response"
    SYSTEM = "system"


class ThoughtsStatus(str, Enum):
    """Whether reasoning text is attached to an assistant message.

    ``UNAVAILABLE`` means the model reasoned but the provider did not expose
    any reasoning text.
    """

    NONE = "NONE"
    PRESENT = "PRESENT"
    UNAVAILABLE = "UNAVAILABLE"


# ---------------------------------------------------------------------------
# Tool related types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolDefinition:
    """Describes a callable tool available to the model.

    Attributes:
        name: The tool's unique identifier (used by the model to invoke it).
        description: Human-readable description shown in the model's tool prompt.
        parameters: JSON Schema dict describing the tool's input parameters.
    """

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)

    @property
    def properties(self) -> dict[str, Any]:
        return dict(self.parameters.get("properties", {}))

    @property
    def required(self) -> list[str]:
        return list(self.parameters.get("required", []))


@dataclass(frozen=True)
class ToolCall:
    """A fully assembled tool invocation requested by the model.

    Attributes:
        id: Provider-assigned call identifier (used to correlate the result).
        tool_id: Name of the tool to invoke.
        parameters: Parsed JSON arguments.
        provider: Name of the adapter that produced the call.
        thought_signature: Opaque token some providers require to be echoed
            back alongside the call on the next request.
        redacted_thinking: Encrypted reasoning blocks that preceded the call;
            sent back unchanged with it.
    """

    id: str
    tool_id: str
    parameters: dict[str, Any]
    provider: str = ""
    thought_signature: str | None = None
    redacted_thinking: tuple[str, ...] = ()


@dataclass(frozen=True)
class ToolSuccess:
    """Successful tool execution."""

    result: str
    details: dict[str, Any] | None = None

    @property
    def output(self) -> str:
        return self.result

    def to_dict(self) -> dict[str, Any]:
        return {"type": "success", "result": self.result, "details": self.details}


@dataclass(frozen=True)
class ToolError:
    """Failed tool execution.  The error text is fed back to the model."""

    error: str
    details: dict[str, Any] | None = None

    @property
    def output(self) -> str:
        return self.error

    def to_dict(self) -> dict[str, Any]:
        return {"type": "error", "error": self.error, "details": self.details}


ToolResult = Union[ToolSuccess, ToolError]


def tool_result_from_dict(data: dict[str, Any]) -> ToolResult:
    """Read a stored tool result.

    Results are written with ``"type": "success"`` or ``"type": "error"``.
    Records whose ``type`` is a qualified class name ending in ``.Success``
    or ``.Error`` are read as well.
    """
    kind = str(data.get("type") or "").rsplit(".", 1)[-1].lower()
    if kind == "error" or (not kind and "error" in data and "result" not in data):
        return ToolError(error=data.get("error", ""), details=data.get("details"))
    return ToolSuccess(result=data.get("result", ""), details=data.get("details"))


@dataclass(frozen=True)
class ToolCallInfo:
    """Record of one executed tool call, embedded in a ``tool_call`` message."""

    tool_id: str
    tool_name: str
    parameters: dict[str, Any]
    result: ToolResult
    timestamp: str = field(default_factory=utc_now_iso)
    thought_signature: str | None = None
    redacted_thinking: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "toolId": self.tool_id,
            "toolName": self.tool_name,
            "parameters": self.parameters,
            "result": self.result.to_dict(),
            "timestamp": self.timestamp,
        }
        if self.thought_signature is not None:
            data["thoughtSignature"] = self.thought_signature
        if self.redacted_thinking:
            data["redactedThinking"] = list(self.redacted_thinking)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCallInfo:
        return cls(
            tool_id=data["toolId"],
            tool_name=data.get("toolName", data["toolId"]),
            parameters=dict(data.get("parameters") or {}),
            result=tool_result_from_dict(data.get("result") or {}),
            timestamp=data.get("timestamp", ""),
            thought_signature=data.get("thoughtSignature"),
            redacted_thinking=tuple(data.get("redactedThinking") or ()),
        )


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Attachment:
    """A file attached to a user message.

    Only references are stored; uploading files to a provider happens outside
    this package.  Adapters that understand a reference send it, the others
    skip the attachment.
    """

    file_name: str
    mime_type: str
    local_file_path: str | None = None
    openai_file_id: str | None = None
    google_file_uri: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_name": self.file_name,
            "mime_type": self.mime_type,
            "local_file_path": self.local_file_path,
            "file_OPENAI_id": self.openai_file_id,
            "file_GOOGLE_uri": self.google_file_uri,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Attachment:
        return cls(
            file_name=data.get("file_name", ""),
            mime_type=data.get("mime_type", "application/octet-stream"),
            local_file_path=data.get("local_file_path"),
            openai_file_id=data.get("file_OPENAI_id"),
            google_file_uri=data.get("file_GOOGLE_uri"),
        )


@dataclass(frozen=True)
class Message:
    """One entry of a conversation.

    Attributes:
        role: Who authored the message.
        text: Message body.  For ``tool_call`` messages this is the text the
            model produced before requesting the tool (possibly empty).
        id: Globally unique message id.
        attachments: Attached file references (user messages only).
        model: Model that produced the message, if any.
        datetime: ISO-8601 creation time.
        tool_call: Executed call record (``tool_call`` messages).
        tool_call_id: Provider call id (``tool_call`` messages).
        tool_response_call_id: Id of the call this answers
            (``tool_response`` messages).
        tool_response_output: Result or error text (``tool_response``
            messages).
        node_id: Tree node holding the message.
        variant_id: Tree variant holding the message.
        thoughts: Reasoning text streamed before the answer.
        thinking_duration_seconds: Wall time of the thinking phase.
        thoughts_status: Whether reasoning text is attached.
        thoughts_signature: Signature of the reasoning block, echoed back to
            providers that verify it.
    """

    role: Role
    text: str = ""
    id: str = field(default_factory=new_id)
    attachments: tuple[Attachment, ...] = ()
    model: str | None = None
    datetime: str = field(default_factory=utc_now_iso)
    tool_call: ToolCallInfo | None = None
    tool_call_id: str | None = None
    tool_response_call_id: str | None = None
    tool_response_output: str | None = None
    node_id: str | None = field(default=None, compare=False)
    variant_id: str | None = field(default=None, compare=False)
    thoughts: str | None = None
    thinking_duration_seconds: float | None = None
    thoughts_status: ThoughtsStatus = ThoughtsStatus.NONE
    thoughts_signature: str | None = None

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def user(cls, text: str, attachments: tuple[Attachment, ...] = ()) -> Message:
        return cls(role=Role.USER, text=text, attachments=tuple(attachments))

    @classmethod
    def assistant(
        cls,
        text: str,
        model: str | None = None,
        thoughts: str | None = None,
        thinking_duration_seconds: float | None = None,
        thoughts_status: ThoughtsStatus = ThoughtsStatus.NONE,
    ) -> Message:
        return cls(
            role=Role.ASSISTANT,
            text=text,
            model=model,
            thoughts=thoughts,
            thinking_duration_seconds=thinking_duration_seconds,
            thoughts_status=thoughts_status,
        )

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(role=Role.SYSTEM, text=text)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def is_user(self) -> bool:
        return self.role is Role.USER

    def with_refs(self, node_id: str, variant_id: str) -> Message:
        """Return a copy stamped with its position in the tree."""
        return replace(self, node_id=node_id, variant_id=variant_id)

    def with_text(self, text: str) -> Message:
        """Return an edited copy that keeps the same id."""
        return replace(self, text=text)

    # ------------------------------------------------------------------
    # Persisted form
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "text": self.text,
            "attachments": [a.to_dict() for a in self.attachments],
            "model": self.model,
            "datetime": self.datetime,
            "toolCall": self.tool_call.to_dict() if self.tool_call else None,
            "toolCallId": self.tool_call_id,
            "toolResponseCallId": self.tool_response_call_id,
            "toolResponseOutput": self.tool_response_output,
            "nodeId": self.node_id,
            "variantId": self.variant_id,
            "thoughts": self.thoughts,
            "thinkingDurationSeconds": self.thinking_duration_seconds,
            "thoughtsStatus": self.thoughts_status.value,
            "thoughtsSignature": self.thoughts_signature,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        tool_call = data.get("toolCall")
        return cls(
            id=data.get("id") or new_id(),
            role=Role(data["role"]),
            text=data.get("text", ""),
            attachments=tuple(Attachment.from_dict(a) for a in data.get("attachments") or []),
            model=data.get("model"),
            datetime=data.get("datetime") or utc_now_iso(),
            tool_call=ToolCallInfo.from_dict(tool_call) if tool_call else None,
            tool_call_id=data.get("toolCallId"),
            tool_response_call_id=data.get("toolResponseCallId"),
            tool_response_output=data.get("toolResponseOutput"),
            node_id=data.get("nodeId"),
            variant_id=data.get("variantId"),
            thoughts=data.get("thoughts"),
            thinking_duration_seconds=data.get("thinkingDurationSeconds"),
            thoughts_status=ThoughtsStatus(data.get("thoughtsStatus") or "NONE"),
            thoughts_signature=data.get("thoughtsSignature"),
        )


def tool_call_message(
    call: ToolCall,
    result: ToolResult,
    preceding_text: str = "",
    model: str | None = None,
    tool_name: str | None = None,
) -> Message:
    """Build the ``tool_call`` message recording an executed call."""
    return Message(
        role=Role.TOOL_CALL,
        text=preceding_text,
        model=model,
        tool_call=ToolCallInfo(
            tool_id=call.tool_id,
            tool_name=tool_name or call.tool_id,
            parameters=dict(call.parameters),
            result=result,
            thought_signature=call.thought_signature,
            redacted_thinking=call.redacted_thinking,
        ),
        tool_call_id=call.id,
        thoughts_signature=call.thought_signature,
    )


def tool_response_message(call: ToolCall, result: ToolResult) -> Message:
    """Build the ``tool_response`` message carrying the call's output."""
    return Message(
        role=Role.TOOL_RESPONSE,
        text=result.output,
        tool_response_call_id=call.id,
        tool_response_output=result.output,
    )
