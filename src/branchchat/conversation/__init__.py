"""
branchchat conversation package.

Implements the branching conversation tree, the streaming provider adapters
and the tool-calling orchestrator that drives one turn, plus a session layer
that ties them together per conversation.
"""

from branchchat.conversation.events import (
    Complete,
    ErrorEvent,
    PartialText,
    StreamEvent,
    TextReplaced,
    ThinkingComplete,
    ThinkingPartial,
    ThinkingStarted,
    ToolCallDetected,
)
from branchchat.conversation.loop import (
    MAX_DEPTH_ERROR,
    MAX_TOOL_DEPTH,
    ToolCallingOrchestrator,
    TurnDone,
    TurnFailed,
)
from branchchat.conversation.models import Attachment, Message, Role, ThoughtsStatus
from branchchat.conversation.session import ConversationManager, ConversationSession, TurnResult
from branchchat.conversation.tree import (
    CannotDeleteBranchPoint,
    ConversationTree,
    DeleteError,
    DeleteSuccess,
    migrate,
)

__all__ = [
    "MAX_DEPTH_ERROR",
    "MAX_TOOL_DEPTH",
    "Attachment",
    "CannotDeleteBranchPoint",
    "Complete",
    "ConversationManager",
    "ConversationSession",
    "ConversationTree",
    "DeleteError",
    "DeleteSuccess",
    "ErrorEvent",
    "Message",
    "PartialText",
    "Role",
    "StreamEvent",
    "TextReplaced",
    "ThinkingComplete",
    "ThinkingPartial",
    "ThinkingStarted",
    "ThoughtsStatus",
    "ToolCallDetected",
    "ToolCallingOrchestrator",
    "TurnDone",
    "TurnFailed",
    "TurnResult",
    "migrate",
]
