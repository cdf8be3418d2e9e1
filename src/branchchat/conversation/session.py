"""
ConversationSession: one conversation's tree plus the orchestrator that extends it.

A session serialises everything that touches its tree behind one
``asyncio.Lock``: at most one network turn is in flight per conversation,
and navigation or deletion waits for a running turn to finish.  Different
sessions share no mutable state and run concurrently.

Only fully built messages reach the tree.  Each ``tool_call`` /
``tool_response`` pair is appended as soon as its tool has run and the final
assistant message is appended when the turn completes, so a cancelled turn
leaves the tree consistent.

Usage::

    manager = ConversationManager(settings=get_settings())
    session = manager.create()
    result = await session.send_message("What time is it in Tokyo?")
    if isinstance(result.outcome, TurnDone):
        print(result.outcome.text)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

from branchchat.conversation.events import EventCallback
from branchchat.conversation.loop import ToolCallingOrchestrator, TurnDone, TurnOutcome
from branchchat.conversation.models import Attachment, Message, ToolDefinition, new_id
from branchchat.conversation.providers import create_provider
from branchchat.conversation.providers.base import ProviderAdapter
from branchchat.conversation.thinking import NO_BUDGET, ThinkingBudget
from branchchat.conversation.tools import ToolRegistry, default_registry
from branchchat.conversation.tree import ConversationTree, DeleteResult, DeleteSuccess

if TYPE_CHECKING:
    from branchchat.config import Settings

logger = logging.getLogger(__name__)


class ConversationNotFoundError(LookupError):
    """No session is registered under the requested id."""


class NodeNotFoundError(LookupError):
    """The requested node, or variant index, does not exist in the tree."""


@dataclass(frozen=True)
class TurnResult:
    """Outcome of one turn and the tree after it."""

    outcome: TurnOutcome
    tree: ConversationTree


class ConversationSession:
    """A single conversation bound to an orchestrator.

    Attributes:
        conversation_id: Identifier of the conversation.
        orchestrator: Runs the tool-calling loop for each turn.
        tree: Current message tree (replaced, never mutated).
        model: Model used for every turn.
        system_prompt: Instructions sent with every request.
        api_key: Provider credential.
        tools: Tools enabled for this conversation.
        thinking_budget: Requested reasoning budget.
        temperature: Optional sampling temperature.
    """

    def __init__(
        self,
        conversation_id: str,
        orchestrator: ToolCallingOrchestrator,
        tree: ConversationTree | None = None,
        model: str = "gpt-4o-mini",
        system_prompt: str = "",
        api_key: str = "",
        tools: Sequence[ToolDefinition] = (),
        thinking_budget: ThinkingBudget = NO_BUDGET,
        temperature: float | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.orchestrator = orchestrator
        self.tree = tree if tree is not None else ConversationTree()
        self.model = model
        self.system_prompt = system_prompt
        self.api_key = api_key
        self.tools = list(tools)
        self.thinking_budget = thinking_budget
        self.temperature = temperature
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        """True while a turn or tree operation holds the session lock."""
        return self._lock.locked()

    @property
    def messages(self) -> list[Message]:
        return list(self.tree.messages)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def send_message(
        self,
        text: str,
        attachments: Sequence[Attachment] = (),
        on_event: EventCallback | None = None,
    ) -> TurnResult:
        """Append a user message as a new node and answer it."""
        async with self._lock:
            self.tree = self.tree.add_user_message_as_new_node(
                Message.user(text, tuple(attachments))
            )
            return await self._run_turn(on_event)

    async def edit_message(
        self,
        node_id: str,
        text: str,
        on_event: EventCallback | None = None,
    ) -> TurnResult:
        """Add a new variant to *node_id* with *text* and answer it.

        Sending the original text again regenerates the answer on a fresh
        branch.

        Raises:
            NodeNotFoundError: If *node_id* is not in the tree.
        """
        async with self._lock:
            tree, variant_id = self.tree.create_branch(node_id, Message.user(text))
            if variant_id is None:
                raise NodeNotFoundError(f"Node {node_id!r} not found")
            self.tree = tree
            return await self._run_turn(on_event)

    async def _run_turn(self, on_event: EventCallback | None) -> TurnResult:
        def _persist(call_message: Message, response_message: Message) -> None:
            self.tree = self.tree.add_response_to_current_variant(call_message)
            self.tree = self.tree.add_response_to_current_variant(response_message)

        outcome = await self.orchestrator.run(
            self.tree.messages,
            model=self.model,
            system_prompt=self.system_prompt,
            api_key=self.api_key,
            tools=self.tools,
            thinking_budget=self.thinking_budget,
            temperature=self.temperature,
            on_event=on_event,
            on_tool_messages=_persist,
        )
        if isinstance(outcome, TurnDone):
            self.tree = self.tree.add_response_to_current_variant(outcome.message)
        else:
            logger.warning("Conversation %s: turn failed: %s", self.conversation_id, outcome.error)
        return TurnResult(outcome=outcome, tree=self.tree)

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    async def switch_variant(self, node_id: str, variant_index: int) -> ConversationTree:
        """Show variant *variant_index* of *node_id*.

        Raises:
            NodeNotFoundError: If the node or index does not exist.
        """
        async with self._lock:
            node = self.tree.get_node(node_id)
            if node is None or not 0 <= variant_index < len(node.variants):
                raise NodeNotFoundError(
                    f"Node {node_id!r} has no variant at index {variant_index}"
                )
            self.tree = self.tree.switch_variant(node_id, variant_index)
            return self.tree

    async def delete_message(self, message_id: str) -> DeleteResult:
        """Delete *message_id*; the tree only changes on ``DeleteSuccess``."""
        async with self._lock:
            result = self.tree.delete_message(message_id)
            if isinstance(result, DeleteSuccess):
                self.tree = result.tree
            return result

    def to_dict(self) -> dict:
        """Return the persisted conversation record."""
        data = self.tree.to_dict()
        data["id"] = self.conversation_id
        data["model"] = self.model
        return data


class ConversationManager:
    """Creates, looks up and drops sessions that share one provider and registry.

    Args:
        settings: Defaults for every new session.
        provider: Adapter to use; built from ``settings`` when omitted.
        registry: Tool registry; the built-in tools when omitted.
    """

    def __init__(
        self,
        settings: Settings,
        provider: ProviderAdapter | None = None,
        registry: ToolRegistry | None = None,
    ) -> None:
        self.settings = settings
        self.provider = provider or create_provider(
            settings.provider,
            base_url=settings.base_url,
            timeout=settings.request_timeout,
        )
        self.registry = registry or default_registry(
            timeout=settings.tool_timeout, max_retries=settings.tool_max_retries
        )
        self.orchestrator = ToolCallingOrchestrator(
            provider=self.provider,
            registry=self.registry,
            max_tool_depth=settings.max_tool_depth,
        )
        self._sessions: dict[str, ConversationSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._sessions

    def create(
        self,
        conversation_id: str | None = None,
        tree: ConversationTree | None = None,
        model: str | None = None,
        system_prompt: str | None = None,
        tools: Sequence[str] | None = None,
        thinking_budget: ThinkingBudget | None = None,
    ) -> ConversationSession:
        """Create and register a session.

        Args:
            conversation_id: Id to use; a new one is generated when omitted.
            tree: Existing tree (or legacy record already migrated) to resume.
            model: Overrides ``settings.model``.
            system_prompt: Overrides ``settings.system_prompt``.
            tools: Identifiers of the registry tools to enable; all of them
                when omitted.
            thinking_budget: Overrides the configured budget.

        Raises:
            ValueError: If *conversation_id* is already in use.
        """
        conversation_id = conversation_id or new_id()
        if conversation_id in self._sessions:
            raise ValueError(f"Conversation {conversation_id!r} already exists")
        session = ConversationSession(
            conversation_id,
            self.orchestrator,
            tree=tree,
            model=model or self.settings.model,
            system_prompt=(
                system_prompt if system_prompt is not None else self.settings.system_prompt
            ),
            api_key=self.settings.api_key,
            tools=self.registry.get_definitions(tools),
            thinking_budget=(
                thinking_budget if thinking_budget is not None else self.settings.thinking_budget()
            ),
            temperature=self.settings.temperature,
        )
        self._sessions[conversation_id] = session
        logger.debug("Created conversation %s (model=%s)", conversation_id, session.model)
        return session

    def get(self, conversation_id: str) -> ConversationSession:
        """Return the session for *conversation_id*.

        Raises:
            ConversationNotFoundError: If no such session exists.
        """
        try:
            return self._sessions[conversation_id]
        except KeyError:
            raise ConversationNotFoundError(f"Conversation {conversation_id!r} not found") from None

    def drop(self, conversation_id: str) -> None:
        """Forget a session.

        Raises:
            ConversationNotFoundError: If no such session exists.
        """
        if self._sessions.pop(conversation_id, None) is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id!r} not found")
        logger.debug("Dropped conversation %s", conversation_id)

    async def aclose(self) -> None:
        """Close the provider's HTTP client, if it owns one."""
        close = getattr(self.provider, "aclose", None)
        if close is not None:
            await close()
