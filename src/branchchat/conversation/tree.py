"""
Branching conversation tree.

A conversation is stored as a tree of :class:`MessageNode` objects.  Each node
is one user turn; its :class:`Variant` objects are the alternative versions of
that turn (the original message and every edit or resend).  A variant holds the
user message, the responses that followed it (assistant, tool call and tool
response messages) and a link to the next node, if the conversation continued
from that variant.

The *current variant path* lists the variant chosen at every node from the
root down to the active leaf.  :meth:`ConversationTree.project` walks that path
to produce the flat, linear message list shown to the user and sent to a
model.

All operations return a new tree; a ``ConversationTree`` is never modified in
place.  Operations that cannot apply (unknown node, index out of range) log a
warning and return the tree unchanged.

Typical usage::

    tree = ConversationTree()
    tree = tree.add_user_message_as_new_node(Message.user("Hi"))
    tree = tree.add_response_to_current_variant(Message.assistant("Hello!"))
    tree, variant_id = tree.create_branch(tree.nodes[0].node_id, Message.user("Hey"))
    messages = tree.project()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Sequence, Union

from branchchat.conversation.models import Message, new_id

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Variant:
    """One version of a user turn and everything answered to it.

    Attributes:
        variant_id: Unique id.
        user_message: The turn's opening message.
        responses: Messages that followed, in order.
        child_node_id: Node that continues the conversation, if any.
    """

    variant_id: str
    user_message: Message
    responses: tuple[Message, ...] = ()
    child_node_id: str | None = None

    def message_ids(self) -> list[str]:
        return [self.user_message.id] + [m.id for m in self.responses]

    def to_dict(self) -> dict[str, Any]:
        return {
            "variantId": self.variant_id,
            "userMessage": self.user_message.to_dict(),
            "responses": [m.to_dict() for m in self.responses],
            "childNodeId": self.child_node_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Variant:
        return cls(
            variant_id=data["variantId"],
            user_message=Message.from_dict(data["userMessage"]),
            responses=tuple(Message.from_dict(m) for m in data.get("responses") or []),
            child_node_id=data.get("childNodeId"),
        )


@dataclass(frozen=True)
class MessageNode:
    """A position in the conversation holding one or more variants."""

    node_id: str
    variants: tuple[Variant, ...]
    parent_node_id: str | None = None

    def variant_index(self, variant_id: str) -> int | None:
        for index, variant in enumerate(self.variants):
            if variant.variant_id == variant_id:
                return index
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "parentNodeId": self.parent_node_id,
            "variants": [v.to_dict() for v in self.variants],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MessageNode:
        return cls(
            node_id=data["nodeId"],
            parent_node_id=data.get("parentNodeId"),
            variants=tuple(Variant.from_dict(v) for v in data.get("variants") or []),
        )


@dataclass(frozen=True)
class BranchInfo:
    """Navigation data for a node with more than one variant."""

    node_id: str
    current_variant_index: int
    total_variants: int
    current_variant_id: str


# ---------------------------------------------------------------------------
# Deletion results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeleteSuccess:
    tree: ConversationTree


@dataclass(frozen=True)
class CannotDeleteBranchPoint:
    """The message anchors later content and cannot be removed."""

    reason: str


@dataclass(frozen=True)
class DeleteError:
    message: str


DeleteResult = Union[DeleteSuccess, CannotDeleteBranchPoint, DeleteError]


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def replay_path(
    nodes_by_id: dict[str, MessageNode],
    start: Variant,
    preferred: Iterable[str],
    remembered: Iterable[str] = (),
) -> list[str]:
    """Return the variant ids reached by following child links from *start*.

    At each child node the variant listed in *preferred* (the path being
    replaced) wins, then the most recent one listed in *remembered* (variants
    the user had selected before), and otherwise the node's first variant.
    Switching away from a branch and back again therefore restores the
    sub-path the user had been viewing.  *start* itself is not included in
    the result.
    """
    preferred_ids = set(preferred)
    recency: dict[str, int] = {}
    for rank, variant_id in enumerate(remembered):
        recency.setdefault(variant_id, rank)
    visited: set[str] = set()
    path: list[str] = []
    child_id = start.child_node_id
    while child_id is not None and child_id not in visited:
        visited.add(child_id)
        child = nodes_by_id.get(child_id)
        if child is None or not child.variants:
            break
        chosen = next((v for v in child.variants if v.variant_id in preferred_ids), None)
        if chosen is None:
            seen = [v for v in child.variants if v.variant_id in recency]
            chosen = min(seen, key=lambda v: recency[v.variant_id]) if seen else child.variants[0]
        path.append(chosen.variant_id)
        child_id = chosen.child_node_id
    return path


# ---------------------------------------------------------------------------
# Tree
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConversationTree:
    """Branching message history of one conversation.

    Attributes:
        nodes: All nodes, in creation order.
        current_variant_path: Active variant id at each depth, root first.
        messages: Flat projection of the active path.  For records that
            predate branching this is the only populated field until the
            tree is migrated.
        selection_history: Variant ids that were on the path before earlier
            switches, most recent first.  In-memory only; not persisted.
    """

    nodes: tuple[MessageNode, ...] = ()
    current_variant_path: tuple[str, ...] = ()
    messages: tuple[Message, ...] = ()
    selection_history: tuple[str, ...] = field(default=(), compare=False, repr=False)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @property
    def has_branching_structure(self) -> bool:
        return bool(self.nodes)

    @property
    def is_empty(self) -> bool:
        return not self.nodes and not self.messages

    def _nodes_by_id(self) -> dict[str, MessageNode]:
        return {node.node_id: node for node in self.nodes}

    def get_node(self, node_id: str) -> MessageNode | None:
        return self._nodes_by_id().get(node_id)

    def root(self) -> MessageNode | None:
        return next((n for n in self.nodes if n.parent_node_id is None), None)

    def find_variant(self, variant_id: str) -> tuple[MessageNode, Variant] | None:
        for node in self.nodes:
            for variant in node.variants:
                if variant.variant_id == variant_id:
                    return node, variant
        return None

    def find_node_for_message(self, message_id: str) -> MessageNode | None:
        for node in self.nodes:
            for variant in node.variants:
                if message_id in variant.message_ids():
                    return node
        return None

    def _path_position(self, node: MessageNode) -> int | None:
        ids = {v.variant_id for v in node.variants}
        for position, variant_id in enumerate(self.current_variant_path):
            if variant_id in ids:
                return position
        return None

    def _ancestor_path(self, node: MessageNode) -> list[str]:
        """Return the variant ids linking the root down to *node* (exclusive)."""
        nodes_by_id = self._nodes_by_id()
        path: list[str] = []
        visited: set[str] = set()
        child = node
        while child.parent_node_id is not None and child.node_id not in visited:
            visited.add(child.node_id)
            parent = nodes_by_id.get(child.parent_node_id)
            if parent is None:
                break
            link = next((v for v in parent.variants if v.child_node_id == child.node_id), None)
            if link is None:
                break
            path.append(link.variant_id)
            child = parent
        path.reverse()
        return path

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    def project(self, path: Sequence[str] | None = None) -> list[Message]:
        """Return the linear message list along *path*.

        Starts at the root node and, at each node, takes the variant listed in
        *path* (the current variant path when omitted), falling back to the
        node's first variant.  Emits the variant's user message and responses
        and then follows its child link.
        """
        if not self.nodes:
            return list(self.messages)
        wanted = set(self.current_variant_path if path is None else path)
        nodes_by_id = self._nodes_by_id()
        messages: list[Message] = []
        visited: set[str] = set()
        node = self.root()
        while node is not None and node.node_id not in visited and node.variants:
            visited.add(node.node_id)
            variant = next(
                (v for v in node.variants if v.variant_id in wanted), node.variants[0]
            )
            messages.append(variant.user_message)
            messages.extend(variant.responses)
            node = nodes_by_id.get(variant.child_node_id) if variant.child_node_id else None
        return messages

    def _with_structure(
        self, nodes: Sequence[MessageNode], path: Sequence[str]
    ) -> ConversationTree:
        path = tuple(path)
        dropped = tuple(v for v in self.current_variant_path if v not in path)
        history = dropped + tuple(
            v for v in self.selection_history if v not in path and v not in dropped
        )
        tree = ConversationTree(
            nodes=tuple(nodes), current_variant_path=path, selection_history=history
        )
        return replace(tree, messages=tuple(tree.project()))

    def _active_chain(self) -> list[tuple[MessageNode, Variant]]:
        """Walk from the root to the true tail, preferring path variants."""
        nodes_by_id = self._nodes_by_id()
        wanted = set(self.current_variant_path)
        chain: list[tuple[MessageNode, Variant]] = []
        visited: set[str] = set()
        node = self.root()
        while node is not None and node.node_id not in visited and node.variants:
            visited.add(node.node_id)
            variant = next(
                (v for v in node.variants if v.variant_id in wanted), node.variants[0]
            )
            chain.append((node, variant))
            node = nodes_by_id.get(variant.child_node_id) if variant.child_node_id else None
        return chain

    # ------------------------------------------------------------------
    # Migration
    # ------------------------------------------------------------------

    def ensure_branching(self) -> ConversationTree:
        """Return this tree in branching form, migrating a flat record."""
        if self.has_branching_structure or not self.messages:
            return self
        return migrate(self.messages)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def add_user_message_as_new_node(self, message: Message) -> ConversationTree:
        """Start a new turn at the end of the active path."""
        tree = self.ensure_branching()
        node_id = new_id()
        variant_id = new_id()
        variant = Variant(variant_id=variant_id, user_message=message.with_refs(node_id, variant_id))

        chain = tree._active_chain()
        if not chain:
            root = MessageNode(node_id=node_id, variants=(variant,))
            logger.debug("Created root node %s", node_id)
            return tree._with_structure([root], [variant_id])

        tail_node, tail_variant = chain[-1]
        new_node = MessageNode(
            node_id=node_id, variants=(variant,), parent_node_id=tail_node.node_id
        )
        nodes = [
            _replace_variant(node, tail_variant.variant_id, child_node_id=node_id)
            if node.node_id == tail_node.node_id
            else node
            for node in tree.nodes
        ]
        nodes.append(new_node)
        path = [v.variant_id for _n, v in chain] + [variant_id]
        logger.debug("Added node %s under %s", node_id, tail_node.node_id)
        return tree._with_structure(nodes, path)

    def add_response_to_current_variant(self, response: Message) -> ConversationTree:
        """Append *response* to the variant at the end of the current path."""
        if not self.has_branching_structure:
            return migrate(tuple(self.messages) + (response,))
        if not self.current_variant_path:
            logger.warning("No current variant; response %s not added", response.id)
            return self
        variant_id = self.current_variant_path[-1]
        found = self.find_variant(variant_id)
        if found is None:
            logger.warning("Current variant %s not found; response not added", variant_id)
            return self
        node, variant = found
        stamped = response.with_refs(node.node_id, variant_id)
        nodes = [
            _replace_variant(n, variant_id, responses=variant.responses + (stamped,))
            if n.node_id == node.node_id
            else n
            for n in self.nodes
        ]
        return self._with_structure(nodes, self.current_variant_path)

    def create_branch(
        self, node_id: str, user_message: Message
    ) -> tuple[ConversationTree, str | None]:
        """Add a new variant to *node_id* and make it current.

        Returns:
            ``(tree, variant_id)``; ``(self, None)`` when the node does not
            exist.
        """
        tree = self.ensure_branching()
        node = tree.get_node(node_id)
        if node is None:
            logger.warning("create_branch: node %s not found", node_id)
            return self, None

        variant_id = new_id()
        variant = Variant(
            variant_id=variant_id, user_message=user_message.with_refs(node_id, variant_id)
        )
        nodes = [
            replace(n, variants=n.variants + (variant,)) if n.node_id == node_id else n
            for n in tree.nodes
        ]
        path = tree._ancestor_path(node) + [variant_id]
        logger.debug("Created variant %s on node %s", variant_id, node_id)
        return tree._with_structure(nodes, path), variant_id

    def switch_variant(self, node_id: str, variant_index: int) -> ConversationTree:
        """Make the variant at *variant_index* of *node_id* current.

        The path below the node is rebuilt with :func:`replay_path`, so
        sub-branches chosen earlier are restored.
        """
        tree = self.ensure_branching()
        node = tree.get_node(node_id)
        if node is None or not 0 <= variant_index < len(node.variants):
            logger.warning("switch_variant: invalid node %s or index %d", node_id, variant_index)
            return self
        variant = node.variants[variant_index]
        old_path = tree.current_variant_path
        path = (
            tree._ancestor_path(node)
            + [variant.variant_id]
            + replay_path(tree._nodes_by_id(), variant, old_path, tree.selection_history)
        )
        return tree._with_structure(tree.nodes, path)

    def delete_message(self, message_id: str) -> DeleteResult:
        """Remove a message when it does not anchor later content.

        A response can be removed only if it is the variant's last response
        and the variant has no child.  A user message can be removed only if
        its variant has no responses and no child; the variant (or the whole
        node when it is the only variant) goes with it.
        """
        tree = self.ensure_branching()
        if not tree.has_branching_structure:
            return DeleteError(f"Message {message_id} not found")
        path = set(tree.current_variant_path)

        for node in tree.nodes:
            on_path = [v for v in node.variants if v.variant_id in path]
            # Deletion only applies to what the user is looking at.
            candidates = on_path or list(node.variants)
            for variant in candidates:
                if variant.user_message.id == message_id:
                    return tree._delete_user_message(node, variant)
                for index, response in enumerate(variant.responses):
                    if response.id == message_id:
                        return tree._delete_response(node, variant, index)

        return DeleteError(f"Message {message_id} not found")

    def _delete_response(
        self, node: MessageNode, variant: Variant, index: int
    ) -> DeleteResult:
        if index != len(variant.responses) - 1 or variant.child_node_id is not None:
            return CannotDeleteBranchPoint(
                "Only the last message of a turn with no later turns can be deleted"
            )
        nodes = [
            _replace_variant(n, variant.variant_id, responses=variant.responses[:-1])
            if n.node_id == node.node_id
            else n
            for n in self.nodes
        ]
        return DeleteSuccess(self._with_structure(nodes, self.current_variant_path))

    def _delete_user_message(self, node: MessageNode, variant: Variant) -> DeleteResult:
        if variant.responses or variant.child_node_id is not None:
            return CannotDeleteBranchPoint(
                "A message with responses or later turns cannot be deleted"
            )

        if len(node.variants) > 1:
            removed_index = node.variant_index(variant.variant_id) or 0
            remaining = tuple(v for v in node.variants if v.variant_id != variant.variant_id)
            updated = replace(node, variants=remaining)
            nodes = [updated if n.node_id == node.node_id else n for n in self.nodes]
            path = list(self.current_variant_path)
            if variant.variant_id in path:
                position = path.index(variant.variant_id)
                sibling = remaining[max(0, removed_index - 1)]
                nodes_by_id = {n.node_id: n for n in nodes}
                path = (
                    path[:position]
                    + [sibling.variant_id]
                    + replay_path(nodes_by_id, sibling, path, self.selection_history)
                )
            return DeleteSuccess(self._with_structure(nodes, path))

        nodes = []
        for n in self.nodes:
            if n.node_id == node.node_id:
                continue
            if n.node_id == node.parent_node_id:
                n = replace(
                    n,
                    variants=tuple(
                        replace(v, child_node_id=None) if v.child_node_id == node.node_id else v
                        for v in n.variants
                    ),
                )
            nodes.append(n)
        path = [vid for vid in self.current_variant_path if vid != variant.variant_id]
        return DeleteSuccess(self._with_structure(nodes, path))

    # ------------------------------------------------------------------
    # Branch navigation
    # ------------------------------------------------------------------

    def branch_info(self, node_id: str) -> BranchInfo | None:
        """Return navigation data for *node_id* when it has several variants."""
        node = self.get_node(node_id)
        if node is None or len(node.variants) <= 1:
            return None
        position = self._path_position(node)
        if position is None:
            index = 0
        else:
            index = node.variant_index(self.current_variant_path[position]) or 0
        return BranchInfo(
            node_id=node_id,
            current_variant_index=index,
            total_variants=len(node.variants),
            current_variant_id=node.variants[index].variant_id,
        )

    def branch_info_for_message(self, message_id: str) -> BranchInfo | None:
        node = self.find_node_for_message(message_id)
        return self.branch_info(node.node_id) if node else None

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> list[str]:
        """Return a description of every structural problem (empty if none)."""
        problems: list[str] = []
        nodes_by_id = self._nodes_by_id()
        variant_owner: dict[str, str] = {}
        message_ids: set[str] = set()

        roots = [n for n in self.nodes if n.parent_node_id is None]
        if self.nodes and len(roots) != 1:
            problems.append(f"expected one root node, found {len(roots)}")

        for node in self.nodes:
            if not node.variants:
                problems.append(f"node {node.node_id} has no variants")
            if node.parent_node_id is not None:
                parent = nodes_by_id.get(node.parent_node_id)
                if parent is None:
                    problems.append(f"node {node.node_id} has unknown parent")
                elif not any(v.child_node_id == node.node_id for v in parent.variants):
                    problems.append(f"node {node.node_id} is not linked from its parent")
            for variant in node.variants:
                variant_owner[variant.variant_id] = node.node_id
                if variant.child_node_id is not None:
                    child = nodes_by_id.get(variant.child_node_id)
                    if child is None or child.parent_node_id != node.node_id:
                        problems.append(f"variant {variant.variant_id} has a broken child link")
                for message_id in variant.message_ids():
                    if message_id in message_ids:
                        problems.append(f"message {message_id} appears more than once")
                    message_ids.add(message_id)

        previous_node: MessageNode | None = None
        for variant_id in self.current_variant_path:
            node_id = variant_owner.get(variant_id)
            if node_id is None:
                problems.append(f"path variant {variant_id} does not exist")
                break
            node = nodes_by_id[node_id]
            expected_parent = previous_node.node_id if previous_node else None
            if node.parent_node_id != expected_parent:
                problems.append(f"path variant {variant_id} is not a child of the previous step")
                break
            previous_node = node
        return problems

    # ------------------------------------------------------------------
    # Persisted form
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "currentVariantPath": list(self.current_variant_path),
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationTree:
        return cls(
            nodes=tuple(MessageNode.from_dict(n) for n in data.get("nodes") or []),
            current_variant_path=tuple(data.get("currentVariantPath") or []),
            messages=tuple(Message.from_dict(m) for m in data.get("messages") or []),
        )


def _replace_variant(node: MessageNode, variant_id: str, **changes: Any) -> MessageNode:
    return replace(
        node,
        variants=tuple(
            replace(v, **changes) if v.variant_id == variant_id else v for v in node.variants
        ),
    )


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------


def migrate(source: ConversationTree | Sequence[Message]) -> ConversationTree:
    """Convert a flat message list into branching form.

    Every user message starts a new node with a single variant; the messages
    that follow it, up to the next user message, become that variant's
    responses.  A list that opens with non-user messages keeps its first
    message in the opening slot so that ``migrate(L).project() == L``.

    A tree that already has nodes is returned unchanged.
    """
    if isinstance(source, ConversationTree):
        if source.has_branching_structure:
            return source
        messages: Sequence[Message] = source.messages
    else:
        messages = source
    if not messages:
        return ConversationTree()

    # (node_id, parent_node_id, variant_id, opening message, responses)
    turns: list[tuple[str, str | None, str, Message, list[Message]]] = []
    for message in messages:
        if message.is_user or not turns:
            parent = turns[-1][0] if turns else None
            turns.append((new_id(), parent, new_id(), message, []))
        else:
            turns[-1][4].append(message)

    nodes: list[MessageNode] = []
    for index, (node_id, parent, variant_id, opening, responses) in enumerate(turns):
        child = turns[index + 1][0] if index + 1 < len(turns) else None
        variant = Variant(
            variant_id=variant_id,
            user_message=opening.with_refs(node_id, variant_id),
            responses=tuple(m.with_refs(node_id, variant_id) for m in responses),
            child_node_id=child,
        )
        nodes.append(MessageNode(node_id=node_id, variants=(variant,), parent_node_id=parent))

    logger.debug("Migrated %d message(s) into %d node(s)", len(messages), len(nodes))
    return ConversationTree(
        nodes=tuple(nodes),
        current_variant_path=tuple(t[2] for t in turns),
        messages=tuple(m for n in nodes for v in n.variants for m in (v.user_message, *v.responses)),
    )
