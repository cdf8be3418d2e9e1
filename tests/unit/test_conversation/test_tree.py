"""Unit tests for branchchat.conversation.tree."""

from __future__ import annotations

from dataclasses import replace

from branchchat.conversation.models import Message, Role, ToolCall, ToolSuccess
from branchchat.conversation.models import tool_call_message, tool_response_message
from branchchat.conversation.tree import (
    BranchInfo,
    CannotDeleteBranchPoint,
    ConversationTree,
    DeleteError,
    DeleteSuccess,
    migrate,
    replay_path,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _conversation(turns: int, prefix: str = "") -> ConversationTree:
    """Return a linear tree of *turns* user/assistant exchanges."""
    tree = ConversationTree()
    for i in range(turns):
        tree = tree.add_user_message_as_new_node(Message.user(f"{prefix}u{i}"))
        tree = tree.add_response_to_current_variant(Message.assistant(f"{prefix}a{i}"))
    return tree


def _texts(tree: ConversationTree) -> list[str]:
    return [m.text for m in tree.project()]


def _flat_history() -> list[Message]:
    call = ToolCall(id="call_1", tool_id="lookup", parameters={"q": "x"})
    result = ToolSuccess("42")
    return [
        Message.user("first"),
        Message.assistant("checking"),
        tool_call_message(call, result, preceding_text="let me look"),
        tool_response_message(call, result),
        Message.assistant("it is 42"),
        Message.user("thanks"),
        Message.assistant("welcome"),
    ]


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_empty_tree_projects_nothing(self) -> None:
        tree = ConversationTree()
        assert tree.is_empty
        assert tree.project() == []

    def test_first_message_creates_root(self) -> None:
        tree = ConversationTree().add_user_message_as_new_node(Message.user("hi"))
        assert len(tree.nodes) == 1
        root = tree.root()
        assert root is not None
        assert root.parent_node_id is None
        assert tree.current_variant_path == (root.variants[0].variant_id,)
        assert _texts(tree) == ["hi"]

    def test_messages_are_stamped_with_position(self) -> None:
        tree = _conversation(1)
        node = tree.nodes[0]
        variant = node.variants[0]
        for message in tree.messages:
            assert message.node_id == node.node_id
            assert message.variant_id == variant.variant_id

    def test_responses_accumulate_in_current_variant(self) -> None:
        tree = _conversation(2)
        assert _texts(tree) == ["u0", "a0", "u1", "a1"]
        assert len(tree.nodes) == 2
        assert tree.nodes[0].variants[0].child_node_id == tree.nodes[1].node_id
        assert tree.nodes[1].parent_node_id == tree.nodes[0].node_id

    def test_operations_do_not_modify_original(self) -> None:
        tree = _conversation(1)
        tree.add_response_to_current_variant(Message.assistant("more"))
        assert _texts(tree) == ["u0", "a0"]

    def test_add_response_to_empty_tree_starts_conversation(self) -> None:
        tree = ConversationTree().add_response_to_current_variant(Message.assistant("hello"))
        assert _texts(tree) == ["hello"]
        assert len(tree.nodes) == 1

    def test_new_node_attaches_to_true_tail_with_stale_path(self) -> None:
        tree = _conversation(3)
        stale = replace(tree, current_variant_path=tree.current_variant_path[:1])
        updated = stale.add_user_message_as_new_node(Message.user("next"))
        new_node = updated.nodes[-1]
        assert new_node.parent_node_id == tree.nodes[2].node_id
        assert _texts(updated)[-1] == "next"
        assert updated.validate() == []


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------


class TestMigrate:
    def test_projection_reconstructs_flat_list(self) -> None:
        history = _flat_history()
        tree = migrate(history)
        assert tree.project() == history
        assert len(tree.nodes) == 2
        assert tree.validate() == []

    def test_leading_non_user_message_is_kept(self) -> None:
        history = [Message.system("be brief"), Message.assistant("hello"), Message.user("hi")]
        tree = migrate(history)
        assert tree.project() == history
        assert tree.nodes[0].variants[0].user_message.role is Role.SYSTEM

    def test_empty_list_gives_empty_tree(self) -> None:
        assert migrate([]).is_empty

    def test_branching_tree_returned_unchanged(self) -> None:
        tree = migrate(_flat_history())
        assert migrate(tree) is tree

    def test_flat_record_is_migrated(self) -> None:
        history = _flat_history()
        flat = ConversationTree(messages=tuple(history))
        assert not flat.has_branching_structure
        tree = migrate(flat)
        assert tree.has_branching_structure
        assert tree.project() == history

    def test_flat_record_migrates_on_first_operation(self) -> None:
        flat = ConversationTree(messages=tuple(_flat_history()))
        tree = flat.add_user_message_as_new_node(Message.user("again"))
        assert len(tree.nodes) == 3
        assert _texts(tree)[-1] == "again"


# ---------------------------------------------------------------------------
# Branching
# ---------------------------------------------------------------------------


class TestCreateBranch:
    def test_unknown_node_changes_nothing(self) -> None:
        tree = _conversation(2)
        updated, variant_id = tree.create_branch("missing", Message.user("x"))
        assert variant_id is None
        assert updated is tree

    def test_branch_truncates_path_and_becomes_current(self) -> None:
        tree = _conversation(3)
        node = tree.nodes[1]
        updated, variant_id = tree.create_branch(node.node_id, Message.user("edited"))
        assert variant_id is not None
        assert updated.current_variant_path[-1] == variant_id
        assert len(updated.current_variant_path) == 2
        assert _texts(updated) == ["u0", "a0", "edited"]
        assert len(updated.get_node(node.node_id).variants) == 2

    def test_new_node_after_branch_attaches_to_new_branch(self) -> None:
        tree = _conversation(5)
        third = tree.nodes[2]
        branched, variant_id = tree.create_branch(third.node_id, Message.user("edited"))
        updated = branched.add_user_message_as_new_node(Message.user("next"))

        new_node = updated.nodes[-1]
        assert new_node.parent_node_id == third.node_id
        node = updated.get_node(third.node_id)
        new_variant = node.variants[node.variant_index(variant_id)]
        assert new_variant.child_node_id == new_node.node_id
        # The old branch still continues into the original fourth node.
        assert node.variants[0].child_node_id == tree.nodes[3].node_id
        assert _texts(updated) == ["u0", "a0", "u1", "a1", "edited", "next"]
        assert updated.validate() == []

    def test_branch_info(self) -> None:
        tree = _conversation(2)
        node_id = tree.nodes[1].node_id
        assert tree.branch_info(node_id) is None
        updated, variant_id = tree.create_branch(node_id, Message.user("edited"))
        assert updated.branch_info(node_id) == BranchInfo(
            node_id=node_id,
            current_variant_index=1,
            total_variants=2,
            current_variant_id=variant_id,
        )
        last_id = updated.messages[-1].id
        assert updated.branch_info_for_message(last_id).total_variants == 2


class TestSwitchVariant:
    def test_switch_and_back_restores_projection(self) -> None:
        tree = _conversation(3)
        node_id = tree.nodes[1].node_id
        branched, _ = tree.create_branch(node_id, Message.user("edited"))
        branched = branched.add_response_to_current_variant(Message.assistant("edited reply"))
        before = branched.project()

        original = branched.switch_variant(node_id, 0)
        assert original.project() == tree.project()

        restored = original.switch_variant(node_id, 1)
        assert restored.project() == before

    def test_invalid_index_changes_nothing(self) -> None:
        tree = _conversation(2)
        assert tree.switch_variant(tree.nodes[0].node_id, 5) is tree
        assert tree.switch_variant("missing", 0) is tree

    def test_replay_keeps_position_in_deeper_branch(self) -> None:
        tree = _conversation(5)
        fourth = tree.nodes[3].node_id
        tree, _ = tree.create_branch(fourth, Message.user("u3b"))
        tree = tree.add_response_to_current_variant(Message.assistant("a3b"))
        tree = tree.add_user_message_as_new_node(Message.user("u4b"))
        deep = _texts(tree)

        root = tree.nodes[0].node_id
        tree, _ = tree.create_branch(root, Message.user("u0b"))
        assert _texts(tree) == ["u0b"]

        tree = tree.switch_variant(root, 0)
        assert _texts(tree) == deep

    def test_switch_on_node_off_current_path(self) -> None:
        tree = _conversation(3)
        second = tree.nodes[1].node_id
        tree, _ = tree.create_branch(second, Message.user("edited"))
        # The third node only hangs off the original variant of the second node.
        third = tree.nodes[2].node_id
        updated = tree.switch_variant(third, 0)
        assert _texts(updated) == ["u0", "a0", "u1", "a1", "u2", "a2"]


class TestReplayPath:
    def test_prefers_path_then_remembered_then_first(self) -> None:
        tree = _conversation(3)
        second = tree.nodes[1].node_id
        tree, edited = tree.create_branch(second, Message.user("edited"))
        original = tree.nodes[1].variants[0].variant_id
        nodes_by_id = {n.node_id: n for n in tree.nodes}
        start = tree.nodes[0].variants[0]

        assert replay_path(nodes_by_id, start, [edited])[0] == edited
        assert replay_path(nodes_by_id, start, [], remembered=[edited, original])[0] == edited
        assert replay_path(nodes_by_id, start, [])[0] == original

    def test_follows_child_links_to_the_end(self) -> None:
        tree = _conversation(4)
        nodes_by_id = {n.node_id: n for n in tree.nodes}
        path = replay_path(nodes_by_id, tree.nodes[0].variants[0], tree.current_variant_path)
        assert path == list(tree.current_variant_path[1:])


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


class TestDeleteMessage:
    def test_sole_childless_variant_removes_node(self) -> None:
        tree = _conversation(1).add_user_message_as_new_node(Message.user("oops"))
        result = tree.delete_message(tree.messages[-1].id)
        assert isinstance(result, DeleteSuccess)
        assert len(result.tree.nodes) == 1
        assert result.tree.nodes[0].variants[0].child_node_id is None
        assert _texts(result.tree) == ["u0", "a0"]
        assert result.tree.validate() == []

    def test_deleting_only_message_empties_tree(self) -> None:
        tree = ConversationTree().add_user_message_as_new_node(Message.user("oops"))
        result = tree.delete_message(tree.messages[0].id)
        assert isinstance(result, DeleteSuccess)
        assert result.tree.project() == []

    def test_user_message_with_responses_is_protected(self) -> None:
        tree = _conversation(2)
        result = tree.delete_message(tree.messages[2].id)
        assert isinstance(result, CannotDeleteBranchPoint)

    def test_user_message_with_continuation_is_protected(self) -> None:
        tree = _conversation(1).add_user_message_as_new_node(Message.user("next"))
        first = tree.nodes[0].variants[0]
        tree = ConversationTree(
            nodes=(
                replace(tree.nodes[0], variants=(replace(first, responses=()),)),
                tree.nodes[1],
            ),
            current_variant_path=tree.current_variant_path,
        )
        result = tree.delete_message(first.user_message.id)
        assert isinstance(result, CannotDeleteBranchPoint)

    def test_last_response_can_be_deleted(self) -> None:
        tree = _conversation(2)
        result = tree.delete_message(tree.messages[-1].id)
        assert isinstance(result, DeleteSuccess)
        assert _texts(result.tree) == ["u0", "a0", "u1"]

    def test_non_last_response_is_protected(self) -> None:
        tree = _conversation(1).add_response_to_current_variant(Message.assistant("more"))
        result = tree.delete_message(tree.messages[1].id)
        assert isinstance(result, CannotDeleteBranchPoint)

    def test_response_followed_by_node_is_protected(self) -> None:
        tree = _conversation(2)
        result = tree.delete_message(tree.messages[1].id)
        assert isinstance(result, CannotDeleteBranchPoint)

    def test_deleting_one_of_several_variants_repairs_path(self) -> None:
        tree = _conversation(2)
        node_id = tree.nodes[1].node_id
        branched, _ = tree.create_branch(node_id, Message.user("edited"))
        result = branched.delete_message(branched.messages[-1].id)
        assert isinstance(result, DeleteSuccess)
        assert len(result.tree.get_node(node_id).variants) == 1
        assert result.tree.project() == tree.project()
        assert result.tree.validate() == []

    def test_unknown_message_is_an_error(self) -> None:
        result = _conversation(1).delete_message("missing")
        assert isinstance(result, DeleteError)

    def test_empty_tree_is_an_error(self) -> None:
        assert isinstance(ConversationTree().delete_message("x"), DeleteError)


# ---------------------------------------------------------------------------
# Persistence and validation
# ---------------------------------------------------------------------------


class TestPersistence:
    def test_record_uses_persisted_keys(self) -> None:
        data = _conversation(2).to_dict()
        assert set(data) == {"nodes", "currentVariantPath", "messages"}
        node = data["nodes"][1]
        assert set(node) == {"nodeId", "parentNodeId", "variants"}
        assert set(node["variants"][0]) == {"variantId", "userMessage", "responses", "childNodeId"}
        assert data["messages"][0]["role"] == "user"
        assert data["messages"][0]["thoughtsStatus"] == "NONE"

    def test_round_trip_preserves_projection(self) -> None:
        tree = _conversation(3)
        tree, _ = tree.create_branch(tree.nodes[1].node_id, Message.user("edited"))
        restored = ConversationTree.from_dict(tree.to_dict())
        assert restored.project() == tree.project()
        assert restored.current_variant_path == tree.current_variant_path
        assert restored.validate() == []

    def test_projection_from_record_alone(self) -> None:
        tree = _conversation(3)
        tree, _ = tree.create_branch(tree.nodes[2].node_id, Message.user("edited"))
        record = tree.to_dict()
        restored = ConversationTree.from_dict({**record, "messages": []})
        assert [m.text for m in restored.project()] == ["u0", "a0", "u1", "a1", "edited"]

    def test_validate_reports_broken_path(self) -> None:
        tree = _conversation(2)
        broken = replace(tree, current_variant_path=("nope",))
        assert broken.validate()

    def test_validate_reports_orphan_node(self) -> None:
        tree = _conversation(2)
        orphan = replace(tree.nodes[1], parent_node_id="ghost")
        broken = replace(tree, nodes=(tree.nodes[0], orphan))
        assert broken.validate()
