"""Tests for active-conversation resolution over a message tree."""
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from models.messages import MessageRole
from services.exceptions import ConcurrentModification
from services.resolver import (
    build_active_conversation,
    find_stale_overrides,
    group_children,
    parent_key,
    sibling_position,
    streaming_message_id,
)

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def msg(id, parent_id=None, t=0, thread_id="t1"):
    return SimpleNamespace(id=id, parent_id=parent_id, created_at=T0 + timedelta(seconds=t), thread_id=thread_id)


def ids(messages):
    return [m.id for m in messages]


class TestDefaults:
    def test_empty_thread_resolves_to_empty_path(self):
        assert build_active_conversation([], {}) == []

    def test_linear_chain(self):
        tree = [msg("u1", None, 1), msg("a1", "u1", 2), msg("u2", "a1", 3)]
        assert ids(build_active_conversation(tree, {})) == ["u1", "a1", "u2"]

    def test_latest_sibling_wins_without_override(self):
        tree = [msg("u1", None, 1), msg("A", "u1", 2), msg("B", "u1", 3)]
        assert ids(build_active_conversation(tree, {})) == ["u1", "B"]

    def test_input_order_does_not_matter(self):
        tree = [msg("B", "u1", 3), msg("u1", None, 1), msg("A", "u1", 2)]
        assert ids(build_active_conversation(tree, {})) == ["u1", "B"]

    def test_same_timestamp_breaks_tie_by_id(self):
        tree = [msg("u1", None, 1), msg("0002", "u1", 2), msg("0001", "u1", 2)]
        assert ids(build_active_conversation(tree, {})) == ["u1", "0002"]

    def test_naive_and_aware_timestamps_mix(self):
        naive = SimpleNamespace(id="A", parent_id=None, created_at=datetime(2025, 1, 1, 0, 0, 1), thread_id="t1")
        aware = msg("B", None, 2)
        assert ids(build_active_conversation([aware, naive], {})) == ["B"]


class TestOverrides:
    def test_override_beats_later_sibling(self):
        tree = [msg("u1", None, 1), msg("A", "u1", 2), msg("B", "u1", 3)]
        assert ids(build_active_conversation(tree, {"u1": "A"})) == ["u1", "A"]

    def test_root_override(self):
        tree = [msg("r1", None, 1), msg("r2", None, 2), msg("c1", "r1", 3)]
        assert ids(build_active_conversation(tree, {"root": "r1"})) == ["r1", "c1"]
        assert ids(build_active_conversation(tree, {})) == ["r2"]

    def test_override_follows_into_subtree(self):
        tree = [
            msg("u1", None, 1),
            msg("A", "u1", 2), msg("A1", "A", 3),
            msg("B", "u1", 4), msg("B1", "B", 5), msg("B2", "B", 6),
        ]
        assert ids(build_active_conversation(tree, {"u1": "B", "B": "B1"})) == ["u1", "B", "B1"]
        assert ids(build_active_conversation(tree, {"u1": "A", "B": "B1"})) == ["u1", "A", "A1"]

    def test_stale_override_falls_back_to_latest(self):
        tree = [msg("u1", None, 1), msg("A", "u1", 2), msg("B", "u1", 3)]
        assert ids(build_active_conversation(tree, {"u1": "gone"})) == ["u1", "B"]

    def test_override_naming_a_non_sibling_is_ignored(self):
        tree = [msg("u1", None, 1), msg("A", "u1", 2), msg("x", "A", 3)]
        assert ids(build_active_conversation(tree, {"u1": "x"})) == ["u1", "A", "x"]

    def test_strict_mode_rejects_stale_override(self):
        tree = [msg("u1", None, 1), msg("A", "u1", 2)]
        with pytest.raises(ConcurrentModification) as exc_info:
            build_active_conversation(tree, {"u1": "gone"}, strict=True)
        assert exc_info.value.parent_key == "u1"
        assert exc_info.value.thread_id == "t1"


class TestProperties:
    TREE = [
        msg("u1", None, 1),
        msg("a1", "u1", 2), msg("a2", "u1", 3),
        msg("u2", "a1", 4), msg("u3", "a2", 5), msg("u3b", "a2", 6),
        msg("a3", "u3", 7),
    ]

    @pytest.mark.parametrize("state", [{}, {"u1": "a1"}, {"a2": "u3"}, {"root": "u1", "a2": "u3b"}])
    def test_each_element_is_parent_of_the_next(self, state):
        path = build_active_conversation(self.TREE, state)
        assert path[0].parent_id is None
        for prev, nxt in zip(path, path[1:]):
            assert nxt.parent_id == prev.id

    def test_path_ends_at_a_leaf(self):
        path = build_active_conversation(self.TREE, {"a2": "u3"})
        children = group_children(self.TREE)
        assert not children.get(path[-1].id)

    def test_resolution_is_idempotent(self):
        state = {"a2": "u3"}
        assert ids(build_active_conversation(self.TREE, state)) == ids(build_active_conversation(self.TREE, state))


class TestHelpers:
    def test_parent_key(self):
        assert parent_key(None) == "root"
        assert parent_key("m1") == "m1"

    def test_find_stale_overrides(self):
        tree = [msg("u1", None, 1), msg("A", "u1", 2)]
        stale = find_stale_overrides(tree, {"u1": "A", "root": "A", "zzz": "u1"})
        assert sorted(stale) == [("root", "A"), ("zzz", "u1")]

    def test_sibling_position(self):
        siblings = [msg("A", "p", 1), msg("B", "p", 2), msg("C", "p", 3)]
        info = sibling_position(siblings, "B")
        assert (info.current_index, info.total) == (1, 3)
        assert sibling_position(siblings, "nope").current_index == -1


def turn(id, parent_id, t, role):
    message = msg(id, parent_id, t)
    message.role = role
    return message


class TestStreamingMessage:
    def tree(self):
        return [
            turn("u1", None, 1, MessageRole.USER),
            turn("a1", "u1", 2, MessageRole.ASSISTANT),
            turn("a2", "u1", 3, MessageRole.ASSISTANT),
        ]

    def test_latest_assistant_leaf_streams(self):
        tree = self.tree()
        path = build_active_conversation(tree, {})
        assert streaming_message_id(tree, path) == "a2"

    def test_older_sibling_on_the_path_does_not_stream(self):
        tree = self.tree()
        path = build_active_conversation(tree, {"u1": "a1"})
        assert streaming_message_id(tree, path) is None

    def test_answered_assistant_does_not_stream(self):
        tree = self.tree() + [turn("u2", "a2", 4, MessageRole.USER)]
        path = build_active_conversation(tree, {})
        assert streaming_message_id(tree, path) is None

    def test_empty_thread(self):
        assert streaming_message_id([], []) is None
