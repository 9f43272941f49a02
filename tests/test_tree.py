"""
Tests for message tree navigation.
Run with: pytest tests/test_tree.py
"""

import pytest

from loombox import tree
from loombox.storage.models import Conversation, MessageNode


@pytest.fixture
def convo():
    """
    root ─┬─ a ─┬─ a1
          │     └─ a2
          └─ b
    """
    root = MessageNode(id="root", role="user", text="hi")
    a = MessageNode(id="a", parent_id="root", role="assistant", text="A")
    b = MessageNode(id="b", parent_id="root", role="assistant", text="B")
    a1 = MessageNode(id="a1", parent_id="a", role="user", text="A1")
    a2 = MessageNode(id="a2", parent_id="a", role="user", text="A2")
    c = Conversation(id="c1")
    c.append(root, a, b, a1, a2)
    return c


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def test_path_root_to_node(convo):
    """path() walks from the root down to the node."""
    ids = [m.id for m in tree.path(convo.messages, "a2")]
    assert ids == ["root", "a", "a2"]


def test_path_links_are_parent_ids(convo):
    """Every node's parent is the previous node; the first is a root."""
    for node in convo.messages:
        history = tree.path(convo.messages, node.id)
        assert history[-1].id == node.id
        assert history[0].parent_id is None
        for prev, cur in zip(history, history[1:]):
            assert cur.parent_id == prev.id


def test_path_unknown_or_none_is_empty(convo):
    """An unknown or missing cursor has an empty path."""
    assert tree.path(convo.messages, None) == []
    assert tree.path(convo.messages, "nope") == []


def test_path_survives_cycle():
    """A parent cycle ends the walk instead of looping forever."""
    a = MessageNode(id="a", parent_id="b")
    b = MessageNode(id="b", parent_id="a")
    assert len(tree.path([a, b], "a")) == 2


def test_children_in_insertion_order(convo):
    """Children come back in insertion order."""
    assert [m.id for m in tree.children(convo.messages, "a")] == ["a1", "a2"]
    assert [m.id for m in tree.children(convo.messages, None)] == ["root"]
    assert tree.children(convo.messages, "a1") == []


def test_children_of_parent_contains_node(convo):
    """Every node is among its parent's children."""
    for node in convo.messages:
        if node.parent_id is None:
            continue
        up = tree.parent(convo.messages, node.id)
        assert node.id in [m.id for m in tree.children(convo.messages, up.id)]


def test_siblings_include_self(convo):
    """A node's siblings include the node itself."""
    for node in convo.messages:
        sibs = tree.siblings(convo.messages, node.id)
        assert sibs[tree.sibling_index(convo.messages, node.id)].id == node.id


def test_misses_return_empty(convo):
    """Lookups that miss give None or an empty list."""
    assert tree.parent(convo.messages, "root") is None
    assert tree.parent(convo.messages, "nope") is None
    assert tree.siblings(convo.messages, "nope") == []
    assert tree.sibling_index(convo.messages, "nope") == -1
    assert tree.get_node(convo.messages, None) is None


# ---------------------------------------------------------------------------
# node_at addressing
# ---------------------------------------------------------------------------

def test_node_at_defaults_to_cursor(convo):
    """Without indices node_at returns the cursor node."""
    assert tree.node_at(convo.messages, "a2").id == "a2"


def test_node_at_path_index(convo):
    """path_index counts from the root, negatives back from the cursor."""
    assert tree.node_at(convo.messages, "a2", path_index=0).id == "root"
    assert tree.node_at(convo.messages, "a2", path_index=-1).id == "a"
    assert tree.node_at(convo.messages, "a2", path_index=7) is None


def test_node_at_branch_index(convo):
    """branch_index picks a sibling of the anchor, negatives relative to it."""
    assert tree.node_at(convo.messages, "a2", branch_index=0).id == "a1"
    # negative is relative to the anchor's own position
    assert tree.node_at(convo.messages, "a2", branch_index=-1).id == "a1"
    assert tree.node_at(convo.messages, "a1", branch_index=-1).id == "a2"
    assert tree.node_at(convo.messages, "a2", branch_index=5) is None


# ---------------------------------------------------------------------------
# Append-only history
# ---------------------------------------------------------------------------

def test_append_keeps_existing_nodes(convo):
    """Appending never rewrites existing nodes."""
    before = [(m.id, m.parent_id, m.text) for m in convo.messages]
    convo.append(MessageNode(parent_id="b", role="user", text="more"))
    after = [(m.id, m.parent_id, m.text) for m in convo.messages[:len(before)]]
    assert before == after


def test_append_rejects_unknown_parent(convo):
    """A node pointing at an unknown parent is rejected."""
    with pytest.raises(ValueError):
        convo.append(MessageNode(parent_id="ghost"))


def test_append_rejects_duplicate_id(convo):
    """Duplicate ids are rejected."""
    with pytest.raises(ValueError):
        convo.append(MessageNode(id="a"))


def test_clone_gets_new_id(convo):
    """clone() copies under a fresh id and leaves the original alone."""
    original = tree.get_node(convo.messages, "a")
    copy = original.clone(text="A'")
    assert copy.id != original.id
    assert copy.parent_id == original.parent_id
    assert copy.role == original.role
    assert original.text == "A"


def test_conversation_dict_roundtrip_accepts_legacy_fields():
    """Legacy role/message fields load and round-trip."""
    data = {
        "messages": [
            {"id": "1", "parentMessageId": None, "role": "User", "message": "hello"},
            {"id": "2", "parentMessageId": "1", "role": "Claude", "message": "hi"},
        ],
    }
    c = Conversation.from_dict(data, conversation_id="legacy")
    assert c.id == "legacy"
    assert c.messages[1].parent_id == "1"
    assert c.messages[1].text == "hi"
    assert Conversation.from_dict(c.to_dict()).messages[1].text == "hi"
