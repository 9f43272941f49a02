"""
Message tree navigation.

Pure functions over a conversation's message list. They never raise for
unknown ids: the tree is queried speculatively (e.g. "does this node have
siblings?") so misses come back as None or an empty list. Index clamping and
wrapping is the caller's job, except in node_at() which implements the
CLI's path/branch addressing.
"""

from __future__ import annotations

from typing import Sequence

from loombox.storage.models import MessageNode


def get_node(messages: Sequence[MessageNode], node_id: str | None) -> MessageNode | None:
    """Find a node by id."""
    if node_id is None:
        return None
    for message in messages:
        if message.id == node_id:
            return message
    return None


def path(messages: Sequence[MessageNode], node_id: str | None) -> list[MessageNode]:
    """
    Return the nodes from the root down to node_id, inclusive.
    This is the conversation history used to build prompts.
    """
    by_id = {m.id: m for m in messages}
    ordered: list[MessageNode] = []
    seen: set[str] = set()
    current = by_id.get(node_id) if node_id is not None else None
    while current is not None and current.id not in seen:
        seen.add(current.id)
        ordered.append(current)
        if current.parent_id is None:
            break
        current = by_id.get(current.parent_id)
    ordered.reverse()
    return ordered


def children(messages: Sequence[MessageNode], node_id: str | None) -> list[MessageNode]:
    """Nodes whose parent is node_id, in insertion order. None gives the roots."""
    return [m for m in messages if m.parent_id == node_id]


def parent(messages: Sequence[MessageNode], node_id: str | None) -> MessageNode | None:
    node = get_node(messages, node_id)
    if node is None:
        return None
    return get_node(messages, node.parent_id)


def siblings(messages: Sequence[MessageNode], node_id: str | None) -> list[MessageNode]:
    """Nodes sharing node_id's parent, including the node itself."""
    node = get_node(messages, node_id)
    if node is None:
        return []
    return children(messages, node.parent_id)


def sibling_index(messages: Sequence[MessageNode], node_id: str | None) -> int:
    """Position of node_id among its siblings, -1 when unknown."""
    for i, sibling in enumerate(siblings(messages, node_id)):
        if sibling.id == node_id:
            return i
    return -1


def node_at(
    messages: Sequence[MessageNode],
    cursor_id: str | None,
    path_index: int | None = None,
    branch_index: int | None = None,
) -> MessageNode | None:
    """
    Resolve a node relative to the cursor.

    path_index picks the anchor along the active path (None = the cursor
    itself, negative = counted back from the cursor, -1 being its parent).
    branch_index then picks among the anchor's siblings; a negative value
    is relative to the anchor's own position and wraps around.
    """
    history = path(messages, cursor_id)
    if not history:
        return None

    if path_index is None:
        anchor = history[-1]
    else:
        if path_index < 0:
            path_index -= 1
        try:
            anchor = history[path_index]
        except IndexError:
            return None

    if branch_index is None:
        return anchor

    branch = siblings(messages, anchor.id)
    if branch_index < 0:
        branch_index = sibling_index(messages, anchor.id) + branch_index
    if branch_index < 0:
        branch_index = len(branch) + branch_index
    if branch_index < 0 or branch_index >= len(branch):
        return None
    return branch[branch_index]
