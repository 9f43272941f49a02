"""
Data models for conversation storage.
These define the shape of the tree flowing through the engine.

A conversation is an append-only list of MessageNodes. Parent links turn the
list into a tree: several children under one parent are alternative branches.
Nodes are never edited in place; edits and merges append new siblings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class MessageNode:
    """A single turn in the conversation tree."""
    id: str = field(default_factory=lambda: uuid4().hex)
    parent_id: str | None = None
    role: str = ""           # "user", "assistant", "system"
    text: str = ""
    unvisited: bool = True
    details: dict | None = None
    stop_reason: str | None = None
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "parentId": self.parent_id,
            "role": self.role,
            "text": self.text,
            "unvisited": self.unvisited,
            "createdAt": self.created_at,
        }
        if self.details is not None:
            data["details"] = self.details
        if self.stop_reason is not None:
            data["stopReason"] = self.stop_reason
        return data

    @classmethod
    def from_dict(cls, data: dict) -> MessageNode:
        """Build a node from a stored record. Accepts legacy field names."""
        parent_id = data.get("parentId", data.get("parentMessageId"))
        text = data.get("text", data.get("message", ""))
        return cls(
            id=data.get("id") or uuid4().hex,
            parent_id=parent_id,
            role=data.get("role", ""),
            text=text if isinstance(text, str) else str(text),
            unvisited=bool(data.get("unvisited", False)),
            details=data.get("details"),
            stop_reason=data.get("stopReason"),
            created_at=data.get("createdAt") or _now(),
        )

    def clone(self, **changes) -> MessageNode:
        """Copy this node under a fresh id, applying field overrides."""
        values = {
            "parent_id": self.parent_id,
            "role": self.role,
            "text": self.text,
            "details": dict(self.details) if self.details else self.details,
            "stop_reason": self.stop_reason,
        }
        values.update(changes)
        return MessageNode(**values)


@dataclass
class Conversation:
    """A conversation owns its messages in insertion order."""
    id: str = field(default_factory=lambda: uuid4().hex)
    messages: list[MessageNode] = field(default_factory=list)
    created_at: str = field(default_factory=_now)
    name: str | None = None

    def append(self, *nodes: MessageNode) -> None:
        """Append nodes. Parents must already exist (or be None)."""
        known = {m.id for m in self.messages}
        for node in nodes:
            if node.id in known:
                raise ValueError(f"Duplicate message id: {node.id}")
            if node.parent_id is not None and node.parent_id not in known:
                raise ValueError(
                    f"Parent {node.parent_id} of message {node.id} is not in conversation {self.id}"
                )
            known.add(node.id)
        self.messages.extend(nodes)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "createdAt": self.created_at,
            "messages": [m.to_dict() for m in self.messages],
        }
        if self.name:
            data["name"] = self.name
        return data

    @classmethod
    def from_dict(cls, data: dict, conversation_id: str | None = None) -> Conversation:
        return cls(
            id=data.get("id") or conversation_id or uuid4().hex,
            messages=[MessageNode.from_dict(m) for m in data.get("messages", [])],
            created_at=str(data.get("createdAt") or _now()),
            name=data.get("name"),
        )


@dataclass(frozen=True)
class Cursor:
    """The caller's position in a conversation tree."""
    conversation_id: str | None = None
    parent_message_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "conversationId": self.conversation_id,
            "parentMessageId": self.parent_message_id,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> Cursor:
        data = data or {}
        return cls(
            conversation_id=data.get("conversationId") or data.get("jailbreakConversationId"),
            parent_message_id=data.get("parentMessageId"),
        )


@dataclass
class SaveState:
    """A named snapshot of a cursor plus the conversation it points into."""
    name: str
    slug: str
    conversation_data: dict
    conversation: dict
    saved_at: str = field(default_factory=_now)
    summary: str = ""
    version: int = 1
    path: str | None = None

    @property
    def conversation_id(self) -> str | None:
        return self.conversation_data.get("conversationId") or self.conversation.get("id")

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "name": self.name,
            "slug": self.slug,
            "savedAt": self.saved_at,
            "conversationId": self.conversation_id,
            "summary": self.summary,
            "conversationData": self.conversation_data,
            "conversation": self.conversation,
        }

    @classmethod
    def from_dict(cls, data: dict, path: str | None = None) -> SaveState:
        slug = data.get("slug") or ""
        return cls(
            name=data.get("name") or slug,
            slug=slug,
            conversation_data=data.get("conversationData") or {},
            conversation=data.get("conversation") or {},
            saved_at=data.get("savedAt") or "",
            summary=data.get("summary") or "",
            version=data.get("version", 1),
            path=path,
        )
