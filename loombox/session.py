"""
Sessions: a named cursor threaded through every call.

A Session is just {session_id, cursor}. SessionManager turns input lines into
engine calls and cursor moves, and writes the cursor under `lastConversation`
every time it changes so the next process can resume where this one stopped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from loombox import tree
from loombox.backends.base import StreamEvent
from loombox.backends.errors import ProviderError
from loombox.engine import CompletionEngine
from loombox.storage.models import Conversation, Cursor, MessageNode
from loombox.storage.repository import ConversationRepository
from loombox.storage.save_states import SaveExistsError, SaveStateStore

logger = logging.getLogger(__name__)

COMMAND_ALIASES = {
    "rw": "rw",
    "rewind": "rw",
    "save": "save",
    "load": "load",
    "edit": "edit",
    "concat": "concat",
    "add": "concat",
}


@dataclass
class ParsedInput:
    kind: str                  # "empty", "command" or "message"
    cmd: str | None = None
    args: list[str] = field(default_factory=list)
    text: str = ""


def parse_input(line: str | None) -> ParsedInput:
    """'!cmd args...' is a command, anything else non-blank is a message."""
    line = (line or "").strip()
    if not line:
        return ParsedInput(kind="empty")
    if line.startswith("!"):
        parts = line.split()
        head = parts[0][1:].lower()
        return ParsedInput(
            kind="command",
            cmd=COMMAND_ALIASES.get(head, head),
            args=parts[1:],
            text=line[len(parts[0]):].strip(),
        )
    return ParsedInput(kind="message", text=line)


def _is_index(value: str) -> bool:
    return value.lstrip("-").isdigit()


@dataclass
class Session:
    session_id: str
    cursor: Cursor
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class SessionManager:
    """Per-session cursors over one engine and one repository."""

    def __init__(
        self,
        engine: CompletionEngine,
        repository: ConversationRepository,
        save_states: SaveStateStore | None = None,
        system_message: str | None = None,
        model_options: dict | None = None,
    ):
        self.engine = engine
        self.repository = repository
        self.save_states = save_states
        self.system_message = system_message
        self.model_options = dict(model_options or {})
        self.sessions: dict[str, Session] = {}

    # ------------------------------------------------------------------
    # Session state
    # ------------------------------------------------------------------

    async def ensure_session(self, session_id: str = "local", resume: bool = False) -> Session:
        """
        Return the session, creating it on first use. With resume=True a new
        session starts from the persisted last cursor when there is one.
        """
        session = self.sessions.get(session_id)
        if session is not None:
            return session
        cursor = None
        if resume:
            cursor = await self.repository.get_last_cursor()
        if cursor is None or not cursor.conversation_id:
            cursor = Cursor(conversation_id=Conversation().id, parent_message_id=None)
        session = Session(session_id=session_id, cursor=cursor)
        self.sessions[session_id] = session
        logger.debug("Session %s at %s/%s", session_id, cursor.conversation_id, cursor.parent_message_id)
        return session

    async def move(self, session: Session, cursor: Cursor) -> None:
        session.cursor = cursor
        await self.repository.set_last_cursor(cursor)

    async def _messages(self, session: Session) -> list[MessageNode]:
        conversation = await self.repository.get_conversation(session.cursor.conversation_id)
        return conversation.messages if conversation else []

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    async def rewind(self, session_id: str, target: str | None = None, branch: str | None = None) -> dict:
        """
        Move to the parent (no target or "-1"), to the node with id target,
        or by index along the active path: 0 is the root, negative counts
        back from the cursor. A branch index then picks among that node's
        siblings.
        """
        session = await self.ensure_session(session_id)
        messages = await self._messages(session)
        if not target or (target == "-1" and branch is None):
            current = tree.get_node(messages, session.cursor.parent_message_id)
            if current is None or current.parent_id is None:
                return {"ok": False, "text": "Already at root; no parent to rewind to."}
            await self.move(session, Cursor(session.cursor.conversation_id, current.parent_id))
            return {"ok": True, "text": f"Rewound to parent: {current.parent_id}"}

        node = tree.get_node(messages, target)
        if node is None and _is_index(target) and (branch is None or _is_index(branch)):
            node = tree.node_at(
                messages,
                session.cursor.parent_message_id,
                path_index=int(target),
                branch_index=int(branch) if branch is not None else None,
            )
            if node is None:
                where = f"index {target}" + (f", branch {branch}" if branch is not None else "")
                return {"ok": False, "text": f"No message at {where}"}
        if node is None:
            return {"ok": False, "text": f"Message not found: {target}"}
        await self.move(session, Cursor(session.cursor.conversation_id, node.id))
        return {"ok": True, "text": f"Rewound to {node.id}"}

    async def edit(self, session_id: str, text: str) -> dict:
        """Fork the current message as a sibling with new text, same author."""
        if not text:
            return {"ok": False, "text": "Usage: !edit <text>"}
        session = await self.ensure_session(session_id)
        if session.cursor.parent_message_id is None:
            return {"ok": False, "text": "Nothing to edit yet."}
        edited = await self.engine.edit_message(
            session.cursor.conversation_id, session.cursor.parent_message_id, text
        )
        if edited is None:
            return {"ok": False, "text": "Message unchanged."}
        await self.move(session, Cursor(session.cursor.conversation_id, edited.id))
        return {"ok": True, "text": f"Edited as {edited.id}"}

    async def concat(self, session_id: str, text: str) -> dict:
        """Append a user message under the cursor without asking the model."""
        if not text:
            return {"ok": False, "text": "Usage: !concat <text>"}
        session = await self.ensure_session(session_id)
        cursor, nodes = await self.engine.add_messages(
            session.cursor.conversation_id,
            session.cursor.parent_message_id,
            [{"role": self.engine.participants.user, "text": text}],
        )
        await self.move(session, cursor)
        return {"ok": True, "text": f"Added {nodes[0].id}"}

    async def select_child(self, session_id: str, index: int = 0) -> MessageNode | None:
        session = await self.ensure_session(session_id)
        kids = tree.children(await self._messages(session), session.cursor.parent_message_id)
        if not 0 <= index < len(kids):
            return None
        await self.move(session, Cursor(session.cursor.conversation_id, kids[index].id))
        return kids[index]

    async def select_sibling(self, session_id: str, index: int) -> MessageNode | None:
        """Jump to sibling `index`; out-of-range indices wrap around."""
        session = await self.ensure_session(session_id)
        siblings = tree.siblings(await self._messages(session), session.cursor.parent_message_id)
        if not siblings:
            return None
        node = siblings[index % len(siblings)]
        await self.move(session, Cursor(session.cursor.conversation_id, node.id))
        return node

    async def history(self, session_id: str) -> dict:
        session = await self.ensure_session(session_id)
        messages = await self._messages(session)
        return {
            "conversationId": session.cursor.conversation_id,
            "cursorId": session.cursor.parent_message_id,
            "path": tree.path(messages, session.cursor.parent_message_id),
            "messages": messages,
        }

    # ------------------------------------------------------------------
    # Save states
    # ------------------------------------------------------------------

    async def save(self, session_id: str, name: str, overwrite: bool = False) -> dict:
        if self.save_states is None:
            return {"ok": False, "text": "Save states are not configured."}
        if not name:
            return {"ok": False, "text": "Usage: !save <name>"}
        session = await self.ensure_session(session_id)
        conversation = await self.repository.get_conversation(session.cursor.conversation_id)
        if conversation is None:
            return {"ok": False, "text": "Nothing to save yet."}
        try:
            _, state = self.save_states.save(name, session.cursor, conversation, overwrite=overwrite)
        except SaveExistsError as e:
            return {"ok": False, "text": f"{e}. Use overwrite to replace it."}
        return {"ok": True, "text": f"Saved '{state.name}' ({state.slug})", "slug": state.slug}

    async def load(self, session_id: str, name: str) -> dict:
        if self.save_states is None:
            return {"ok": False, "text": "Save states are not configured."}
        state = self.save_states.find(name) if name else None
        if state is None:
            return {"ok": False, "text": f"Save not found: {name}"}
        cursor = Cursor.from_dict(state.conversation_data)
        if cursor.conversation_id is None:
            cursor = Cursor(state.conversation.get("id"), cursor.parent_message_id)
        # The stored tree may have grown since the save; only restore a missing one
        if await self.repository.get_conversation(cursor.conversation_id) is None and state.conversation:
            snapshot = Conversation.from_dict(state.conversation, conversation_id=cursor.conversation_id)
            await self.repository.save_conversation(snapshot)
        session = await self.ensure_session(session_id)
        await self.move(session, cursor)
        return {"ok": True, "text": f"Loaded '{state.name}'"}

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    async def handle_input(
        self,
        session_id: str,
        line: str,
        on_token: Callable[[str], None] | None = None,
        signal: asyncio.Event | None = None,
    ) -> dict:
        parsed = parse_input(line)
        session = await self.ensure_session(session_id)
        if parsed.kind == "empty":
            return {"type": "noop"}

        if parsed.kind == "command":
            if parsed.cmd == "rw":
                res = await self.rewind(session_id, *parsed.args[:2])
            elif parsed.cmd == "save":
                res = await self.save(session_id, " ".join(parsed.args))
            elif parsed.cmd == "load":
                res = await self.load(session_id, " ".join(parsed.args))
            elif parsed.cmd == "edit":
                res = await self.edit(session_id, parsed.text)
            elif parsed.cmd == "concat":
                res = await self.concat(session_id, parsed.text)
            else:
                res = {"ok": False, "text": f"Unknown command: !{parsed.cmd}"}
            return {
                "type": "command",
                "command": parsed.cmd,
                "ok": res["ok"],
                "text": res["text"],
                "cursorId": session.cursor.parent_message_id,
            }

        def forward(event: StreamEvent) -> None:
            if event.delta_text and on_token:
                on_token(event.delta_text)

        try:
            result = await self.engine.generate(
                session.cursor.conversation_id,
                session.cursor.parent_message_id,
                parsed.text,
                self.model_options,
                system_message=self.system_message,
                on_event=forward,
                signal=signal,
            )
        except ProviderError as e:
            # The user message is already in the tree; keep the cursor on it
            if e.result is not None:
                await self.move(session, e.result.new_cursor)
            raise
        await self.move(session, result.new_cursor)
        response = {
            "type": "message",
            "conversationId": result.conversation_id,
            "cursorId": result.new_cursor.parent_message_id,
            "replies": result.replies_by_index,
        }
        if result.error is not None:
            response["aborted"] = True
        return response
