"""
CompletionEngine: one conversation turn, end to end.

    path = tree.path(conversation, cursor)
    append user node ─ persist          (never lost, even if the call fails)
    adapter.build_request + adapter.stream
        delta  → accumulate per candidate index
        finish → one reply node per candidate ─ persist
    leftovers with text → reply nodes   (stream ended without a finish event)

On failure, candidates that already produced text are persisted with the
error as their stop reason, then the error is raised. A user abort takes the
same path but returns normally with result.error set.

The engine also owns the other tree-growing operations (add, edit, merge,
retry). All of them append new nodes; existing nodes are never changed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from loombox import tree
from loombox.backends.base import EventHandler, PromptMessage, StreamEvent, emit
from loombox.backends.errors import ProviderError, StreamAborted
from loombox.storage.models import Conversation, Cursor, MessageNode
from loombox.storage.repository import ConversationRepository

logger = logging.getLogger(__name__)


@dataclass
class Participants:
    """Role labels stored on nodes. The prompt always uses user/assistant/system."""
    user: str = "user"
    bot: str = "assistant"
    system: str = "system"

    def author_for(self, role: str) -> str:
        if role == self.bot:
            return "assistant"
        if role == self.system:
            return "system"
        return "user"


@dataclass
class GenerationResult:
    conversation_id: str
    new_cursor: Cursor
    replies_by_index: dict[int, str] = field(default_factory=dict)
    user_node: MessageNode | None = None
    new_nodes: list[MessageNode] = field(default_factory=list)
    error: BaseException | None = None


class CompletionEngine:
    """Builds prompts from the tree, runs the adapter, grows the tree."""

    def __init__(self, repository: ConversationRepository, adapter, participants: Participants | None = None,
                 wire=None):
        self.repository = repository
        self.adapter = adapter
        self.participants = participants or Participants()
        self.wire = wire

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def load(self, conversation_id: str | None) -> Conversation:
        """The stored conversation, or a fresh one under that id."""
        conversation = await self.repository.get_conversation(conversation_id)
        if conversation is None:
            conversation = Conversation(id=conversation_id) if conversation_id else Conversation()
            logger.debug("Starting conversation %s", conversation.id)
        return conversation

    def prompt_path(self, nodes: list[MessageNode], participants: Participants | None = None) -> list[PromptMessage]:
        participants = participants or self.participants
        path = []
        for node in nodes:
            attachments = (node.details or {}).get("attachments") or []
            path.append(PromptMessage(
                author=participants.author_for(node.role),
                text=node.text,
                attachments=list(attachments),
            ))
        return path

    def _tap(self, direction: str, node: MessageNode, conversation_id: str, model: str = ""):
        if self.wire is None:
            return
        self.wire.log(direction, node.role, node.text, model=model,
                      conversation_id=conversation_id, stop_reason=node.stop_reason)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate(
        self,
        conversation_id: str | None,
        cursor_id: str | None,
        user_text: str | None = None,
        model_options: dict | None = None,
        *,
        system_message: str | None = None,
        attachments: list[dict] | None = None,
        on_event: EventHandler | None = None,
        signal: asyncio.Event | None = None,
        preview_index: int = 0,
        participants: Participants | None = None,
    ) -> GenerationResult:
        """
        One turn from cursor_id. `participants` overrides the engine's role
        labels for this call only; a self-dialogue swaps them every turn.
        """
        participants = participants or self.participants
        conversation = await self.load(conversation_id)
        model_options = dict(model_options or {})
        model = model_options.get("model", "")

        if cursor_id is not None and tree.get_node(conversation.messages, cursor_id) is None:
            raise ValueError(f"Message {cursor_id} is not in conversation {conversation.id}")

        reply_parent = cursor_id
        user_node = None
        if user_text is not None:
            details = {"attachments": attachments} if attachments else None
            user_node = MessageNode(
                parent_id=cursor_id,
                role=participants.user,
                text=user_text,
                unvisited=False,
                details=details,
            )
            conversation.append(user_node)
            await self.repository.save_conversation(conversation)
            self._tap("outbound", user_node, conversation.id, model)
            reply_parent = user_node.id

        history = self.prompt_path(tree.path(conversation.messages, reply_parent), participants)
        request = self.adapter.build_request(history, system_message, model_options)

        buffers: dict[int, str] = {}
        finished: dict[int, MessageNode] = {}
        new_nodes: list[MessageNode] = []

        async def persist(index: int, text: str, stop_reason: str | None, details: dict | None) -> None:
            node = MessageNode(
                parent_id=reply_parent,
                role=participants.bot,
                text=text,
                # The preview candidate is the one the caller lands on
                unvisited=index != preview_index,
                details=details,
                stop_reason=stop_reason,
            )
            conversation.append(node)
            finished[index] = node
            new_nodes.append(node)
            await self.repository.save_conversation(conversation)
            self._tap("inbound", node, conversation.id, model)

        async def handle(event: StreamEvent) -> None:
            idx = event.candidate_index
            if event.delta_text:
                buffers[idx] = buffers.get(idx, "") + event.delta_text
            await emit(on_event, event)
            if event.finished and idx not in finished:
                details = dict(event.details or {})
                if event.raw is not None:
                    details["raw"] = event.raw
                await persist(idx, buffers.get(idx, ""), event.stop_reason, details or None)

        error: BaseException | None = None
        try:
            await self.adapter.stream(request, on_event=handle, signal=signal)
        except StreamAborted as e:
            logger.info("Generation aborted in conversation %s", conversation.id)
            error = e
        except ProviderError as e:
            error = e

        # Candidates that streamed text but never saw a finish event
        for idx in sorted(buffers):
            if idx in finished:
                continue
            text = buffers[idx]
            if error is not None:
                if not text.strip():
                    continue
                await persist(idx, text, str(error), {"error": str(error)})
            elif text:
                await persist(idx, text, None, None)

        if error is not None and not isinstance(error, StreamAborted):
            if new_nodes:
                logger.warning(
                    "Generation failed in conversation %s after %d partial candidate(s): %s",
                    conversation.id, len(new_nodes), error,
                )
            error.result = GenerationResult(
                conversation_id=conversation.id,
                new_cursor=Cursor(conversation.id, user_node.id if user_node else cursor_id),
                user_node=user_node,
                new_nodes=new_nodes,
                error=error,
            )
            raise error

        if preview_index in finished:
            cursor_node = finished[preview_index]
        elif finished:
            cursor_node = finished[min(finished)]
        else:
            cursor_node = user_node

        cursor = Cursor(conversation.id, cursor_node.id if cursor_node else cursor_id)
        return GenerationResult(
            conversation_id=conversation.id,
            new_cursor=cursor,
            replies_by_index={i: n.text for i, n in sorted(finished.items())},
            user_node=user_node,
            new_nodes=new_nodes,
            error=error,
        )

    async def retry(
        self,
        conversation_id: str,
        cursor_id: str,
        model_options: dict | None = None,
        **kwargs,
    ) -> GenerationResult:
        """Generate new siblings for the node at cursor_id."""
        conversation = await self.load(conversation_id)
        node = tree.get_node(conversation.messages, cursor_id)
        if node is None:
            raise ValueError(f"Message {cursor_id} is not in conversation {conversation.id}")
        return await self.generate(conversation.id, node.parent_id, None, model_options, **kwargs)

    # ------------------------------------------------------------------
    # Tree edits (always new nodes)
    # ------------------------------------------------------------------

    async def add_messages(
        self,
        conversation_id: str | None,
        cursor_id: str | None,
        messages: list[dict],
        chain: bool = True,
    ) -> tuple[Cursor, list[MessageNode]]:
        """
        Append messages ({"role", "text", "details"?}) under cursor_id, either
        as a chain (each the child of the previous) or side by side. One store
        write. The returned cursor is the last node added.
        """
        conversation = await self.load(conversation_id)
        parent_id = cursor_id
        nodes = []
        for message in messages:
            node = MessageNode(
                parent_id=parent_id,
                role=message.get("role") or self.participants.user,
                text=message.get("text", ""),
                unvisited=False,
                details=message.get("details"),
            )
            nodes.append(node)
            if chain:
                parent_id = node.id
        conversation.append(*nodes)
        await self.repository.save_conversation(conversation)
        last = nodes[-1].id if nodes else cursor_id
        return Cursor(conversation.id, last), nodes

    async def edit_message(self, conversation_id: str, node_id: str, new_text: str) -> MessageNode | None:
        """Sibling copy of node_id with new_text. None when unknown or unchanged."""
        conversation = await self.repository.get_conversation(conversation_id)
        if conversation is None:
            return None
        node = tree.get_node(conversation.messages, node_id)
        if node is None or node.text == new_text:
            return None
        edited = node.clone(text=new_text, unvisited=False)
        conversation.append(edited)
        await self.repository.save_conversation(conversation)
        return edited

    async def merge_up(self, conversation_id: str, node_id: str) -> MessageNode | None:
        """
        Fold node_id into its parent: a new sibling of the parent carrying
        parent.text + node.text. Neither original is touched.
        """
        conversation = await self.repository.get_conversation(conversation_id)
        if conversation is None:
            return None
        node = tree.get_node(conversation.messages, node_id)
        up = tree.parent(conversation.messages, node_id)
        if node is None or up is None:
            return None
        merged = up.clone(text=up.text + node.text, unvisited=False)
        conversation.append(merged)
        await self.repository.save_conversation(conversation)
        return merged
