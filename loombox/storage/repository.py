"""
Typed access to a KeyValueStore: conversations by id, plus the last active
cursor under the reserved key `lastConversation`.
"""

from __future__ import annotations

import logging

from loombox.storage.backends import KeyValueStore
from loombox.storage.models import Conversation, Cursor

logger = logging.getLogger(__name__)

LAST_CONVERSATION_KEY = "lastConversation"


class ConversationRepository:
    """Conversations in and out of a store, as Conversation objects."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def get_conversation(self, conversation_id: str | None) -> Conversation | None:
        if not conversation_id or conversation_id == LAST_CONVERSATION_KEY:
            return None
        data = await self.store.get(conversation_id)
        if data is None:
            return None
        return Conversation.from_dict(data, conversation_id=conversation_id)

    async def save_conversation(self, conversation: Conversation) -> None:
        await self.store.set(conversation.id, conversation.to_dict())
        logger.debug(
            "Saved conversation %s (%d messages)", conversation.id, len(conversation.messages)
        )

    async def delete_conversation(self, conversation_id: str) -> None:
        await self.store.delete(conversation_id)

    async def conversation_ids(self) -> list[str]:
        return [k for k in await self.store.keys() if k != LAST_CONVERSATION_KEY]

    async def get_last_cursor(self) -> Cursor | None:
        data = await self.store.get(LAST_CONVERSATION_KEY)
        if not data:
            return None
        return Cursor.from_dict(data)

    async def set_last_cursor(self, cursor: Cursor) -> None:
        await self.store.set(LAST_CONVERSATION_KEY, cursor.to_dict())
