"""
Conversation storage: tree models, key/value backends, save states.
"""
from loombox.storage.backends import KeyValueStore, make_store
from loombox.storage.models import Conversation, Cursor, MessageNode, SaveState
from loombox.storage.repository import LAST_CONVERSATION_KEY, ConversationRepository
from loombox.storage.save_states import SaveExistsError, SaveStateStore

__all__ = [
    "KeyValueStore",
    "make_store",
    "Conversation",
    "Cursor",
    "MessageNode",
    "SaveState",
    "ConversationRepository",
    "LAST_CONVERSATION_KEY",
    "SaveExistsError",
    "SaveStateStore",
]
