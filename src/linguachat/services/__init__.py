"""Service layer: document store, conversation persistence, settings and telemetry."""

from .conversation_store import ConversationStore
from .tree_store import MemoryTreeStore, RedisTreeStore, TransactionResult, TreeStore

__all__ = [
    "ConversationStore",
    "MemoryTreeStore",
    "RedisTreeStore",
    "TransactionResult",
    "TreeStore",
]
