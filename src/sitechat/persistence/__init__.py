from sitechat.persistence.conversation_store import ConversationStore
from sitechat.persistence.injection_store import (
    InMemoryPendingInjectionStore,
    PendingInjectionStore,
    SqlitePendingInjectionStore,
)
from sitechat.persistence.session_store import InMemorySessionStore, SessionStore
from sitechat.persistence.store import MemoryStore

__all__ = [
    "ConversationStore",
    "InMemoryPendingInjectionStore",
    "InMemorySessionStore",
    "MemoryStore",
    "PendingInjectionStore",
    "SessionStore",
    "SqlitePendingInjectionStore",
]
