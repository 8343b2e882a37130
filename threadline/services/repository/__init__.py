from threadline.services.repository.base import (
    ConversationRepository,
    RepositoryError,
    StoredMessage,
    StoreResult,
    ThreadSnapshot,
    UnknownRecordError,
    UserRecord,
    normalize_address,
)
from threadline.services.repository.fallback import FallbackConversationRepository
from threadline.services.repository.memory import InMemoryConversationRepository
from threadline.services.repository.sql import SqlConversationRepository

__all__ = [
    "ConversationRepository",
    "FallbackConversationRepository",
    "InMemoryConversationRepository",
    "RepositoryError",
    "SqlConversationRepository",
    "StoredMessage",
    "StoreResult",
    "ThreadSnapshot",
    "UnknownRecordError",
    "UserRecord",
    "normalize_address",
]
