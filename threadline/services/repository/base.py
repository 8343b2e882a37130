import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

_ADDRESS_SEPARATORS = re.compile(r"[+\s]")


class RepositoryError(Exception):
    """The backing store could not complete an operation."""


class UnknownRecordError(RepositoryError):
    def __init__(self, kind: str, record_id: Any):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"Unknown {kind}: {record_id}")


def normalize_address(address: Optional[str]) -> str:
    """Strip "+" and whitespace so "+1 555 0100" and "15550100" compare equal."""
    return _ADDRESS_SEPARATORS.sub("", address or "")


@dataclass
class StoredMessage:
    external_id: str
    role: str
    text: str
    message_type: str = "text"
    sender_number: str = ""
    sender_name: str = ""
    content: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass
class UserRecord:
    id: UUID
    phone: str
    name: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    # Served from the in-memory buffer while the durable store was failing.
    degraded: bool = False


@dataclass
class ThreadSnapshot:
    id: UUID
    external_id: str
    kind: str
    messages: list[StoredMessage] = field(default_factory=list)
    participants: list[UserRecord] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    service: Optional[str] = None
    degraded: bool = False

    def participant(self, address: str) -> Optional[UserRecord]:
        phone = normalize_address(address)
        for user in self.participants:
            if user.phone == phone:
                return user
        return None

    def has_assistant_message(self) -> bool:
        return any(message.role == "assistant" for message in self.messages)


@dataclass
class StoreResult:
    message_id: UUID
    inserted: bool


class ConversationRepository(ABC):
    """Threads, users, participants and messages behind idempotent get-or-create calls.

    Every get-or-create operation is safe under concurrent callers: two tasks
    racing to create the same thread (or user) both receive the same id.
    """

    backend = "abstract"

    @abstractmethod
    async def get_or_create_user(self, address: str, display_name: Optional[str] = None) -> UUID:
        """Return the user for a normalized address, creating it on first sight."""

    @abstractmethod
    async def get_user(self, address: str) -> Optional[UserRecord]:
        pass

    @abstractmethod
    async def get_or_create_thread(self, external_id: str, kind: str = "individual", service: Optional[str] = None) -> UUID:
        pass

    @abstractmethod
    async def add_participant(self, thread_id: UUID, user_id: UUID) -> None:
        pass

    @abstractmethod
    async def store_message(
        self,
        thread_id: UUID,
        sender_id: Optional[UUID],
        external_id: Optional[str],
        *,
        text: str,
        message_type: str = "text",
        role: str = "user",
        content: Optional[dict] = None,
        sent_at: Optional[datetime] = None,
    ) -> StoreResult:
        """Insert-or-ignore keyed on (thread_id, external_id)."""

    @abstractmethod
    async def get_thread(self, external_id: str) -> Optional[ThreadSnapshot]:
        """Thread plus its most recent messages, oldest first; None for a brand-new thread."""

    @abstractmethod
    async def update_user_metadata(self, user_id: UUID, partial: dict[str, Any]) -> dict[str, Any]:
        """Shallow-merge `partial` into the user's metadata and return the merged map."""

    @abstractmethod
    async def merge_user_metadata_section(self, user_id: UUID, section: str, partial: dict[str, Any]) -> dict[str, Any]:
        """Merge `partial` into the object stored under metadata[section]; sibling keys are kept."""

    @abstractmethod
    async def update_thread_metadata(self, thread_id: UUID, partial: dict[str, Any]) -> dict[str, Any]:
        """Shallow-merge `partial` into the thread's metadata and return the merged map."""
