import asyncio
import copy
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from threadline.logging_config import get_logger
from threadline.services.repository.base import (
    ConversationRepository,
    StoredMessage,
    StoreResult,
    ThreadSnapshot,
    UnknownRecordError,
    UserRecord,
    normalize_address,
)

logger = get_logger("repository.memory")

# Dedup memory per thread, as a multiple of the context window.
SEEN_IDS_FACTOR = 20


@dataclass
class _MemoryThread:
    id: UUID
    external_id: str
    kind: str
    service: Optional[str]
    messages: deque
    seen: OrderedDict = field(default_factory=OrderedDict)
    participant_ids: list[UUID] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


class InMemoryConversationRepository(ConversationRepository):
    """Bounded, process-local store keyed by external thread id.

    Holds only the most recent `context_window` messages per thread and
    nothing survives a restart. All mutations happen under one asyncio lock,
    and readers get copies, so a concurrent reader never observes a
    half-appended message.

    With `max_entries` set, threads and users are kept in least-recently-used
    order and the oldest are evicted past that count.
    """

    backend = "memory"

    def __init__(self, context_window: int = 10, max_entries: Optional[int] = None):
        self.context_window = max(int(context_window), 1)
        self.max_entries = max(int(max_entries), 1) if max_entries is not None else None
        self._lock = asyncio.Lock()
        self._threads: OrderedDict[str, _MemoryThread] = OrderedDict()
        self._threads_by_id: dict[UUID, _MemoryThread] = {}
        self._users: OrderedDict[str, UserRecord] = OrderedDict()
        self._users_by_id: dict[UUID, UserRecord] = {}

    @property
    def thread_count(self) -> int:
        return len(self._threads)

    @property
    def user_count(self) -> int:
        return len(self._users)

    def _evict(self) -> None:
        if self.max_entries is None:
            return
        while len(self._threads) > self.max_entries:
            _, thread = self._threads.popitem(last=False)
            self._threads_by_id.pop(thread.id, None)
        while len(self._users) > self.max_entries:
            _, user = self._users.popitem(last=False)
            self._users_by_id.pop(user.id, None)

    def _touch_thread(self, thread: _MemoryThread) -> None:
        if thread.external_id in self._threads:
            self._threads.move_to_end(thread.external_id)

    def _touch_user(self, user: UserRecord) -> None:
        if user.phone in self._users:
            self._users.move_to_end(user.phone)

    def _new_thread(self, thread_id: UUID, external_id: str, kind: str, service: Optional[str]) -> _MemoryThread:
        previous = self._threads.pop(external_id, None)
        if previous is not None:
            self._threads_by_id.pop(previous.id, None)
        thread = _MemoryThread(
            id=thread_id,
            external_id=external_id,
            kind=kind,
            service=service,
            messages=deque(maxlen=self.context_window),
        )
        self._threads[external_id] = thread
        self._threads_by_id[thread_id] = thread
        self._evict()
        return thread

    def _new_user(self, user_id: UUID, phone: str, display_name: Optional[str]) -> UserRecord:
        previous = self._users.pop(phone, None)
        if previous is not None:
            self._users_by_id.pop(previous.id, None)
        user = UserRecord(id=user_id, phone=phone, name=display_name or phone, metadata={})
        self._users[phone] = user
        self._users_by_id[user_id] = user
        self._evict()
        return user

    async def remember_thread(
        self,
        thread_id: UUID,
        external_id: str,
        kind: str,
        service: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Mirror a thread held by the durable store so later fallbacks can append to it."""
        async with self._lock:
            thread = self._threads.get(external_id)
            if thread is None or thread.id != thread_id:
                thread = self._new_thread(thread_id, external_id, kind, service)
            if metadata is not None:
                thread.metadata = copy.deepcopy(metadata)
            self._touch_thread(thread)

    async def remember_user(
        self,
        user_id: UUID,
        address: str,
        display_name: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Mirror a user held by the durable store; `metadata`, when given, replaces the cached copy."""
        phone = normalize_address(address)
        if not phone:
            return
        async with self._lock:
            user = self._users.get(phone)
            if user is None or user.id != user_id:
                user = self._new_user(user_id, phone, display_name)
            elif display_name:
                user.name = display_name
            if metadata is not None:
                user.metadata = copy.deepcopy(metadata)
            self._touch_user(user)

    async def remember_user_metadata(self, user_id: UUID, metadata: dict[str, Any]) -> None:
        async with self._lock:
            user = self._users_by_id.get(user_id)
            if user is not None:
                user.metadata = copy.deepcopy(metadata)

    async def remember_thread_metadata(self, thread_id: UUID, metadata: dict[str, Any]) -> None:
        async with self._lock:
            thread = self._threads_by_id.get(thread_id)
            if thread is not None:
                thread.metadata = copy.deepcopy(metadata)

    async def get_or_create_user(self, address: str, display_name: Optional[str] = None) -> UUID:
        phone = normalize_address(address)
        if not phone:
            raise ValueError("address is required")
        async with self._lock:
            user = self._users.get(phone)
            if user is None:
                user = self._new_user(uuid.uuid4(), phone, display_name)
                logger.debug("Created in-memory user", extra={"context": {"user_id": str(user.id)}})
            else:
                if display_name and user.name != display_name:
                    user.name = display_name
                self._touch_user(user)
            return user.id

    async def get_user(self, address: str) -> Optional[UserRecord]:
        async with self._lock:
            user = self._users.get(normalize_address(address))
            if user is None:
                return None
            self._touch_user(user)
            return copy.deepcopy(user)

    async def get_or_create_thread(self, external_id: str, kind: str = "individual", service: Optional[str] = None) -> UUID:
        async with self._lock:
            thread = self._threads.get(external_id)
            if thread is None:
                thread = self._new_thread(uuid.uuid4(), external_id, kind, service)
            else:
                self._touch_thread(thread)
            return thread.id

    async def add_participant(self, thread_id: UUID, user_id: UUID) -> None:
        async with self._lock:
            thread = self._threads_by_id.get(thread_id)
            if thread is None:
                raise UnknownRecordError("thread", thread_id)
            if user_id not in thread.participant_ids:
                thread.participant_ids.append(user_id)

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
        external_id = external_id or f"agent-{uuid.uuid4()}"
        async with self._lock:
            thread = self._threads_by_id.get(thread_id)
            if thread is None:
                raise UnknownRecordError("thread", thread_id)

            existing_id = thread.seen.get(external_id)
            if existing_id is not None:
                return StoreResult(message_id=existing_id, inserted=False)

            sender = self._users_by_id.get(sender_id) if sender_id else None
            message_id = uuid.uuid4()
            thread.messages.append(
                StoredMessage(
                    external_id=external_id,
                    role=role,
                    text=text,
                    message_type=message_type,
                    sender_number=sender.phone if sender else "",
                    sender_name=(sender.name or "") if sender else "",
                    content=dict(content or {}),
                    created_at=datetime.now(timezone.utc),
                )
            )
            thread.seen[external_id] = message_id
            while len(thread.seen) > self.context_window * SEEN_IDS_FACTOR:
                thread.seen.popitem(last=False)
            self._touch_thread(thread)
            return StoreResult(message_id=message_id, inserted=True)

    async def get_thread(self, external_id: str) -> Optional[ThreadSnapshot]:
        async with self._lock:
            thread = self._threads.get(external_id)
            if thread is None:
                return None
            self._touch_thread(thread)
            participants = [
                copy.deepcopy(self._users_by_id[user_id])
                for user_id in thread.participant_ids
                if user_id in self._users_by_id
            ]
            return ThreadSnapshot(
                id=thread.id,
                external_id=thread.external_id,
                kind=thread.kind,
                messages=[copy.deepcopy(message) for message in thread.messages],
                participants=participants,
                metadata=copy.deepcopy(thread.metadata),
                service=thread.service,
            )

    async def update_user_metadata(self, user_id: UUID, partial: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            user = self._users_by_id.get(user_id)
            if user is None:
                raise UnknownRecordError("user", user_id)
            user.metadata = {**user.metadata, **copy.deepcopy(partial)}
            return copy.deepcopy(user.metadata)

    async def merge_user_metadata_section(self, user_id: UUID, section: str, partial: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            user = self._users_by_id.get(user_id)
            if user is None:
                raise UnknownRecordError("user", user_id)
            current = user.metadata.get(section)
            current = current if isinstance(current, dict) else {}
            user.metadata = {**user.metadata, section: {**current, **copy.deepcopy(partial)}}
            return copy.deepcopy(user.metadata)

    async def update_thread_metadata(self, thread_id: UUID, partial: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            thread = self._threads_by_id.get(thread_id)
            if thread is None:
                raise UnknownRecordError("thread", thread_id)
            thread.metadata = {**thread.metadata, **copy.deepcopy(partial)}
            return copy.deepcopy(thread.metadata)
