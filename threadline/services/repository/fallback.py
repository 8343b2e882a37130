from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from threadline.logging_config import get_logger
from threadline.services.repository.base import (
    ConversationRepository,
    RepositoryError,
    StoreResult,
    ThreadSnapshot,
    UserRecord,
)
from threadline.services.repository.memory import InMemoryConversationRepository

logger = get_logger("repository.fallback")


class FallbackConversationRepository(ConversationRepository):
    """Durable store first, bounded in-memory buffer whenever it fails.

    Ids and metadata handed out by the durable store are mirrored into the
    buffer so a later outage can still append to known threads and still sees
    the last metadata the store returned. Records read from the buffer are
    flagged `degraded`; callers use that to avoid writing decisions based on
    a possibly stale copy back to the store.
    """

    backend = "sql+memory"

    def __init__(self, primary: ConversationRepository, fallback: InMemoryConversationRepository):
        self.primary = primary
        self.fallback = fallback

    def _log_degraded(self, operation: str, exc: Exception) -> None:
        logger.warning(
            f"Store unavailable for {operation}, using in-memory buffer",
            extra={"context": {"operation": operation, "error": str(exc), "error_type": type(exc).__name__}},
        )

    async def get_or_create_user(self, address: str, display_name: Optional[str] = None) -> UUID:
        try:
            user_id = await self.primary.get_or_create_user(address, display_name)
        except RepositoryError as exc:
            self._log_degraded("get_or_create_user", exc)
            return await self.fallback.get_or_create_user(address, display_name)
        await self.fallback.remember_user(user_id, address, display_name)
        return user_id

    async def get_user(self, address: str) -> Optional[UserRecord]:
        try:
            user = await self.primary.get_user(address)
        except RepositoryError as exc:
            self._log_degraded("get_user", exc)
            user = await self.fallback.get_user(address)
            if user is not None:
                user.degraded = True
            return user
        if user is not None:
            await self.fallback.remember_user(user.id, user.phone, user.name, metadata=user.metadata)
        return user

    async def get_or_create_thread(self, external_id: str, kind: str = "individual", service: Optional[str] = None) -> UUID:
        try:
            thread_id = await self.primary.get_or_create_thread(external_id, kind, service)
        except RepositoryError as exc:
            self._log_degraded("get_or_create_thread", exc)
            return await self.fallback.get_or_create_thread(external_id, kind, service)
        await self.fallback.remember_thread(thread_id, external_id, kind, service)
        return thread_id

    async def add_participant(self, thread_id: UUID, user_id: UUID) -> None:
        try:
            await self.primary.add_participant(thread_id, user_id)
        except RepositoryError as exc:
            self._log_degraded("add_participant", exc)
            await self.fallback.add_participant(thread_id, user_id)

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
        kwargs = dict(text=text, message_type=message_type, role=role, content=content, sent_at=sent_at)
        try:
            return await self.primary.store_message(thread_id, sender_id, external_id, **kwargs)
        except RepositoryError as exc:
            self._log_degraded("store_message", exc)
            return await self.fallback.store_message(thread_id, sender_id, external_id, **kwargs)

    async def get_thread(self, external_id: str) -> Optional[ThreadSnapshot]:
        try:
            snapshot = await self.primary.get_thread(external_id)
        except RepositoryError as exc:
            self._log_degraded("get_thread", exc)
            snapshot = await self.fallback.get_thread(external_id)
            if snapshot is not None:
                snapshot.degraded = True
            return snapshot
        if snapshot is not None:
            await self.fallback.remember_thread(
                snapshot.id, snapshot.external_id, snapshot.kind, snapshot.service, metadata=snapshot.metadata
            )
        return snapshot

    async def update_user_metadata(self, user_id: UUID, partial: dict[str, Any]) -> dict[str, Any]:
        try:
            merged = await self.primary.update_user_metadata(user_id, partial)
        except RepositoryError as exc:
            self._log_degraded("update_user_metadata", exc)
            return await self.fallback.update_user_metadata(user_id, partial)
        await self.fallback.remember_user_metadata(user_id, merged)
        return merged

    async def merge_user_metadata_section(self, user_id: UUID, section: str, partial: dict[str, Any]) -> dict[str, Any]:
        try:
            merged = await self.primary.merge_user_metadata_section(user_id, section, partial)
        except RepositoryError as exc:
            self._log_degraded("merge_user_metadata_section", exc)
            return await self.fallback.merge_user_metadata_section(user_id, section, partial)
        await self.fallback.remember_user_metadata(user_id, merged)
        return merged

    async def update_thread_metadata(self, thread_id: UUID, partial: dict[str, Any]) -> dict[str, Any]:
        try:
            merged = await self.primary.update_thread_metadata(thread_id, partial)
        except RepositoryError as exc:
            self._log_degraded("update_thread_metadata", exc)
            return await self.fallback.update_thread_metadata(thread_id, partial)
        await self.fallback.remember_thread_metadata(thread_id, merged)
        return merged
