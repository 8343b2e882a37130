import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional
from uuid import UUID

from sqlalchemy import Text, func, literal, select, update
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from threadline.logging_config import get_logger
from threadline.models import Message, Participant, Thread, User
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

logger = get_logger("repository.sql")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_user_record(user: User) -> UserRecord:
    return UserRecord(
        id=user.id,
        phone=user.phone,
        name=user.name,
        metadata=dict(user.user_metadata or {}),
    )


def _to_stored_message(message: Message) -> StoredMessage:
    sender = message.sender
    return StoredMessage(
        external_id=message.external_id,
        role=message.role,
        text=message.text or "",
        message_type=message.message_type,
        sender_number=sender.phone if sender else "",
        sender_name=(sender.name or "") if sender else "",
        content=dict(message.content or {}),
        created_at=message.created_at,
    )


class SqlConversationRepository(ConversationRepository):
    """PostgreSQL-backed repository.

    Get-or-create relies on the unique constraints on `threads.external_id`
    and `users.phone`: the insert that loses a creation race raises
    IntegrityError, which is turned into a lookup of the winning row.
    Any other store failure surfaces as RepositoryError.
    """

    backend = "sql"

    def __init__(self, session_factory: async_sessionmaker, context_window: int = 10):
        self._session_factory = session_factory
        self.context_window = max(int(context_window), 1)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except RepositoryError:
            raise
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
            raise RepositoryError(str(exc)) from exc

    async def _find_user(self, session: AsyncSession, phone: str) -> Optional[User]:
        result = await session.execute(select(User).where(User.phone == phone))
        return result.scalar_one_or_none()

    async def _find_thread(self, session: AsyncSession, external_id: str) -> Optional[Thread]:
        result = await session.execute(select(Thread).where(Thread.external_id == external_id))
        return result.scalar_one_or_none()

    async def get_or_create_user(self, address: str, display_name: Optional[str] = None) -> UUID:
        phone = normalize_address(address)
        if not phone:
            raise ValueError("address is required")

        async with self._session() as session:
            user = await self._find_user(session, phone)
            if user is not None:
                if display_name and user.name != display_name:
                    user.name = display_name
                    user.last_active_at = _now()
                    await session.commit()
                    logger.info(
                        "User display name updated",
                        extra={"context": {"user_id": str(user.id)}},
                    )
                return user.id

            user_id = uuid.uuid4()
            now = _now()
            session.add(
                User(
                    id=user_id,
                    phone=phone,
                    name=display_name or phone,
                    user_metadata={},
                    created_at=now,
                    last_active_at=now,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._find_user(session, phone)
                if existing is None:
                    raise
                logger.info(
                    "User created concurrently, using existing row",
                    extra={"context": {"user_id": str(existing.id)}},
                )
                return existing.id

            logger.info("Created user", extra={"context": {"user_id": str(user_id)}})
            return user_id

    async def get_user(self, address: str) -> Optional[UserRecord]:
        async with self._session() as session:
            user = await self._find_user(session, normalize_address(address))
            return _to_user_record(user) if user else None

    async def get_or_create_thread(self, external_id: str, kind: str = "individual", service: Optional[str] = None) -> UUID:
        async with self._session() as session:
            thread = await self._find_thread(session, external_id)
            if thread is not None:
                return thread.id

            thread_id = uuid.uuid4()
            session.add(
                Thread(
                    id=thread_id,
                    external_id=external_id,
                    kind=kind,
                    service=service,
                    thread_metadata={},
                    created_at=_now(),
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._find_thread(session, external_id)
                if existing is None:
                    raise
                logger.info(
                    "Thread created concurrently, using existing row",
                    extra={"context": {"external_id": external_id, "thread_id": str(existing.id)}},
                )
                return existing.id

            logger.info(
                "Created thread",
                extra={"context": {"external_id": external_id, "thread_id": str(thread_id), "kind": kind}},
            )
            return thread_id

    async def add_participant(self, thread_id: UUID, user_id: UUID) -> None:
        stmt = (
            insert(Participant)
            .values(id=uuid.uuid4(), thread_id=thread_id, user_id=user_id, joined_at=_now())
            .on_conflict_do_nothing(index_elements=["thread_id", "user_id"])
        )
        async with self._session() as session:
            await session.execute(stmt)
            await session.commit()

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
        now = _now()
        metadata: dict[str, Any] = {}
        if sent_at is not None:
            metadata["sent_at"] = sent_at.isoformat()

        stmt = (
            insert(Message)
            .values(
                id=uuid.uuid4(),
                thread_id=thread_id,
                sender_id=sender_id,
                external_id=external_id,
                role=role,
                message_type=message_type,
                content=content or {},
                text=text,
                message_metadata=metadata,
                created_at=now,
            )
            .on_conflict_do_nothing(index_elements=["thread_id", "external_id"])
            .returning(Message.id)
        )

        async with self._session() as session:
            result = await session.execute(stmt)
            inserted_id = result.scalar_one_or_none()
            if inserted_id is None:
                existing = await session.execute(
                    select(Message.id).where(
                        Message.thread_id == thread_id,
                        Message.external_id == external_id,
                    )
                )
                await session.rollback()
                logger.info(
                    "Duplicate message ignored",
                    extra={"context": {"thread_id": str(thread_id), "external_id": external_id}},
                )
                return StoreResult(message_id=existing.scalar_one(), inserted=False)

            await session.execute(update(Thread).where(Thread.id == thread_id).values(last_message_at=now))
            await session.commit()
            return StoreResult(message_id=inserted_id, inserted=True)

    async def get_thread(self, external_id: str) -> Optional[ThreadSnapshot]:
        async with self._session() as session:
            result = await session.execute(
                select(Thread)
                .where(Thread.external_id == external_id)
                .options(selectinload(Thread.participants).selectinload(Participant.user))
            )
            thread = result.scalar_one_or_none()
            if thread is None:
                return None

            rows = await session.execute(
                select(Message)
                .where(Message.thread_id == thread.id)
                .options(selectinload(Message.sender))
                .order_by(Message.created_at.desc())
                .limit(self.context_window)
            )
            messages = [_to_stored_message(message) for message in reversed(rows.scalars().all())]

            return ThreadSnapshot(
                id=thread.id,
                external_id=thread.external_id,
                kind=thread.kind,
                messages=messages,
                participants=[_to_user_record(p.user) for p in thread.participants if p.user is not None],
                metadata=dict(thread.thread_metadata or {}),
                service=thread.service,
            )

    async def _execute_merge(self, stmt, kind: str, record_id: UUID) -> dict[str, Any]:
        async with self._session() as session:
            result = await session.execute(stmt)
            merged = result.scalar_one_or_none()
            if merged is None:
                await session.rollback()
                raise UnknownRecordError(kind, record_id)
            await session.commit()
            return dict(merged)

    async def update_user_metadata(self, user_id: UUID, partial: dict[str, Any]) -> dict[str, Any]:
        # jsonb || jsonb merges server-side, so concurrent merges never drop keys.
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(user_metadata=User.user_metadata.op("||")(literal(partial, JSONB)))
            .returning(User.user_metadata)
        )
        return await self._execute_merge(stmt, "user", user_id)

    async def merge_user_metadata_section(self, user_id: UUID, section: str, partial: dict[str, Any]) -> dict[str, Any]:
        # metadata = jsonb_set(metadata, {section}, metadata->section || partial), evaluated per row.
        merged_section = func.coalesce(User.user_metadata[section], literal({}, JSONB)).op("||", return_type=JSONB)(
            literal(partial, JSONB)
        )
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(
                user_metadata=func.jsonb_set(
                    User.user_metadata,
                    literal([section], ARRAY(Text)),
                    merged_section,
                    True,
                    type_=JSONB,
                )
            )
            .returning(User.user_metadata)
        )
        return await self._execute_merge(stmt, "user", user_id)

    async def update_thread_metadata(self, thread_id: UUID, partial: dict[str, Any]) -> dict[str, Any]:
        stmt = (
            update(Thread)
            .where(Thread.id == thread_id)
            .values(thread_metadata=Thread.thread_metadata.op("||")(literal(partial, JSONB)))
            .returning(Thread.thread_metadata)
        )
        return await self._execute_merge(stmt, "thread", thread_id)
