import uuid
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, OperationalError

from threadline.services.repository import RepositoryError, SqlConversationRepository, UnknownRecordError


def _result(value=None, *, scalar=None):
    result = Mock()
    result.scalar_one_or_none.return_value = value
    result.scalar_one.return_value = scalar if scalar is not None else value
    return result


def _session_factory(*results):
    session = MagicMock()
    session.execute = AsyncMock(side_effect=list(results))
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.add = Mock()

    factory = MagicMock()
    factory.return_value.__aenter__.return_value = session
    factory.return_value.__aexit__.return_value = False
    return factory, session


class TestGetOrCreateThread:
    @pytest.mark.asyncio
    async def test_returns_existing_thread(self):
        existing = Mock(id=uuid.uuid4())
        factory, session = _session_factory(_result(existing))
        repository = SqlConversationRepository(factory)

        thread_id = await repository.get_or_create_thread("t-1")

        assert thread_id == existing.id
        session.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_creates_missing_thread(self):
        factory, session = _session_factory(_result(None))
        repository = SqlConversationRepository(factory)

        thread_id = await repository.get_or_create_thread("t-1", "group", "whatsapp")

        created = session.add.call_args[0][0]
        assert created.id == thread_id
        assert created.external_id == "t-1"
        assert created.kind == "group"
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lost_creation_race_returns_winner(self):
        winner = Mock(id=uuid.uuid4())
        factory, session = _session_factory(_result(None), _result(winner))
        session.commit.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))
        repository = SqlConversationRepository(factory)

        thread_id = await repository.get_or_create_thread("t-1")

        assert thread_id == winner.id
        session.rollback.assert_awaited_once()


class TestGetOrCreateUser:
    @pytest.mark.asyncio
    async def test_lost_creation_race_returns_winner(self):
        winner = Mock(id=uuid.uuid4())
        factory, session = _session_factory(_result(None), _result(winner))
        session.commit.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))
        repository = SqlConversationRepository(factory)

        user_id = await repository.get_or_create_user("+15550100", "Sam")

        assert user_id == winner.id

    @pytest.mark.asyncio
    async def test_display_name_change_is_saved(self):
        existing = Mock(id=uuid.uuid4())
        existing.name = "Sam"
        factory, session = _session_factory(_result(existing))
        repository = SqlConversationRepository(factory)

        await repository.get_or_create_user("+15550100", "Samantha")

        assert existing.name == "Samantha"
        session.commit.assert_awaited_once()


class TestStoreMessage:
    @pytest.mark.asyncio
    async def test_new_message_is_committed(self):
        message_id = uuid.uuid4()
        factory, session = _session_factory(_result(message_id), _result(None))
        repository = SqlConversationRepository(factory)

        stored = await repository.store_message(uuid.uuid4(), uuid.uuid4(), "m-1", text="hi")

        assert stored.inserted is True
        assert stored.message_id == message_id
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_duplicate_message_returns_existing_id(self):
        existing_id = uuid.uuid4()
        factory, session = _session_factory(_result(None), _result(scalar=existing_id))
        repository = SqlConversationRepository(factory)

        stored = await repository.store_message(uuid.uuid4(), uuid.uuid4(), "m-1", text="hi")

        assert stored.inserted is False
        assert stored.message_id == existing_id
        session.commit.assert_not_awaited()
        session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_store_failure_becomes_repository_error(self):
        factory, session = _session_factory()
        session.execute.side_effect = OperationalError("INSERT", {}, Exception("connection refused"))
        repository = SqlConversationRepository(factory)

        with pytest.raises(RepositoryError):
            await repository.store_message(uuid.uuid4(), None, "m-1", text="hi")


class TestUpdateUserMetadata:
    @pytest.mark.asyncio
    async def test_returns_merged_metadata(self):
        factory, session = _session_factory(_result({"name": "Sam", "email": "sam@example.com"}))
        repository = SqlConversationRepository(factory)

        merged = await repository.update_user_metadata(uuid.uuid4(), {"email": "sam@example.com"})

        assert merged == {"name": "Sam", "email": "sam@example.com"}
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_user_raises(self):
        factory, session = _session_factory(_result(None))
        repository = SqlConversationRepository(factory)

        with pytest.raises(UnknownRecordError):
            await repository.update_user_metadata(uuid.uuid4(), {"a": 1})


class TestMergeUserMetadataSection:
    @pytest.mark.asyncio
    async def test_returns_merged_metadata(self):
        merged_row = {"name": "Sam", "memory": {"location": "Paris", "occupation": "dentist"}}
        factory, session = _session_factory(_result(merged_row))
        repository = SqlConversationRepository(factory)

        merged = await repository.merge_user_metadata_section(uuid.uuid4(), "memory", {"occupation": "dentist"})

        assert merged == merged_row
        statement = str(session.execute.call_args[0][0].compile(dialect=postgresql.dialect()))
        assert "jsonb_set" in statement
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_user_raises(self):
        factory, session = _session_factory(_result(None))
        repository = SqlConversationRepository(factory)

        with pytest.raises(UnknownRecordError):
            await repository.merge_user_metadata_section(uuid.uuid4(), "memory", {"a": 1})
        session.rollback.assert_awaited_once()


class TestUpdateThreadMetadata:
    @pytest.mark.asyncio
    async def test_returns_merged_metadata(self):
        factory, session = _session_factory(_result({"onboarding": {"completed": True}}))
        repository = SqlConversationRepository(factory)

        merged = await repository.update_thread_metadata(uuid.uuid4(), {"onboarding": {"completed": True}})

        assert merged == {"onboarding": {"completed": True}}
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_thread_raises(self):
        factory, session = _session_factory(_result(None))
        repository = SqlConversationRepository(factory)

        with pytest.raises(UnknownRecordError) as exc_info:
            await repository.update_thread_metadata(uuid.uuid4(), {"a": 1})
        assert exc_info.value.kind == "thread"
