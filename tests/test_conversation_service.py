import asyncio
import json

import pytest

from threadline.dependencies import build_components
from threadline.schemas.onboarding import (
    DEFAULT_FINAL_MESSAGE,
    DEFAULT_GROUP_FINAL_MESSAGE,
    DEFAULT_GROUP_INITIAL_MESSAGE,
)
from threadline.schemas.webhook import parse_inbound_message
from threadline.services.a1base_service import ProviderConfigurationError
from threadline.services.conversation_service import (
    STATUS_DUPLICATE,
    STATUS_FROM_AGENT,
    STATUS_NOT_ADDRESSED,
    STATUS_REPLIED,
)
from threadline.services.group_onboarding_service import PROJECTS_PROMPT, PURPOSE_PROMPT
from threadline.services.llm import LLMError
from threadline.services.reply_service import FALLBACK_APOLOGY
from threadline.services.repository import (
    FallbackConversationRepository,
    InMemoryConversationRepository,
    RepositoryError,
)
from threadline.services.sms_service import SMS_TOO_LONG_FALLBACK
from threadline.services.triage_service import Route

from tests.fakes import (
    AGENT_NUMBER,
    EXTRACT,
    EXTRACT_ALL,
    MEMORY,
    QUESTION,
    REPLY,
    TRIAGE,
    FakeLLM,
    RecordingProvider,
    make_payload,
    make_settings,
)

SENDER = "+15551230001"


def _components(llm, provider=None, repository=None, **settings):
    return build_components(
        make_settings(**settings),
        repository or InMemoryConversationRepository(),
        llm=llm,
        provider=provider or RecordingProvider(),
    )


def _message(text="hello", **overrides):
    return parse_inbound_message(make_payload(text, **overrides)).normalize()


def _group_message(text, message_id):
    return _message(text, thread_type="group", thread_id="group-1", message_id=message_id)


class FlakyRepository(InMemoryConversationRepository):
    """Durable-store stand-in whose named reads can be switched to fail."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failing: set[str] = set()

    async def get_user(self, address):
        if "get_user" in self.failing:
            raise RepositoryError("get_user unavailable")
        return await super().get_user(address)

    async def get_thread(self, external_id):
        if "get_thread" in self.failing:
            raise RepositoryError("get_thread unavailable")
        return await super().get_thread(external_id)


class TestOnboardingConversation:
    @pytest.mark.asyncio
    async def test_first_message_on_new_thread_starts_onboarding(self):
        llm = FakeLLM({EXTRACT_ALL: "{}", QUESTION: "Welcome! What's your name?"})
        provider = RecordingProvider()
        components = _components(llm, provider)

        result = await components.conversation.handle(_message("hi"))

        assert result.status == STATUS_REPLIED
        assert result.route == Route.ONBOARDING
        assert provider.sent == [("individual", SENDER, "Welcome! What's your name?", "whatsapp")]
        snapshot = await components.repository.get_thread("thread-1")
        assert [m.role for m in snapshot.messages] == ["user", "assistant"]
        assert snapshot.messages[1].external_id.startswith("agent-")
        assert llm.calls_for(TRIAGE) == []

    @pytest.mark.asyncio
    async def test_full_onboarding_then_default_reply(self):
        llm = FakeLLM(
            {
                TRIAGE: "default_reply",
                EXTRACT_ALL: "{}",
                EXTRACT: ["Sam Lee", "sam@example.com"],
                QUESTION: ["What's your name?", "What's your email?"],
                REPLY: "Happy to help!",
            }
        )
        provider = RecordingProvider()
        components = _components(llm, provider)
        service = components.conversation

        await service.handle(_message("hi", message_id="m-1"))
        await service.handle(_message("Sam Lee", message_id="m-2"))
        await service.handle(_message("sam@example.com", message_id="m-3"))
        last = await service.handle(_message("What can you do?", message_id="m-4"))

        assert provider.contents == ["What's your name?", "What's your email?", DEFAULT_FINAL_MESSAGE, "Happy to help!"]
        assert last.route == Route.DEFAULT_REPLY
        user = await components.repository.get_user(SENDER)
        assert user.metadata["name"] == "Sam Lee"
        assert user.metadata["email"] == "sam@example.com"
        assert user.metadata["onboarding_complete"] is True

    @pytest.mark.asyncio
    async def test_completed_user_is_not_onboarded_again_by_classifier(self, repository):
        user_id = await repository.get_or_create_user(SENDER, "Sam")
        await repository.update_user_metadata(user_id, {"name": "Sam", "onboarding_complete": True})
        llm = FakeLLM({TRIAGE: "onboarding", REPLY: "Hi again, Sam!"})
        provider = RecordingProvider()
        components = _components(llm, provider, repository)

        result = await components.conversation.handle(_message("let me introduce myself"))

        assert result.route == Route.DEFAULT_REPLY
        assert provider.contents == ["Hi again, Sam!"]
        assert llm.calls_for(QUESTION) == []

    @pytest.mark.asyncio
    async def test_trigger_phrase_restarts_completed_onboarding(self, repository):
        user_id = await repository.get_or_create_user(SENDER, "Sam")
        await repository.update_user_metadata(user_id, {"name": "Sam", "onboarding_complete": True})
        llm = FakeLLM({QUESTION: "Let's start over. What's your name?"})
        provider = RecordingProvider()
        components = _components(llm, provider, repository)

        result = await components.conversation.handle(_message("start onboarding"))

        assert result.route == Route.ONBOARDING
        assert provider.contents == ["Let's start over. What's your name?"]
        user = await repository.get_user(SENDER)
        assert user.metadata["onboarding_complete"] is False

    @pytest.mark.asyncio
    async def test_disabled_onboarding_uses_default_reply(self):
        llm = FakeLLM({TRIAGE: "default_reply", REPLY: "Hello!"})
        provider = RecordingProvider()
        components = _components(llm, provider, onboarding_enabled=False)

        result = await components.conversation.handle(_message("hi"))

        assert result.route == Route.DEFAULT_REPLY
        assert provider.contents == ["Hello!"]
        user = await components.repository.get_user(SENDER)
        assert "onboarding" not in user.metadata

    @pytest.mark.asyncio
    async def test_optional_field_declined_mid_flow(self, tmp_path):
        flow_path = tmp_path / "flow.json"
        flow_path.write_text(
            json.dumps(
                {
                    "userFields": [
                        {"id": "name", "label": "Full Name", "required": True, "keywords": ["name"]},
                        {"id": "email", "label": "Email Address", "required": False, "keywords": ["email"]},
                        {"id": "goal", "label": "Main Goal", "required": True},
                    ]
                }
            ),
            encoding="utf-8",
        )
        llm = FakeLLM(
            {
                TRIAGE: "default_reply",
                EXTRACT_ALL: "{}",
                EXTRACT: ["Jordan Lee", "INVALID_RESPONSE", "Grow my bakery"],
                QUESTION: ["Welcome! What's your name?", "Thanks Jordan! What's your email?", "What's your main goal?"],
                REPLY: "Happy to help!",
            }
        )
        provider = RecordingProvider()
        components = _components(llm, provider, onboarding_config_path=str(flow_path))
        service = components.conversation

        await service.handle(_message("Hi", message_id="m-1"))
        await service.handle(_message("Jordan Lee", message_id="m-2"))
        declined = await service.handle(_message("not now", message_id="m-3"))
        await service.handle(_message("Grow my bakery", message_id="m-4"))
        await service.handle(_message("Where do I start?", message_id="m-5"))

        assert declined.replies == ["What's your main goal?"]
        assert provider.contents == [
            "Welcome! What's your name?",
            "Thanks Jordan! What's your email?",
            "What's your main goal?",
            DEFAULT_FINAL_MESSAGE,
            "Happy to help!",
        ]
        assert provider.contents.count(DEFAULT_FINAL_MESSAGE) == 1
        user = await components.repository.get_user(SENDER)
        assert user.metadata["name"] == "Jordan Lee"
        assert user.metadata["goal"] == "Grow my bakery"
        assert "email" not in user.metadata
        assert user.metadata["onboarding"]["skipped_fields"] == ["email"]
        assert user.metadata["onboarding_complete"] is True

    @pytest.mark.asyncio
    async def test_store_outage_never_reonboards_completed_user(self):
        durable = FlakyRepository()
        user_id = await durable.get_or_create_user(SENDER, "Sam")
        await durable.update_user_metadata(
            user_id, {"name": "Sam", "onboarding_complete": True, "onboarding": {"state": "complete"}}
        )
        thread_id = await durable.get_or_create_thread("thread-1")
        await durable.store_message(thread_id, None, "agent-1", text="Welcome back!", role="assistant")
        durable.failing = {"get_user", "get_thread"}
        repository = FallbackConversationRepository(durable, InMemoryConversationRepository())
        llm = FakeLLM({TRIAGE: "onboarding", EXTRACT_ALL: "{}", QUESTION: "What's your name?", REPLY: "Looks sunny!"})
        provider = RecordingProvider()
        components = _components(llm, provider, repository)

        result = await components.conversation.handle(_message("what's the weather", message_id="m-2"))

        assert result.route == Route.DEFAULT_REPLY
        assert provider.contents == ["Looks sunny!"]
        assert llm.calls_for(QUESTION) == []
        durable.failing.clear()
        user = await durable.get_user(SENDER)
        assert user.metadata["onboarding_complete"] is True
        assert user.metadata["onboarding"] == {"state": "complete"}

    @pytest.mark.asyncio
    async def test_metadata_seen_before_outage_keeps_user_complete(self):
        durable = FlakyRepository()
        repository = FallbackConversationRepository(durable, InMemoryConversationRepository())
        user_id = await repository.get_or_create_user(SENDER, "Sam")
        await repository.update_user_metadata(user_id, {"name": "Sam", "onboarding_complete": True})
        durable.failing = {"get_user"}
        llm = FakeLLM({TRIAGE: "default_reply", REPLY: "Hi again, Sam!"})
        provider = RecordingProvider()
        components = _components(llm, provider, repository)

        result = await components.conversation.handle(_message("hello"))

        assert result.route == Route.DEFAULT_REPLY
        assert provider.contents == ["Hi again, Sam!"]
        reply_call = llm.calls_for(REPLY)[0]
        assert "- name: Sam" in reply_call[0]["content"]


class TestDuplicatesAndSelfMessages:
    @pytest.mark.asyncio
    async def test_redelivered_message_gets_one_reply(self):
        llm = FakeLLM({TRIAGE: "default_reply", REPLY: "Hello!"})
        provider = RecordingProvider()
        components = _components(llm, provider, onboarding_enabled=False)

        first = await components.conversation.handle(_message("hi"))
        second = await components.conversation.handle(_message("hi"))

        assert first.status == STATUS_REPLIED
        assert second.status == STATUS_DUPLICATE
        assert len(provider.sent) == 1

    @pytest.mark.asyncio
    async def test_concurrent_redelivery_gets_one_reply(self):
        llm = FakeLLM({TRIAGE: "default_reply", REPLY: "Hello!"})
        provider = RecordingProvider()
        components = _components(llm, provider, onboarding_enabled=False)

        results = await asyncio.gather(*(components.conversation.handle(_message("hi")) for _ in range(5)))

        assert [r.status for r in results].count(STATUS_REPLIED) == 1
        assert len(provider.sent) == 1

    @pytest.mark.asyncio
    async def test_agent_flagged_message_is_stored_not_answered(self):
        llm = FakeLLM({REPLY: "should not be used"})
        provider = RecordingProvider()
        components = _components(llm, provider)

        result = await components.conversation.handle(_message("sent from the app", is_from_agent=True))

        assert result.status == STATUS_FROM_AGENT
        assert provider.sent == []
        assert llm.calls == []
        snapshot = await components.repository.get_thread("thread-1")
        assert [m.role for m in snapshot.messages] == ["assistant"]

    @pytest.mark.asyncio
    async def test_message_from_agent_number_is_not_answered(self):
        provider = RecordingProvider()
        components = _components(FakeLLM(), provider)

        result = await components.conversation.handle(_message("echo", sender_number="1 555 000 0000"))

        assert result.status == STATUS_FROM_AGENT
        assert provider.sent == []

    @pytest.mark.asyncio
    async def test_group_plus_sender_is_the_agent(self):
        provider = RecordingProvider()
        components = _components(FakeLLM(), provider)

        result = await components.conversation.handle(
            _message("posted by agent", thread_type="group", sender_number="+", thread_id="group-1")
        )

        assert result.status == STATUS_FROM_AGENT
        snapshot = await components.repository.get_thread("group-1")
        assert snapshot.messages[0].sender_number == AGENT_NUMBER.lstrip("+")
        assert provider.sent == []


class TestGroupConversation:
    @pytest.mark.asyncio
    async def test_group_skips_user_onboarding_and_replies_to_thread(self):
        llm = FakeLLM({TRIAGE: "onboarding", REPLY: "Hi everyone!"})
        provider = RecordingProvider()
        components = _components(llm, provider)

        result = await components.conversation.handle(
            _message("hello all", thread_type="group", thread_id="group-1")
        )

        assert result.route == Route.DEFAULT_REPLY
        assert provider.sent == [("group", "group-1", "Hi everyone!", "whatsapp")]
        reply_call = llm.calls_for(REPLY)[0]
        assert {"role": "user", "content": "Sam: hello all"} in reply_call
        assert llm.calls_for(QUESTION) == []

    @pytest.mark.asyncio
    async def test_group_onboarding_collects_group_fields(self):
        llm = FakeLLM({TRIAGE: "default_reply", REPLY: "Let's get hiking!"})
        provider = RecordingProvider()
        components = _components(llm, provider, group_onboarding_enabled=True)
        service = components.conversation

        first = await service.handle(_group_message("hello all", "m-1"))
        second = await service.handle(_group_message("We organise weekend hikes", "m-2"))
        third = await service.handle(_group_message("Mapping the coastal trail", "m-3"))
        after = await service.handle(_group_message("what's next?", "m-4"))

        assert first.route == Route.ONBOARDING
        assert first.replies == [f"{DEFAULT_GROUP_INITIAL_MESSAGE}\n\n{PURPOSE_PROMPT}"]
        assert second.replies == [PROJECTS_PROMPT]
        assert third.replies == [DEFAULT_GROUP_FINAL_MESSAGE]
        assert after.route == Route.DEFAULT_REPLY
        assert [item[0] for item in provider.sent] == ["group"] * 4
        assert len(llm.calls_for(TRIAGE)) == 1
        snapshot = await components.repository.get_thread("group-1")
        assert snapshot.metadata["group_info"] == {
            "group_purpose": "We organise weekend hikes",
            "group_projects": "Mapping the coastal trail",
        }
        assert snapshot.metadata["onboarding"]["completed"] is True
        assert snapshot.metadata["onboarding"]["fields_pending"] == []

    @pytest.mark.asyncio
    async def test_group_answers_accepted_without_mention_while_onboarding(self):
        llm = FakeLLM({TRIAGE: "default_reply", REPLY: "You called?"})
        provider = RecordingProvider()
        components = _components(
            llm, provider, group_onboarding_enabled=True, group_respond_only_when_mentioned=True
        )
        service = components.conversation

        await service.handle(_group_message("@Ava hello", "m-1"))
        answered = await service.handle(_group_message("We organise weekend hikes", "m-2"))

        assert answered.status == STATUS_REPLIED
        assert answered.replies == [PROJECTS_PROMPT]

    @pytest.mark.asyncio
    async def test_trigger_phrase_restarts_group_onboarding(self, repository):
        thread_id = await repository.get_or_create_thread("group-1", "group")
        await repository.update_thread_metadata(
            thread_id, {"group_info": {"group_purpose": "Hiking"}, "onboarding": {"completed": True}}
        )
        provider = RecordingProvider()
        components = _components(FakeLLM(), provider, repository, group_onboarding_enabled=True)

        result = await components.conversation.handle(_group_message("start onboarding", "m-1"))

        assert result.replies == [f"{DEFAULT_GROUP_INITIAL_MESSAGE}\n\n{PURPOSE_PROMPT}"]
        snapshot = await repository.get_thread("group-1")
        assert snapshot.metadata["group_info"] == {}
        assert snapshot.metadata["onboarding"]["in_progress"] is True

    @pytest.mark.asyncio
    async def test_mention_required_when_configured(self):
        llm = FakeLLM({TRIAGE: "default_reply", REPLY: "You called?"})
        provider = RecordingProvider()
        components = _components(llm, provider, group_respond_only_when_mentioned=True)
        service = components.conversation

        ignored = await service.handle(
            _message("lunch?", thread_type="group", thread_id="group-1", message_id="m-1")
        )
        answered = await service.handle(
            _message("@Ava what's for lunch?", thread_type="group", thread_id="group-1", message_id="m-2")
        )

        assert ignored.status == STATUS_NOT_ADDRESSED
        assert answered.status == STATUS_REPLIED
        assert provider.contents == ["You called?"]


class TestFailures:
    @pytest.mark.asyncio
    async def test_reply_failure_sends_apology(self):
        llm = FakeLLM({TRIAGE: "default_reply", REPLY: LLMError("timeout")})
        provider = RecordingProvider()
        components = _components(llm, provider, onboarding_enabled=False)

        result = await components.conversation.handle(_message("hi"))

        assert result.replies == [FALLBACK_APOLOGY]
        assert provider.contents == [FALLBACK_APOLOGY]

    @pytest.mark.asyncio
    async def test_missing_provider_configuration_raises(self):
        llm = FakeLLM({TRIAGE: "default_reply", REPLY: "Hello!"})
        components = _components(llm, RecordingProvider(configured=False), onboarding_enabled=False)

        with pytest.raises(ProviderConfigurationError):
            await components.conversation.handle(_message("hi"))

    @pytest.mark.asyncio
    async def test_too_long_sms_reply_sends_fallback(self):
        llm = FakeLLM({TRIAGE: "default_reply", REPLY: "word " * 50})
        provider = RecordingProvider()
        components = _components(llm, provider, onboarding_enabled=False, sms_max_length=40)

        result = await components.conversation.handle(_message("hi", service="sms"))

        assert provider.contents == [SMS_TOO_LONG_FALLBACK]
        assert result.dispatch.fallback_used is True


class TestChannelsAndMemory:
    @pytest.mark.parametrize("service", ["web-ui", "__skip_send"])
    @pytest.mark.asyncio
    async def test_no_send_channel_returns_reply_without_sending(self, service):
        llm = FakeLLM({TRIAGE: "default_reply", REPLY: "Rendered by caller"})
        provider = RecordingProvider(configured=False)
        components = _components(llm, provider, onboarding_enabled=False)

        result = await components.conversation.handle(_message("hi", service=service))

        assert result.replies == ["Rendered by caller"]
        assert result.dispatch.skipped is True
        assert provider.sent == []
        snapshot = await components.repository.get_thread("thread-1")
        assert snapshot.has_assistant_message() is False

    @pytest.mark.asyncio
    async def test_memory_extraction_runs_in_background(self):
        llm = FakeLLM(
            {
                TRIAGE: "default_reply",
                MEMORY: '{"user_memory_updates": [{"id": "location", "new_value": "Lisbon"}]}',
                REPLY: "Lisbon is lovely!",
            }
        )
        components = _components(llm, onboarding_enabled=False, memory_extraction_enabled=True)

        await components.conversation.handle(_message("I just moved to Lisbon"))
        await components.background.drain(timeout=1)

        user = await components.repository.get_user(SENDER)
        assert user.metadata["memory"] == {"location": "Lisbon"}

    @pytest.mark.asyncio
    async def test_memory_failure_does_not_affect_reply(self):
        llm = FakeLLM({TRIAGE: "default_reply", MEMORY: LLMError("down"), REPLY: "Noted!"})
        provider = RecordingProvider()
        components = _components(llm, provider, onboarding_enabled=False, memory_extraction_enabled=True)

        result = await components.conversation.handle(_message("I like jazz"))
        await components.background.drain(timeout=1)

        assert result.status == STATUS_REPLIED
        assert provider.contents == ["Noted!"]
