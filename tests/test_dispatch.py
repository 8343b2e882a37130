from unittest.mock import AsyncMock

import pytest

from threadline.schemas.webhook import ThreadKind
from threadline.services.a1base_service import ProviderConfigurationError
from threadline.services.dispatch_service import Dispatcher, split_message
from threadline.services.result import Result
from threadline.services.sms_service import SMS_TOO_LONG_FALLBACK

from tests.fakes import RecordingProvider


class TestSplitMessage:
    def test_drops_empty_parts(self):
        assert split_message("Hi!\n\nHow are you?\n  \nBye") == ["Hi!", "How are you?", "Bye"]

    def test_single_line(self):
        assert split_message("just one") == ["just one"]

    def test_blank_text(self):
        assert split_message("\n \n") == []


class TestDispatcher:
    @pytest.mark.asyncio
    async def test_sends_whole_text_when_not_splitting(self):
        provider = RecordingProvider()
        dispatcher = Dispatcher(provider)

        outcome = await dispatcher.send("whatsapp", ThreadKind.INDIVIDUAL, "+15550100", "a\nb")

        assert provider.sent == [("individual", "+15550100", "a\nb", "whatsapp")]
        assert outcome.ok is True

    @pytest.mark.asyncio
    async def test_split_sends_parts_in_order_with_delay_between(self):
        provider = RecordingProvider()
        sleep = AsyncMock()
        dispatcher = Dispatcher(provider, split_paragraphs=True, split_delay_seconds=0.5, sleep=sleep)

        outcome = await dispatcher.send("whatsapp", ThreadKind.INDIVIDUAL, "+15550100", "one\n\ntwo\nthree")

        assert provider.contents == ["one", "two", "three"]
        assert outcome.sent == ["one", "two", "three"]
        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.5)

    @pytest.mark.asyncio
    async def test_group_reply_goes_to_thread(self):
        provider = RecordingProvider()
        await Dispatcher(provider).send("whatsapp", ThreadKind.GROUP, "group-1", "hi all")
        assert provider.sent == [("group", "group-1", "hi all", "whatsapp")]

    @pytest.mark.asyncio
    async def test_failed_part_does_not_stop_the_rest(self):
        provider = RecordingProvider(results=[Result.failure("rejected", code="provider_rejected"), Result.success({})])
        dispatcher = Dispatcher(provider, split_paragraphs=True, sleep=AsyncMock())

        outcome = await dispatcher.send("whatsapp", ThreadKind.INDIVIDUAL, "+15550100", "one\ntwo")

        assert provider.contents == ["one", "two"]
        assert outcome.sent == ["two"]
        assert len(outcome.failures) == 1
        assert outcome.ok is False

    @pytest.mark.parametrize("channel", ["web-ui", "__skip_send"])
    @pytest.mark.asyncio
    async def test_no_send_channels_skip_provider(self, channel):
        provider = RecordingProvider(configured=False)

        outcome = await Dispatcher(provider).send(channel, ThreadKind.INDIVIDUAL, "+15550100", "hi")

        assert outcome.skipped is True
        assert provider.sent == []

    @pytest.mark.asyncio
    async def test_missing_configuration_raises_before_send(self):
        provider = RecordingProvider(configured=False)
        with pytest.raises(ProviderConfigurationError):
            await Dispatcher(provider).send("whatsapp", ThreadKind.INDIVIDUAL, "+15550100", "hi")
        assert provider.sent == []


class TestSmsDispatch:
    @pytest.mark.asyncio
    async def test_sms_is_sanitized_and_not_split(self):
        provider = RecordingProvider()
        dispatcher = Dispatcher(provider, split_paragraphs=True, sleep=AsyncMock())

        outcome = await dispatcher.send("sms", ThreadKind.INDIVIDUAL, "+15550100", "It’s done\nthanks")

        assert provider.contents == ["It's done\nthanks"]
        assert outcome.ok is True

    @pytest.mark.asyncio
    async def test_too_long_sms_sends_fallback(self):
        provider = RecordingProvider()
        dispatcher = Dispatcher(provider, sms_max_length=20)

        outcome = await dispatcher.send("sms", ThreadKind.INDIVIDUAL, "+15550100", "x" * 21)

        assert provider.contents == [SMS_TOO_LONG_FALLBACK]
        assert outcome.fallback_used is True
        assert outcome.failures[0].error_code == "SMS_TOO_LONG"
        assert outcome.failures[0].context == {"length": 21, "max_length": 20}
