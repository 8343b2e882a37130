import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List

from threadline.logging_config import get_logger
from threadline.schemas.webhook import ThreadKind
from threadline.services.a1base_service import MessagingProvider
from threadline.services.result import Result
from threadline.services.sms_service import SMS_TOO_LONG_FALLBACK, validate_sms

logger = get_logger("dispatch_service")

# The caller renders the text itself (e.g. a web chat UI).
RENDER_ONLY_CHANNEL = "web-ui"
# An outer workflow already delivered this reply.
SKIP_SEND_CHANNEL = "__skip_send"
NO_SEND_CHANNELS = {RENDER_ONLY_CHANNEL, SKIP_SEND_CHANNEL}

SMS_CHANNEL = "sms"


def split_message(text: str) -> List[str]:
    """Newline-separated parts, empty parts dropped."""
    return [part.strip() for part in (text or "").split("\n") if part.strip()]


def is_no_send_channel(channel: str) -> bool:
    return (channel or "").strip().lower() in NO_SEND_CHANNELS


@dataclass
class DispatchOutcome:
    channel: str
    sent: List[str] = field(default_factory=list)
    failures: List[Result] = field(default_factory=list)
    skipped: bool = False
    fallback_used: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures and (self.skipped or bool(self.sent))


class Dispatcher:
    """Turns reply text into provider calls for one channel.

    The dispatcher never persists messages. Missing provider configuration
    raises ProviderConfigurationError; every other send failure is recorded
    on the outcome and the remaining parts are still attempted.
    """

    def __init__(
        self,
        provider: MessagingProvider,
        *,
        split_paragraphs: bool = False,
        split_delay_seconds: float = 0.5,
        sms_max_length: int = 1200,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.split_paragraphs = split_paragraphs
        self.split_delay_seconds = split_delay_seconds
        self.sms_max_length = sms_max_length
        self._sleep = sleep

    async def send(self, channel: str, recipient_kind: ThreadKind, recipient_id: str, text: str) -> DispatchOutcome:
        channel = (channel or "").strip().lower()
        if channel in NO_SEND_CHANNELS:
            logger.debug("Send suppressed for no-send channel", extra={"context": {"channel": channel}})
            return DispatchOutcome(channel=channel, skipped=True)

        self.provider.ensure_configured()

        if channel == SMS_CHANNEL:
            return await self._send_sms(recipient_kind, recipient_id, text)

        outcome = DispatchOutcome(channel=channel)
        parts = split_message(text) if self.split_paragraphs else [text]
        for index, part in enumerate(parts):
            if index > 0:
                await self._sleep(self.split_delay_seconds)
            result = await self._deliver(channel, recipient_kind, recipient_id, part)
            if result.ok:
                outcome.sent.append(part)
                continue
            outcome.failures.append(result)
            logger.error(
                "Message part failed to send",
                extra={"context": {"channel": channel, "part": index + 1, "parts": len(parts), **result.as_log_context()}},
            )
        return outcome

    async def _send_sms(self, recipient_kind: ThreadKind, recipient_id: str, text: str) -> DispatchOutcome:
        outcome = DispatchOutcome(channel=SMS_CHANNEL)
        validation = validate_sms(text, self.sms_max_length)
        if not validation.ok:
            outcome.failures.append(validation)
            outcome.fallback_used = True
            logger.warning(
                "SMS reply rejected before send, sending fallback",
                extra={"context": {"recipient": recipient_id, **validation.as_log_context()}},
            )
            fallback = await self._deliver(SMS_CHANNEL, recipient_kind, recipient_id, SMS_TOO_LONG_FALLBACK)
            if fallback.ok:
                outcome.sent.append(SMS_TOO_LONG_FALLBACK)
            else:
                outcome.failures.append(fallback)
            return outcome

        result = await self._deliver(SMS_CHANNEL, recipient_kind, recipient_id, validation.value)
        if result.ok:
            # Accepted by the provider; delivery is confirmed later by the status webhook.
            outcome.sent.append(validation.value)
        else:
            outcome.failures.append(result)
            logger.error("SMS send failed", extra={"context": result.as_log_context()})
        return outcome

    async def _deliver(self, channel: str, recipient_kind: ThreadKind, recipient_id: str, content: str) -> Result:
        if recipient_kind == ThreadKind.GROUP:
            return await self.provider.send_group(recipient_id, content, channel)
        return await self.provider.send_individual(recipient_id, content, channel)
