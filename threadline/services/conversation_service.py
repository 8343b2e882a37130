from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from uuid import UUID

from threadline.logging_config import bind_logger
from threadline.schemas.webhook import NormalizedMessage, ThreadKind
from threadline.services.a1base_service import ProviderConfigurationError
from threadline.services.background import BackgroundTasks
from threadline.services.dedup_service import RedisDedupGuard
from threadline.services.dispatch_service import DispatchOutcome, Dispatcher, is_no_send_channel
from threadline.services.group_onboarding_service import GroupOnboardingManager
from threadline.services.memory_service import MemoryExtractor
from threadline.services.message_service import build_transcript, is_agent_mentioned
from threadline.services.onboarding_service import OnboardingManager, is_trigger_phrase
from threadline.services.onboarding_state import OnboardingProgress, OnboardingState
from threadline.services.reply_service import FALLBACK_APOLOGY, ReplyGenerator
from threadline.services.repository import (
    ConversationRepository,
    RepositoryError,
    ThreadSnapshot,
    normalize_address,
)
from threadline.services.triage_service import Route, TriageRouter

STATUS_REPLIED = "replied"
STATUS_DUPLICATE = "duplicate"
STATUS_FROM_AGENT = "from_agent"
STATUS_NOT_ADDRESSED = "not_addressed"
STATUS_MISSING_SENDER = "missing_sender"

# Providers report the agent's own group messages with this sender.
GROUP_AGENT_PLACEHOLDER = "+"


@dataclass
class HandlingResult:
    status: str
    thread_id: str
    route: Optional[Route] = None
    replies: List[str] = field(default_factory=list)
    dispatch: Optional[DispatchOutcome] = None


class ConversationService:
    """One inbound delivery in, at most one reply out.

    Flow: dedup, persist (thread, user, participant, message), group
    onboarding or triage, user onboarding or default reply, spawn memory
    extraction, persist the agent's reply, dispatch. Failures while
    deciding the reply become a short apology on the same channel; only
    provider misconfiguration escapes.
    """

    def __init__(
        self,
        *,
        repository: ConversationRepository,
        triage: TriageRouter,
        onboarding: OnboardingManager,
        replies: ReplyGenerator,
        dispatcher: Dispatcher,
        background: BackgroundTasks,
        memory: Optional[MemoryExtractor] = None,
        dedup: Optional[RedisDedupGuard] = None,
        agent_number: str = "",
        agent_name: str = "Assistant",
        group_respond_only_when_mentioned: bool = False,
        group_onboarding: Optional[GroupOnboardingManager] = None,
    ):
        self.repository = repository
        self.triage = triage
        self.onboarding = onboarding
        self.replies = replies
        self.dispatcher = dispatcher
        self.background = background
        self.memory = memory
        self.dedup = dedup
        self.agent_number = agent_number
        self.agent_name = agent_name
        self.group_respond_only_when_mentioned = group_respond_only_when_mentioned
        self.group_onboarding = group_onboarding

    def _is_from_agent(self, message: NormalizedMessage, sender: str) -> bool:
        if message.is_from_agent:
            return True
        agent = normalize_address(self.agent_number)
        return bool(agent) and normalize_address(sender) == agent

    async def handle(self, message: NormalizedMessage) -> HandlingResult:
        log = bind_logger(
            "conversation",
            thread_id=message.thread_id,
            message_id=message.message_id,
            service=message.service,
        )

        sender = message.sender_number
        if message.is_group and sender.strip() == GROUP_AGENT_PLACEHOLDER and self.agent_number:
            sender = self.agent_number
        from_agent = self._is_from_agent(message, sender)
        if not normalize_address(sender):
            log.warning("Inbound message without sender address dropped")
            return HandlingResult(status=STATUS_MISSING_SENDER, thread_id=message.thread_id)

        if self.dedup and await self.dedup.seen_before(message.thread_id, message.message_id):
            return HandlingResult(status=STATUS_DUPLICATE, thread_id=message.thread_id)

        existing = await self.repository.get_thread(message.thread_id)
        is_new_thread = existing is None

        thread_id = await self.repository.get_or_create_thread(
            message.thread_id, message.thread_kind.value, message.service
        )
        user_id = await self.repository.get_or_create_user(sender, message.sender_name or None)
        await self.repository.add_participant(thread_id, user_id)
        stored = await self.repository.store_message(
            thread_id,
            user_id,
            message.message_id,
            text=message.text,
            message_type=message.message_type,
            role="assistant" if from_agent else "user",
            content=message.content,
            sent_at=message.timestamp,
        )
        if not stored.inserted:
            log.info("Redelivered message ignored")
            return HandlingResult(status=STATUS_DUPLICATE, thread_id=message.thread_id)
        if from_agent:
            log.info("Agent-authored message recorded, no reply")
            return HandlingResult(status=STATUS_FROM_AGENT, thread_id=message.thread_id)

        if message.is_group and self.group_respond_only_when_mentioned:
            addressed = is_trigger_phrase(message.text) or is_agent_mentioned(
                message.text, self.agent_name, self.agent_number
            )
            if not addressed and not self._group_onboarding_active(existing):
                log.info("Agent not mentioned in group, no reply")
                return HandlingResult(status=STATUS_NOT_ADDRESSED, thread_id=message.thread_id)

        snapshot = await self.repository.get_thread(message.thread_id)
        if snapshot is not None:
            transcript = build_transcript(snapshot.messages, is_group=message.is_group)
        else:
            transcript = [{"role": "user", "content": message.text}]

        user = await self.repository.get_user(sender)
        user_metadata = dict(user.metadata) if user else {}
        degraded = any(record is not None and record.degraded for record in (existing, snapshot, user))
        if degraded:
            log.warning("Serving from the in-memory buffer, onboarding writes suspended")

        route: Optional[Route] = None
        try:
            route, reply = await self._decide_reply(
                message=message,
                thread_id=thread_id,
                user_id=user_id,
                user_metadata=user_metadata,
                snapshot=snapshot,
                is_new_thread=is_new_thread,
                transcript=transcript,
                degraded=degraded,
            )
        except Exception:
            log.exception("Reply generation failed, sending apology")
            route = route or Route.DEFAULT_REPLY
            reply = FALLBACK_APOLOGY

        if self.memory is not None:
            self.background.spawn(
                self.memory.update_from_message(
                    user_id=user_id,
                    text=message.text,
                    existing=user_metadata.get("memory") if isinstance(user_metadata.get("memory"), dict) else None,
                ),
                name=f"memory:{message.message_id}",
                context={"thread_id": message.thread_id, "message_id": message.message_id},
            )

        outcome = await self._send_reply(message, thread_id, sender, reply, log)
        log.info(
            "Inbound message handled",
            context={"route": route.value, "sent_parts": len(outcome.sent), "failures": len(outcome.failures)},
        )
        return HandlingResult(
            status=STATUS_REPLIED,
            thread_id=message.thread_id,
            route=route,
            replies=[reply],
            dispatch=outcome,
        )

    def _group_onboarding_active(self, snapshot: Optional[ThreadSnapshot]) -> bool:
        if self.group_onboarding is None or snapshot is None:
            return False
        return self.group_onboarding.in_progress(snapshot.metadata)

    def _can_onboard(self, message: NormalizedMessage, user_metadata: dict) -> bool:
        if message.is_group or not self.onboarding.enabled:
            return False
        if is_trigger_phrase(message.text):
            return True
        return OnboardingProgress.from_metadata(user_metadata).state != OnboardingState.COMPLETE

    async def _decide_reply(
        self,
        *,
        message: NormalizedMessage,
        thread_id: UUID,
        user_id: UUID,
        user_metadata: dict,
        snapshot: Optional[ThreadSnapshot],
        is_new_thread: bool,
        transcript: List[dict],
        degraded: bool = False,
    ) -> Tuple[Route, str]:
        # A degraded read may be a stale copy; onboarding state is only written from durable reads.
        thread_metadata = snapshot.metadata if snapshot is not None else {}
        if (
            message.is_group
            and not degraded
            and self.group_onboarding is not None
            and self.group_onboarding.needs_onboarding(thread_metadata=thread_metadata, text=message.text)
        ):
            group_outcome = await self.group_onboarding.handle(
                thread_id=thread_id,
                thread_metadata=thread_metadata,
                text=message.text,
            )
            if group_outcome.reply:
                return Route.ONBOARDING, group_outcome.reply

        pending = not message.is_group and not degraded and self.onboarding.needs_onboarding(
            is_new_thread=is_new_thread,
            snapshot=snapshot,
            user_metadata=user_metadata,
            text=message.text,
        )
        route = await self.triage.route(text=message.text, transcript=transcript, onboarding_pending=pending)

        if route == Route.ONBOARDING and not degraded and self._can_onboard(message, user_metadata):
            outcome = await self.onboarding.handle(
                user_id=user_id,
                user_metadata=user_metadata,
                transcript=transcript,
                text=message.text,
            )
            return route, outcome.reply

        if route == Route.ONBOARDING:
            route = Route.DEFAULT_REPLY
        reply = await self.replies.generate(
            transcript=transcript,
            service=message.service,
            user_metadata=user_metadata,
        )
        return route, reply

    async def _send_reply(self, message: NormalizedMessage, thread_id: UUID, sender: str, reply: str, log) -> DispatchOutcome:
        if not is_no_send_channel(message.service):
            await self._record_agent_message(thread_id, reply, log)

        recipient = message.thread_id if message.thread_kind == ThreadKind.GROUP else sender
        try:
            return await self.dispatcher.send(message.service, message.thread_kind, recipient, reply)
        except ProviderConfigurationError:
            log.error("Reply not sent: messaging provider is not configured")
            raise

    async def _record_agent_message(self, thread_id: UUID, reply: str, log) -> None:
        try:
            agent_id = None
            if self.agent_number:
                agent_id = await self.repository.get_or_create_user(self.agent_number, self.agent_name)
            await self.repository.store_message(
                thread_id,
                agent_id,
                None,
                text=reply,
                role="assistant",
            )
        except RepositoryError as exc:
            log.warning(f"Could not record agent reply: {exc}")
