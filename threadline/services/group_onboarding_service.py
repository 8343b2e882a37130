import re
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from threadline.logging_config import get_logger
from threadline.schemas.onboarding import GroupOnboardingFlowConfig, OnboardingField
from threadline.services.onboarding_service import is_trigger_phrase
from threadline.services.onboarding_state import GroupOnboardingProgress, OnboardingState
from threadline.services.repository import ConversationRepository

logger = get_logger("group_onboarding_service")

PURPOSE_PROMPT = (
    "What's the main purpose or goal of this group? This will help me understand how I can best support you all."
)
TONE_PROMPT = (
    "How direct would you like me to be with the team? Should I be gentle with reminders, or more assertive "
    "to keep things on track?"
)
PROJECTS_PROMPT = (
    "What specific projects or initiatives is this group working on together? This will help me track "
    "progress and provide relevant assistance."
)

_ASK_PREFIX = re.compile(r"^ask\s+(about\s+|what\s+|how\s+|if\s+)?", re.IGNORECASE)
_AI_SHOULD_ASK_PREFIX = re.compile(r"^the\s+ai\s+should\s+ask\s+(about\s+|what\s+|how\s+|if\s+)?", re.IGNORECASE)


def group_field_prompt(field: OnboardingField) -> str:
    """Turn a field's description into the question posted to the group."""
    description = (field.description or field.label).strip()
    lowered = description.lower()

    if field.id == "group_purpose" or "purpose" in lowered or "goal" in lowered:
        return PURPOSE_PROMPT
    if field.id in ("harshness", "key_deadlines") or "harsh" in lowered or "rude" in lowered:
        return TONE_PROMPT
    if field.id == "group_projects" or "project" in lowered or "initiative" in lowered:
        return PROJECTS_PROMPT
    if lowered.startswith("ask"):
        return f"Tell me more about {_ASK_PREFIX.sub('', description).strip()}?"
    if lowered.startswith("the ai should ask"):
        about = _AI_SHOULD_ASK_PREFIX.sub("", description).strip()
        return f"{about[:1].upper()}{about[1:]}?"
    return f"I'd like to know about {lowered}. Could you share some details?"


@dataclass
class GroupOnboardingOutcome:
    reply: str
    progress: GroupOnboardingProgress

    @property
    def completed(self) -> bool:
        return self.progress.state == OnboardingState.COMPLETE


class GroupOnboardingManager:
    """Collects the configured group fields, one answer per inbound group message.

    Whatever the group sends while a field is pending is taken as the answer
    to that field. State and answers live in thread metadata.
    """

    def __init__(self, repository: ConversationRepository, config: GroupOnboardingFlowConfig):
        self.repository = repository
        self.config = config

    @property
    def enabled(self) -> bool:
        return self.config.enabled and bool(self.config.fields)

    def needs_onboarding(self, *, thread_metadata: Optional[dict], text: str) -> bool:
        if not self.enabled:
            return False
        if is_trigger_phrase(text):
            return True
        return GroupOnboardingProgress.from_metadata(thread_metadata).state != OnboardingState.COMPLETE

    def in_progress(self, thread_metadata: Optional[dict]) -> bool:
        if not self.enabled:
            return False
        return GroupOnboardingProgress.from_metadata(thread_metadata).state == OnboardingState.COLLECTING

    async def handle(self, *, thread_id: UUID, thread_metadata: Optional[dict], text: str) -> GroupOnboardingOutcome:
        progress = GroupOnboardingProgress.from_metadata(thread_metadata)

        if is_trigger_phrase(text):
            logger.info("Group onboarding restarted by trigger phrase", extra={"context": {"thread_id": str(thread_id)}})
            progress.reset()
            return await self._start(thread_id, progress)

        if progress.state == OnboardingState.NOT_STARTED:
            return await self._start(thread_id, progress)

        if progress.state == OnboardingState.COMPLETE:
            return GroupOnboardingOutcome(reply="", progress=progress)

        return await self._collect(thread_id, progress, text)

    async def reset(self, thread_id: UUID, thread_metadata: Optional[dict] = None) -> GroupOnboardingProgress:
        progress = GroupOnboardingProgress.from_metadata(thread_metadata).reset()
        await self._persist(thread_id, progress)
        logger.info("Group onboarding reset", extra={"context": {"thread_id": str(thread_id)}})
        return progress

    async def _start(self, thread_id: UUID, progress: GroupOnboardingProgress) -> GroupOnboardingOutcome:
        progress.start(self.config.ordered_field_ids())
        logger.info(
            "Group onboarding started",
            extra={"context": {"thread_id": str(thread_id), "fields": list(progress.fields_pending)}},
        )
        next_field = self._next_field(thread_id, progress)
        if next_field is None:
            outcome = await self._finish(thread_id, progress)
            return GroupOnboardingOutcome(reply=f"{self.config.initial_message}\n\n{outcome.reply}", progress=progress)

        await self._persist(thread_id, progress)
        reply = f"{self.config.initial_message}\n\n{group_field_prompt(next_field)}"
        return GroupOnboardingOutcome(reply=reply, progress=progress)

    async def _collect(self, thread_id: UUID, progress: GroupOnboardingProgress, text: str) -> GroupOnboardingOutcome:
        field = self._next_field(thread_id, progress)
        if field is None:
            return await self._finish(thread_id, progress)

        value = (text or "").strip()
        if not value:
            return GroupOnboardingOutcome(reply=group_field_prompt(field), progress=progress)

        progress.record(field.id, value)
        logger.info(
            "Group onboarding field collected",
            extra={"context": {"thread_id": str(thread_id), "field_id": field.id}},
        )

        next_field = self._next_field(thread_id, progress)
        if next_field is None:
            return await self._finish(thread_id, progress)

        await self._persist(thread_id, progress)
        return GroupOnboardingOutcome(reply=group_field_prompt(next_field), progress=progress)

    def _next_field(self, thread_id: UUID, progress: GroupOnboardingProgress) -> Optional[OnboardingField]:
        while progress.current_field_id is not None:
            field = self.config.get_field(progress.current_field_id)
            if field is not None:
                return field
            logger.warning(
                "Unknown group onboarding field dropped",
                extra={"context": {"thread_id": str(thread_id), "field_id": progress.current_field_id}},
            )
            progress.drop(progress.current_field_id)
        return None

    async def _finish(self, thread_id: UUID, progress: GroupOnboardingProgress) -> GroupOnboardingOutcome:
        progress.complete()
        await self._persist(thread_id, progress)
        logger.info(
            "Group onboarding complete",
            extra={"context": {"thread_id": str(thread_id), "fields": list(progress.fields_collected)}},
        )
        return GroupOnboardingOutcome(reply=self.config.final_message, progress=progress)

    async def _persist(self, thread_id: UUID, progress: GroupOnboardingProgress) -> None:
        await self.repository.update_thread_metadata(thread_id, progress.to_metadata())
