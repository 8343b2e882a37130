from dataclasses import dataclass
from typing import List, Optional
from uuid import UUID

from threadline.logging_config import get_logger
from threadline.schemas.onboarding import OnboardingField, OnboardingFlowConfig
from threadline.services.extraction_service import INVALID, FieldExtractor
from threadline.services.llm import LLMError, LLMProvider
from threadline.services.onboarding_state import OnboardingProgress, OnboardingState
from threadline.services.repository import ConversationRepository, ThreadSnapshot

logger = get_logger("onboarding_service")

TRIGGER_PHRASE = "start onboarding"

UNKNOWN_FIELD_MESSAGE = (
    "I couldn't process your information properly, but let's continue. How can I help you today?"
)

ASK_GUIDANCE = {
    "email": "Ask for their email address directly. Mention it will be used for communication.",
    "name": "Ask for their full name directly. Be warm but direct.",
    "business_type": "Ask what industry or business type they work in. Provide 2-3 brief examples if appropriate.",
    "goals": "Ask what specific goals they want to achieve with the AI assistant. Be direct.",
}
RETRY_GUIDANCE = {
    "email": (
        "Explain that a valid email address is needed (with @ and domain). "
        'Provide a simple example like "you@example.com".'
    ),
    "name": "Ask clearly for their name. Specify you need at least their first name.",
    "business_type": (
        'Ask specifically what industry they work in. Provide 2-3 examples like "Technology, Healthcare, Education".'
    ),
    "goals": "Ask directly what they want to accomplish with the AI assistant. Suggest they keep it brief.",
}


def is_trigger_phrase(text: Optional[str]) -> bool:
    return (text or "").strip().lower() == TRIGGER_PHRASE


def fallback_question(field: OnboardingField, *, retry: bool = False) -> str:
    label = field.label.lower()
    if label.startswith("your "):
        label = label[len("your "):]
    question = f"Could you please share your {label}?"
    if retry:
        return f"Sorry, I didn't quite catch that. {question}"
    return question


def ensure_question(text: str, field: OnboardingField, *, retry: bool = False) -> str:
    """Keep a generated prompt only if it clearly asks for `field`; otherwise append an explicit question."""
    text = (text or "").strip()
    if not text:
        return fallback_question(field, retry=retry)
    lowered = text.lower()
    if "?" in text and any(keyword in lowered for keyword in field.question_keywords()):
        return text
    return f"{text}\n\n{fallback_question(field)}"


def _collected_summary(config: OnboardingFlowConfig, progress: OnboardingProgress) -> str:
    lines = []
    for field_id, value in progress.collected_fields.items():
        field = config.get_field(field_id)
        lines.append(f"- {field.label if field else field_id}: {value}")
    return "\n".join(lines)


def build_question_prompt(
    config: OnboardingFlowConfig,
    field: OnboardingField,
    progress: OnboardingProgress,
    *,
    retry: bool = False,
) -> str:
    requirement = "required" if field.required else "optional"
    if retry:
        guidance = RETRY_GUIDANCE.get(field.id, "Ask more directly for the specific information needed.")
        return f"""You are conducting a focused onboarding conversation. Be direct and helpful.

{config.system_prompt}

Previous question: {field.description}
This is required information, but I couldn't extract a clear answer from their response.

Guidance: {guidance}

Instructions:
1. Briefly acknowledge their response (1 sentence)
2. Ask for the specific information again more directly, as a question
3. Be clear about what format or type of answer you need
4. Keep your entire response under 2 sentences"""

    guidance = ASK_GUIDANCE.get(field.id, "Ask directly for the specific information needed.")
    summary = _collected_summary(config, progress)
    if summary:
        context = f"Information collected so far:\n{summary}"
        opening = "Acknowledge the previous answer very briefly (half a sentence)"
    else:
        context = "This is the first question in the onboarding process."
        opening = "Start with a brief welcome (1 sentence)"
    return f"""{config.system_prompt}

You're conducting a focused onboarding process to collect specific information.

{context}

Current question: {field.description} ({field.label})
This is {requirement} information.

Guidance: {guidance}

Instructions:
1. {opening}
2. Ask for the current information directly and clearly, as a question
3. Do not ask about anything else
4. Keep your entire response under 2 sentences"""


@dataclass
class OnboardingOutcome:
    reply: str
    progress: OnboardingProgress
    retried: bool = False

    @property
    def completed(self) -> bool:
        return self.progress.state == OnboardingState.COMPLETE


class OnboardingManager:
    """Walks a user through the configured fields, one question per inbound message.

    Progress lives in user metadata and is recomputed from it on every call,
    so a field that was already collected is never asked again, even after a
    restart.
    """

    def __init__(
        self,
        repository: ConversationRepository,
        extractor: FieldExtractor,
        llm: LLMProvider,
        config: OnboardingFlowConfig,
        model: Optional[str] = None,
    ):
        self.repository = repository
        self.extractor = extractor
        self.llm = llm
        self.config = config
        self.model = model

    @property
    def enabled(self) -> bool:
        return self.config.enabled and bool(self.config.fields)

    def needs_onboarding(
        self,
        *,
        is_new_thread: bool,
        snapshot: Optional[ThreadSnapshot],
        user_metadata: Optional[dict],
        text: str,
    ) -> bool:
        if not self.enabled:
            return False
        if is_trigger_phrase(text):
            return True

        progress = OnboardingProgress.from_metadata(user_metadata)
        if progress.state == OnboardingState.COMPLETE:
            return False
        if progress.state == OnboardingState.COLLECTING:
            return True
        if is_new_thread or snapshot is None:
            return True
        return not snapshot.has_assistant_message()

    async def handle(self, *, user_id: UUID, user_metadata: Optional[dict], transcript: List[dict], text: str) -> OnboardingOutcome:
        progress = OnboardingProgress.from_metadata(user_metadata)

        if is_trigger_phrase(text):
            logger.info("Onboarding restarted by trigger phrase", extra={"context": {"user_id": str(user_id)}})
            progress.reset()
            return await self._start(user_id, progress, transcript, prefill=False)

        if progress.state == OnboardingState.NOT_STARTED:
            return await self._start(user_id, progress, transcript, prefill=True)

        if progress.state == OnboardingState.COMPLETE:
            # Callers check needs_onboarding first; a completed user never re-enters collection here.
            return OnboardingOutcome(reply="", progress=progress)

        return await self._collect(user_id, progress, transcript)

    async def reset(self, user_id: UUID, user_metadata: Optional[dict] = None) -> OnboardingProgress:
        progress = OnboardingProgress.from_metadata(user_metadata).reset()
        await self._persist(user_id, progress)
        logger.info("Onboarding reset", extra={"context": {"user_id": str(user_id)}})
        return progress

    async def _start(self, user_id: UUID, progress: OnboardingProgress, transcript: List[dict], *, prefill: bool) -> OnboardingOutcome:
        if prefill and transcript:
            volunteered = await self.extractor.extract_all(transcript, self.config.fields)
            if volunteered:
                logger.info(
                    "Prefilled onboarding fields from conversation",
                    extra={"context": {"user_id": str(user_id), "fields": sorted(volunteered)}},
                )
                progress.collected_fields.update(volunteered)

        next_field = self.config.first_missing(progress.collected_fields, progress.skipped_fields)
        if next_field is None:
            return await self._finish(user_id, progress)

        progress.ask(next_field.id)
        await self._persist(user_id, progress)
        reply = await self._generate_question(next_field, progress, transcript)
        return OnboardingOutcome(reply=reply, progress=progress)

    async def _collect(self, user_id: UUID, progress: OnboardingProgress, transcript: List[dict]) -> OnboardingOutcome:
        field = self.config.get_field(progress.current_field_id)
        if field is None:
            logger.warning(
                "Unknown onboarding field, completing onboarding",
                extra={"context": {"user_id": str(user_id), "field_id": progress.current_field_id}},
            )
            progress.complete()
            await self._persist(user_id, progress)
            return OnboardingOutcome(reply=UNKNOWN_FIELD_MESSAGE, progress=progress)

        value = await self.extractor.extract(transcript, field)
        if value == INVALID:
            if field.required:
                logger.info(
                    "Required field not extracted, asking again",
                    extra={"context": {"user_id": str(user_id), "field_id": field.id}},
                )
                reply = await self._generate_question(field, progress, transcript, retry=True)
                return OnboardingOutcome(reply=reply, progress=progress, retried=True)
            progress.skipped_fields.append(field.id)
            logger.info(
                "Optional field skipped",
                extra={"context": {"user_id": str(user_id), "field_id": field.id}},
            )
        else:
            progress.collected_fields[field.id] = value

        next_field = self.config.first_missing(progress.collected_fields, progress.skipped_fields)
        if next_field is None:
            return await self._finish(user_id, progress)

        progress.ask(next_field.id)
        await self._persist(user_id, progress)
        reply = await self._generate_question(next_field, progress, transcript)
        return OnboardingOutcome(reply=reply, progress=progress)

    async def _finish(self, user_id: UUID, progress: OnboardingProgress) -> OnboardingOutcome:
        progress.complete()
        await self._persist(user_id, progress)
        logger.info(
            "Onboarding complete",
            extra={"context": {"user_id": str(user_id), "fields": sorted(progress.collected_fields)}},
        )
        return OnboardingOutcome(reply=self.config.final_message, progress=progress)

    async def _persist(self, user_id: UUID, progress: OnboardingProgress) -> None:
        await self.repository.update_user_metadata(user_id, progress.to_metadata())

    async def _generate_question(
        self,
        field: OnboardingField,
        progress: OnboardingProgress,
        transcript: List[dict],
        *,
        retry: bool = False,
    ) -> str:
        prompt = build_question_prompt(self.config, field, progress, retry=retry)
        try:
            response = await self.llm.generate(
                [*transcript, {"role": "system", "content": prompt}],
                model=self.model,
                temperature=0.5,
                max_tokens=150,
            )
            text = response.content
        except LLMError as exc:
            logger.warning(
                f"Question generation failed, using fallback question: {exc}",
                extra={"context": {"field_id": field.id}},
            )
            text = ""
        return ensure_question(text, field, retry=retry)
