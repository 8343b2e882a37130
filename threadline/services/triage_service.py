import re
from enum import Enum
from typing import List, Optional

from threadline.logging_config import get_logger
from threadline.services.extraction_service import parse_json_object
from threadline.services.llm import LLMError, LLMProvider
from threadline.services.message_service import transcript_as_text
from threadline.services.onboarding_service import is_trigger_phrase

logger = get_logger("triage_service")


class Route(str, Enum):
    ONBOARDING = "onboarding"
    DEFAULT_REPLY = "default_reply"
    EMAIL_ACTION = "email_action"  # legacy, served by the default reply workflow
    IDENTITY_CARD = "identity_card"  # legacy, served by the default reply workflow


ROUTE_LABELS = {
    "onboarding": Route.ONBOARDING,
    "onboardingflow": Route.ONBOARDING,
    "defaultreply": Route.DEFAULT_REPLY,
    "simpleresponse": Route.DEFAULT_REPLY,
    "default": Route.DEFAULT_REPLY,
    "emailaction": Route.EMAIL_ACTION,
    "sendemail": Route.EMAIL_ACTION,
    "email": Route.EMAIL_ACTION,
    "identitycard": Route.IDENTITY_CARD,
    "identity": Route.IDENTITY_CARD,
}

CLASSIFY_PROMPT = """Classify the intent of the user's latest message in this conversation.
Return ONLY one label from this list:
- default_reply: a normal message, question or request the assistant should just answer
- onboarding: the user wants to (re)introduce themselves or redo their profile setup
- email_action: the user explicitly asks the assistant to write or send an email
- identity_card: the user asks who the assistant is or for its contact card

Conversation:
{transcript}

Latest message: {message}

Label:"""

CLASSIFY_TRANSCRIPT_TURNS = 6


def _label_key(value: str) -> str:
    return re.sub(r"[^a-z]", "", value.lower())


def parse_route_label(output: Optional[str]) -> Route:
    """Map raw classifier output to a route; anything unrecognized is a default reply."""
    if not output:
        return Route.DEFAULT_REPLY

    parsed = parse_json_object(output)
    for key in ("route", "label", "responseType", "response_type", "intent"):
        value = parsed.get(key)
        if isinstance(value, str) and _label_key(value) in ROUTE_LABELS:
            return ROUTE_LABELS[_label_key(value)]

    whole = _label_key(output)
    if whole in ROUTE_LABELS:
        return ROUTE_LABELS[whole]
    for token in re.split(r"[\s,.;:]+", output):
        key = _label_key(token)
        if key in ROUTE_LABELS:
            return ROUTE_LABELS[key]
    return Route.DEFAULT_REPLY


class TriageRouter:
    """Picks exactly one workflow for an inbound message."""

    def __init__(self, llm: LLMProvider, model: Optional[str] = None):
        self.llm = llm
        self.model = model

    async def route(self, *, text: str, transcript: List[dict], onboarding_pending: bool = False) -> Route:
        # Both short-circuits are deterministic and skip the completion call.
        if is_trigger_phrase(text):
            return Route.ONBOARDING
        if onboarding_pending:
            return Route.ONBOARDING
        return await self.classify(text, transcript)

    async def classify(self, text: str, transcript: List[dict]) -> Route:
        prompt = CLASSIFY_PROMPT.format(
            transcript=transcript_as_text(transcript[-CLASSIFY_TRANSCRIPT_TURNS:]),
            message=text,
        )
        try:
            response = await self.llm.generate(
                [{"role": "user", "content": prompt}],
                model=self.model,
                temperature=0.0,
                max_tokens=20,
            )
        except LLMError as exc:
            logger.warning(f"Triage classification failed, using default reply: {exc}")
            return Route.DEFAULT_REPLY

        route = parse_route_label(response.content)
        logger.info(
            "Triage classified message",
            extra={"context": {"route": route.value, "raw": (response.content or "")[:50]}},
        )
        return route
