from typing import List, Optional

from threadline.logging_config import get_logger
from threadline.services.llm import LLMError, LLMProvider
from threadline.services.message_service import channel_prompt_suffix

logger = get_logger("reply_service")

FALLBACK_APOLOGY = "I'm having trouble processing your message right now. Please try again in a moment."

BASE_SYSTEM_PROMPT = (
    "You are {agent_name}, a helpful AI assistant chatting with people over a messaging app. "
    "Answer clearly and briefly, in the language the user writes in."
)

# User metadata keys that are bookkeeping, not facts about the user.
NON_FACT_KEYS = {"onboarding", "onboarding_complete", "memory"}


def describe_user(user_metadata: Optional[dict]) -> str:
    metadata = user_metadata or {}
    facts = [f"- {key}: {value}" for key, value in metadata.items() if key not in NON_FACT_KEYS and value]
    memory = metadata.get("memory")
    if isinstance(memory, dict):
        facts.extend(f"- {key}: {value}" for key, value in memory.items() if value)
    return "\n".join(facts)


class ReplyGenerator:
    """Default reply workflow: system prompt plus recent transcript, one completion."""

    def __init__(
        self,
        llm: LLMProvider,
        *,
        agent_name: str = "Assistant",
        sms_max_length: int = 1200,
        model: Optional[str] = None,
    ):
        self.llm = llm
        self.agent_name = agent_name
        self.sms_max_length = sms_max_length
        self.model = model

    def build_system_prompt(self, service: Optional[str], user_metadata: Optional[dict] = None) -> str:
        prompt = BASE_SYSTEM_PROMPT.format(agent_name=self.agent_name)
        facts = describe_user(user_metadata)
        if facts:
            prompt += f"\n\nWhat you know about this user:\n{facts}"
        return prompt + channel_prompt_suffix(service, self.sms_max_length)

    async def generate(self, *, transcript: List[dict], service: Optional[str], user_metadata: Optional[dict] = None) -> str:
        messages = [{"role": "system", "content": self.build_system_prompt(service, user_metadata)}, *transcript]
        response = await self.llm.generate(messages, model=self.model)
        reply = (response.content or "").strip()
        if not reply:
            raise LLMError("Completion returned an empty reply")
        logger.debug(f"Generated reply: {reply[:100]}")
        return reply
