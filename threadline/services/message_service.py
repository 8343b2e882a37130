from typing import Iterable, List, Optional

from threadline.services.repository import StoredMessage

SMS_PROMPT_SUFFIX = """

IMPORTANT SMS LIMITATIONS:
- You are responding via SMS, which has strict limitations.
- Keep your responses under {max_length} characters (ideally under 160 for single SMS).
- Use only basic ASCII characters - avoid emojis, special symbols, or Unicode.
- Be extremely concise while remaining helpful.
- If a detailed response is needed, offer to continue via WhatsApp or another channel."""

WHATSAPP_PROMPT_SUFFIX = """

MESSAGE SERVICE INFO:
- You are responding via WhatsApp.
- You can use rich formatting, emojis, and longer messages."""


def build_transcript(messages: Iterable[StoredMessage], *, is_group: bool = False) -> List[dict]:
    """Stored messages as chat-completion turns, oldest first."""
    transcript = []
    for message in messages:
        text = (message.text or "").strip()
        if not text:
            continue
        role = "assistant" if message.role == "assistant" else "user"
        if is_group and role == "user":
            speaker = message.sender_name or message.sender_number or "Someone"
            text = f"{speaker}: {text}"
        transcript.append({"role": role, "content": text})
    return transcript


def transcript_as_text(transcript: Iterable[dict]) -> str:
    return "\n".join(f"{turn['role']}: {turn['content']}" for turn in transcript)


def channel_prompt_suffix(service: Optional[str], sms_max_length: int = 1200) -> str:
    service = (service or "").lower()
    if service == "sms":
        return SMS_PROMPT_SUFFIX.format(max_length=sms_max_length)
    if service == "whatsapp":
        return WHATSAPP_PROMPT_SUFFIX
    return ""


def is_agent_mentioned(text: str, agent_name: str, agent_number: str) -> bool:
    lowered = (text or "").lower()
    patterns = [f"@{agent_name}".lower(), agent_name.lower()]
    if agent_number:
        patterns.append(agent_number.lstrip("+"))
    return any(pattern and pattern in lowered for pattern in patterns)
