import json
from typing import Any, List, Optional
from uuid import UUID

from threadline.logging_config import get_logger
from threadline.services.extraction_service import parse_json_object
from threadline.services.llm import LLMProvider
from threadline.services.repository import ConversationRepository

logger = get_logger("memory_service")

DEFAULT_MEMORY_FIELDS = [
    {"id": "location", "title": "Location", "description": "Where the user lives or works"},
    {"id": "occupation", "title": "Occupation", "description": "The user's job, role, or business"},
    {"id": "preferences", "title": "Preferences", "description": "How the user likes to be helped or contacted"},
    {"id": "interests", "title": "Interests", "description": "Topics or projects the user cares about"},
]

MEMORY_SYSTEM_PROMPT = """You are analyzing a user's message to update predefined memory fields about that user.
Respond ONLY with a JSON object with the key "user_memory_updates": an array of objects, each with an "id"
(the id of the memory field) and a "new_value" (the new string value).
Only include fields for which a direct and clear update is present in the message. Do not infer values that
are not clearly stated. If the message is a question, it is unlikely to update memory unless it explicitly
states new information. Use an empty array when nothing should change."""


def parse_memory_updates(output: Optional[str], field_ids: set[str]) -> dict[str, str]:
    parsed = parse_json_object(output)
    raw_updates: Any = parsed.get("user_memory_updates", parsed.get("userMemoryUpdates"))
    updates: dict[str, str] = {}
    if isinstance(raw_updates, list):
        for item in raw_updates:
            if not isinstance(item, dict):
                continue
            field_id = item.get("id")
            value = item.get("new_value", item.get("newValue"))
            if field_id in field_ids and isinstance(value, str) and value.strip():
                updates[field_id] = value.strip()
    elif isinstance(raw_updates, dict):
        for field_id, value in raw_updates.items():
            if field_id in field_ids and isinstance(value, str) and value.strip():
                updates[field_id] = value.strip()
    return updates


class MemoryExtractor:
    """Derives long-term facts about a user from one message and merges them into user metadata."""

    def __init__(
        self,
        repository: ConversationRepository,
        llm: LLMProvider,
        fields: Optional[List[dict]] = None,
        model: Optional[str] = None,
    ):
        self.repository = repository
        self.llm = llm
        self.fields = fields or DEFAULT_MEMORY_FIELDS
        self.model = model

    async def update_from_message(self, *, user_id: UUID, text: str, existing: Optional[dict] = None) -> dict[str, str]:
        if not text.strip():
            return {}

        user_prompt = (
            f'User message:\n"{text}"\n\n'
            f"Available user memory fields:\n{json.dumps(self.fields)}\n\n"
            f"Current values:\n{json.dumps(existing or {})}"
        )
        response = await self.llm.generate(
            [
                {"role": "system", "content": MEMORY_SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
            model=self.model,
            temperature=0.2,
            max_tokens=300,
        )
        updates = parse_memory_updates(response.content, {field["id"] for field in self.fields})
        if not updates:
            return {}

        await self.repository.merge_user_metadata_section(user_id, "memory", updates)
        logger.info(
            "User memory updated",
            extra={"context": {"user_id": str(user_id), "fields": sorted(updates)}},
        )
        return updates
