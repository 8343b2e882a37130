import json
import re
from typing import Any, Iterable, List, Optional

from threadline.logging_config import get_logger
from threadline.schemas.onboarding import OnboardingField
from threadline.services.llm import LLMError, LLMProvider

logger = get_logger("extraction_service")

# Literal the model must answer with when it finds no confident value.
INVALID = "INVALID_RESPONSE"

FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)

VALIDATION_RULES = {
    "email": (
        "Make sure it is a valid email format (contains @ and a domain). "
        "Extract just the email address without any additional text."
    ),
    "name": (
        "Extract the full name. If only a first name is provided, that is acceptable. "
        "Remove any salutations or titles. A sentence that is not a name is not a valid answer."
    ),
    "business_type": (
        'Extract the business type or industry. Normalize common industry terms (e.g., "tech" -> '
        '"Technology"). Be concise.'
    ),
    "goals": (
        "Extract a concise version of their goals or what they want to achieve. "
        "Limit to 1-2 sentences maximum."
    ),
}
DEFAULT_VALIDATION_RULE = "Extract the specific answer to the question without any additional text."


def build_extraction_prompt(field: OnboardingField) -> str:
    rules = VALIDATION_RULES.get(field.id, DEFAULT_VALIDATION_RULE)
    return f"""You are a precise data extraction assistant processing user responses during onboarding.

Field: {field.label} ({field.id})
Field Description: {field.description}
Required: {"Yes" if field.required else "No"}

Your Task: Extract ONLY the specific data requested from the user's latest message. {rules}

Rules:
1. Return ONLY the extracted data with no additional text
2. If you cannot extract a valid answer, respond with EXACTLY "{INVALID}"
3. Do not add explanations, confirmations, or any other text
4. Be concise and precise"""


def build_extract_all_prompt(fields: Iterable[OnboardingField]) -> str:
    lines = "\n".join(
        f'- "{field.id}": {field.label}. {VALIDATION_RULES.get(field.id, field.description)}' for field in fields
    )
    return f"""Read the conversation and extract any of these fields the user has already provided:
{lines}

Return ONLY a JSON object keyed by field id. Use null for any field the user has not clearly provided.
Do not guess and do not add any other text."""


def _first_object_span(text: str) -> Optional[str]:
    """Return the first balanced top-level {...} span, ignoring braces inside strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        start = text.find("{", start + 1)
    return None


def parse_json_object(text: Optional[str]) -> dict[str, Any]:
    """Defensive JSON parsing of model output: fenced block, then first {...} span, else {}."""
    if not text:
        return {}

    candidates = []
    fenced = FENCED_JSON_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    span = _first_object_span(text)
    if span:
        candidates.append(span)

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            nested = _first_object_span(candidate)
            if not nested or nested == candidate:
                continue
            try:
                parsed = json.loads(nested)
            except ValueError:
                continue
        if isinstance(parsed, dict):
            return parsed
    return {}


def clean_extracted_value(raw: Optional[str]) -> str:
    value = (raw or "").strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'", "`"}:
        value = value[1:-1].strip()
    if not value or value.rstrip(".!").upper() == INVALID:
        return INVALID
    return value


class FieldExtractor:
    """Turns free-text replies into onboarding field values via the completion service."""

    def __init__(self, llm: LLMProvider, model: Optional[str] = None):
        self.llm = llm
        self.model = model

    async def extract(self, transcript: List[dict], field: OnboardingField) -> str:
        """Extracted value for one field, or INVALID.

        LLMError propagates: a failed completion is not the same outcome as an
        unusable answer.
        """
        messages = [*transcript, {"role": "system", "content": build_extraction_prompt(field)}]
        response = await self.llm.generate(messages, model=self.model, temperature=0.0, max_tokens=100)
        value = clean_extracted_value(response.content)
        logger.info(
            "Field extraction finished",
            extra={"context": {"field_id": field.id, "valid": value != INVALID}},
        )
        return value

    async def extract_all(self, transcript: List[dict], fields: List[OnboardingField]) -> dict[str, str]:
        if not fields:
            return {}
        messages = [*transcript, {"role": "system", "content": build_extract_all_prompt(fields)}]
        try:
            response = await self.llm.generate(messages, model=self.model, temperature=0.0, max_tokens=300)
        except LLMError as exc:
            logger.warning(f"Bulk extraction skipped: {exc}")
            return {}

        parsed = parse_json_object(response.content)
        known_ids = {field.id for field in fields}
        extracted: dict[str, str] = {}
        for key, value in parsed.items():
            if key not in known_ids or value is None:
                continue
            if str(value).strip().lower() in {"null", "none", "n/a", "unknown"}:
                continue
            value = clean_extracted_value(str(value))
            if value != INVALID:
                extracted[key] = value
        return extracted
