import json
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field

DEFAULT_SYSTEM_PROMPT = (
    "You are conducting an onboarding conversation with a new user. Your goal is to make them feel "
    "welcome and collect some basic information that will help you assist them better in the future. "
    "Be friendly, professional, and conversational."
)
DEFAULT_FINAL_MESSAGE = (
    "Thank you for sharing this information. I've saved your details and I'm ready to help you "
    "achieve your goals."
)
# Label words too generic to show that a question asks for a particular field.
LABEL_FILLER_WORDS = {
    "your", "the", "full", "address", "number", "details", "info", "information", "please", "and", "for", "with",
}


class OnboardingField(BaseModel):
    id: str
    label: str
    required: bool = True
    description: str = ""
    # Words a generated question must contain to count as asking for this field.
    keywords: list[str] = Field(default_factory=list)

    def question_keywords(self) -> list[str]:
        if self.keywords:
            return [word.lower() for word in self.keywords]
        words = {self.id.replace("_", " ").lower()}
        words.update(part.lower() for part in self.id.split("_") if len(part) > 2)
        words.update(
            part.lower()
            for part in self.label.split()
            if len(part) > 2 and part.lower() not in LABEL_FILLER_WORDS
        )
        return sorted(words)


DEFAULT_FIELDS = [
    OnboardingField(
        id="name",
        label="Full Name",
        required=True,
        description="Ask for the user's full name",
        keywords=["name"],
    ),
    OnboardingField(
        id="email",
        label="Email Address",
        required=True,
        description="Ask for the user's email address",
        keywords=["email", "e-mail"],
    ),
]


class OnboardingFlowConfig(BaseModel):
    enabled: bool = True
    fields: list[OnboardingField] = Field(
        default_factory=lambda: [field.model_copy() for field in DEFAULT_FIELDS],
        validation_alias=AliasChoices("fields", "userFields", "user_fields"),
    )
    system_prompt: str = Field(
        default=DEFAULT_SYSTEM_PROMPT,
        validation_alias=AliasChoices("system_prompt", "systemPrompt"),
    )
    final_message: str = Field(
        default=DEFAULT_FINAL_MESSAGE,
        validation_alias=AliasChoices("final_message", "finalMessage"),
    )

    def get_field(self, field_id: Optional[str]) -> Optional[OnboardingField]:
        for field in self.fields:
            if field.id == field_id:
                return field
        return None

    def first_missing(self, collected: dict, skipped: Optional[list] = None) -> Optional[OnboardingField]:
        """First field in declared order that is neither collected nor skipped."""
        skipped_ids = set(skipped or [])
        for field in self.fields:
            if field.id in skipped_ids:
                continue
            if not collected.get(field.id):
                return field
        return None


DEFAULT_GROUP_INITIAL_MESSAGE = (
    "Hi everyone! I'm the assistant for this group. Before we get going, I'd like to learn a little "
    "about what you're all working on."
)
DEFAULT_GROUP_FINAL_MESSAGE = (
    "Thanks, everyone! I've saved the group's details and I'm ready to help whenever you need me."
)

DEFAULT_GROUP_FIELDS = [
    OnboardingField(
        id="group_purpose",
        label="Group Purpose",
        required=True,
        description="Ask about the purpose or goal of this group",
    ),
    OnboardingField(
        id="group_projects",
        label="Group Projects",
        required=False,
        description="Ask what projects or initiatives the group is working on",
    ),
]


class GroupOnboardingFlowConfig(BaseModel):
    """Questions put to a whole group; answers are stored on the thread, not on any one user."""

    enabled: bool = True
    fields: list[OnboardingField] = Field(
        default_factory=lambda: [field.model_copy() for field in DEFAULT_GROUP_FIELDS],
        validation_alias=AliasChoices("fields", "userFields", "user_fields"),
    )
    initial_message: str = Field(
        default=DEFAULT_GROUP_INITIAL_MESSAGE,
        validation_alias=AliasChoices("initial_message", "initialGroupMessage", "initial_group_message"),
    )
    final_message: str = Field(
        default=DEFAULT_GROUP_FINAL_MESSAGE,
        validation_alias=AliasChoices("final_message", "finalMessage"),
    )

    def get_field(self, field_id: Optional[str]) -> Optional[OnboardingField]:
        for field in self.fields:
            if field.id == field_id:
                return field
        return None

    def ordered_field_ids(self) -> list[str]:
        """Required fields first, then optional ones, each in declared order."""
        required = [field.id for field in self.fields if field.required]
        optional = [field.id for field in self.fields if not field.required]
        return required + optional


def _read_flow_file(path: str) -> dict:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    # Settings files written by the editor nest the flow under "agenticSettings".
    if isinstance(raw.get("agenticSettings"), dict):
        merged = dict(raw["agenticSettings"])
        if "enabled" in raw:
            merged["enabled"] = raw["enabled"]
        raw = merged
    return raw


def load_onboarding_config(path: Optional[str]) -> OnboardingFlowConfig:
    """Load the flow from a JSON file; an empty path gives the built-in defaults."""
    if not path:
        return OnboardingFlowConfig()
    return OnboardingFlowConfig.model_validate(_read_flow_file(path))


def load_group_onboarding_config(path: Optional[str]) -> GroupOnboardingFlowConfig:
    if not path:
        return GroupOnboardingFlowConfig()
    return GroupOnboardingFlowConfig.model_validate(_read_flow_file(path))
