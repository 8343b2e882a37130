from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class OnboardingState(str, Enum):
    NOT_STARTED = "not_started"
    COLLECTING = "collecting"
    COMPLETE = "complete"


VALID_TRANSITIONS = {
    OnboardingState.NOT_STARTED: [OnboardingState.COLLECTING, OnboardingState.COMPLETE],
    # COLLECTING -> COLLECTING moves to the next field.
    OnboardingState.COLLECTING: [
        OnboardingState.COLLECTING,
        OnboardingState.COMPLETE,
        OnboardingState.NOT_STARTED,
    ],
    OnboardingState.COMPLETE: [OnboardingState.NOT_STARTED],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: OnboardingState, to_state: OnboardingState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: OnboardingState, to_state: OnboardingState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: OnboardingState, to_state: OnboardingState) -> OnboardingState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


@dataclass
class OnboardingProgress:
    """Onboarding position of one user, rebuilt from persisted metadata on every message."""

    state: OnboardingState = OnboardingState.NOT_STARTED
    current_field_id: Optional[str] = None
    collected_fields: dict[str, str] = field(default_factory=dict)
    skipped_fields: list[str] = field(default_factory=list)

    @classmethod
    def from_metadata(cls, metadata: Optional[dict[str, Any]]) -> "OnboardingProgress":
        metadata = metadata or {}
        section = metadata.get("onboarding") if isinstance(metadata.get("onboarding"), dict) else {}
        collected = section.get("collected_fields") if isinstance(section.get("collected_fields"), dict) else {}
        skipped = section.get("skipped_fields") if isinstance(section.get("skipped_fields"), list) else []
        current = section.get("current_field_id") or None

        if metadata.get("onboarding_complete") is True:
            state = OnboardingState.COMPLETE
            current = None
        elif current:
            state = OnboardingState.COLLECTING
        else:
            state = OnboardingState.NOT_STARTED

        return cls(
            state=state,
            current_field_id=current,
            collected_fields={str(k): str(v) for k, v in collected.items() if v},
            skipped_fields=[str(item) for item in skipped],
        )

    def to_metadata(self) -> dict[str, Any]:
        """Partial user metadata: the onboarding section plus collected values as top-level keys."""
        data: dict[str, Any] = dict(self.collected_fields)
        data["onboarding_complete"] = self.state == OnboardingState.COMPLETE
        data["onboarding"] = {
            "state": self.state.value,
            "current_field_id": self.current_field_id,
            "collected_fields": dict(self.collected_fields),
            "skipped_fields": list(self.skipped_fields),
        }
        return data

    def ask(self, field_id: str) -> "OnboardingProgress":
        """Enter or stay in COLLECTING, now asking for `field_id`."""
        self.state = transition(self.state, OnboardingState.COLLECTING)
        self.current_field_id = field_id
        return self

    def complete(self) -> "OnboardingProgress":
        self.state = transition(self.state, OnboardingState.COMPLETE)
        self.current_field_id = None
        return self

    def reset(self) -> "OnboardingProgress":
        if self.state != OnboardingState.NOT_STARTED:
            self.state = transition(self.state, OnboardingState.NOT_STARTED)
        self.current_field_id = None
        self.collected_fields = {}
        self.skipped_fields = []
        return self


@dataclass
class GroupOnboardingProgress:
    """Onboarding position of a group thread, rebuilt from thread metadata.

    Answers live under `group_info`; the `onboarding` section tracks which
    field ids are still pending, in the order they are asked.
    """

    state: OnboardingState = OnboardingState.NOT_STARTED
    fields_pending: list[str] = field(default_factory=list)
    fields_collected: list[str] = field(default_factory=list)
    group_info: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_metadata(cls, metadata: Optional[dict[str, Any]]) -> "GroupOnboardingProgress":
        metadata = metadata or {}
        section = metadata.get("onboarding") if isinstance(metadata.get("onboarding"), dict) else {}
        info = metadata.get("group_info") if isinstance(metadata.get("group_info"), dict) else {}
        pending = section.get("fields_pending") if isinstance(section.get("fields_pending"), list) else []
        collected = section.get("fields_collected") if isinstance(section.get("fields_collected"), list) else []

        if section.get("completed") is True:
            state = OnboardingState.COMPLETE
        elif section.get("in_progress") is True:
            state = OnboardingState.COLLECTING
        else:
            state = OnboardingState.NOT_STARTED

        return cls(
            state=state,
            fields_pending=[str(item) for item in pending],
            fields_collected=[str(item) for item in collected],
            group_info={str(k): str(v) for k, v in info.items() if v},
        )

    @property
    def current_field_id(self) -> Optional[str]:
        return self.fields_pending[0] if self.fields_pending else None

    def to_metadata(self) -> dict[str, Any]:
        """Partial thread metadata: the `group_info` and `onboarding` sections."""
        return {
            "group_info": dict(self.group_info),
            "onboarding": {
                "in_progress": self.state == OnboardingState.COLLECTING,
                "completed": self.state == OnboardingState.COMPLETE,
                "fields_pending": list(self.fields_pending),
                "fields_collected": list(self.fields_collected),
            },
        }

    def start(self, field_ids: list[str]) -> "GroupOnboardingProgress":
        self.state = transition(self.state, OnboardingState.COLLECTING)
        self.fields_pending = list(field_ids)
        self.fields_collected = []
        return self

    def record(self, field_id: str, value: str) -> "GroupOnboardingProgress":
        self.state = transition(self.state, OnboardingState.COLLECTING)
        self.group_info[field_id] = value
        self.fields_pending = [item for item in self.fields_pending if item != field_id]
        if field_id not in self.fields_collected:
            self.fields_collected.append(field_id)
        return self

    def drop(self, field_id: str) -> "GroupOnboardingProgress":
        self.fields_pending = [item for item in self.fields_pending if item != field_id]
        return self

    def complete(self) -> "GroupOnboardingProgress":
        self.state = transition(self.state, OnboardingState.COMPLETE)
        self.fields_pending = []
        return self

    def reset(self) -> "GroupOnboardingProgress":
        if self.state != OnboardingState.NOT_STARTED:
            self.state = transition(self.state, OnboardingState.NOT_STARTED)
        self.fields_pending = []
        self.fields_collected = []
        self.group_info = {}
        return self
