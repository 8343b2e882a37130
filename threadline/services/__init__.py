from threadline.services.conversation_service import (
    ConversationService,
    HandlingResult,
)
from threadline.services.dispatch_service import (
    DispatchOutcome,
    Dispatcher,
    split_message,
)
from threadline.services.onboarding_state import (
    InvalidTransitionError,
    OnboardingProgress,
    OnboardingState,
    can_transition,
    transition,
)

__all__ = [
    "ConversationService",
    "DispatchOutcome",
    "Dispatcher",
    "HandlingResult",
    "InvalidTransitionError",
    "OnboardingProgress",
    "OnboardingState",
    "can_transition",
    "split_message",
    "transition",
]
