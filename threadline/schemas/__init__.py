from threadline.schemas.onboarding import OnboardingField, OnboardingFlowConfig, load_onboarding_config
from threadline.schemas.webhook import (
    NormalizedMessage,
    OnboardingResetRequest,
    OnboardingResetResponse,
    ThreadKind,
    WebhookResponse,
    parse_inbound_message,
)

__all__ = [
    "NormalizedMessage",
    "OnboardingField",
    "OnboardingFlowConfig",
    "OnboardingResetRequest",
    "OnboardingResetResponse",
    "ThreadKind",
    "WebhookResponse",
    "load_onboarding_config",
    "parse_inbound_message",
]
