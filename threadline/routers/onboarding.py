"""Operator endpoints for restarting a user's or a group's onboarding."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from threadline.dependencies import get_group_onboarding_manager, get_onboarding_manager, get_repository
from threadline.logging_config import get_logger
from threadline.schemas.webhook import OnboardingResetRequest, OnboardingResetResponse
from threadline.services.group_onboarding_service import GroupOnboardingManager
from threadline.services.onboarding_service import OnboardingManager
from threadline.services.repository import ConversationRepository

logger = get_logger("onboarding_router")

router = APIRouter()


@router.post("/onboarding/{thread_id}/reset", response_model=OnboardingResetResponse)
async def reset_onboarding(
    thread_id: str,
    payload: OnboardingResetRequest,
    repository: ConversationRepository = Depends(get_repository),
    onboarding: OnboardingManager = Depends(get_onboarding_manager),
):
    user = await repository.get_user(payload.sender_number)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    await onboarding.reset(user.id, user.metadata)
    logger.info(
        "Onboarding reset requested",
        extra={"context": {"thread_id": thread_id, "user_id": str(user.id)}},
    )
    return OnboardingResetResponse(success=True, thread_id=thread_id, user_id=str(user.id))


@router.post("/onboarding/{thread_id}/group-reset", response_model=OnboardingResetResponse)
async def reset_group_onboarding(
    thread_id: str,
    repository: ConversationRepository = Depends(get_repository),
    group_onboarding: Optional[GroupOnboardingManager] = Depends(get_group_onboarding_manager),
):
    if group_onboarding is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Group onboarding is disabled")

    snapshot = await repository.get_thread(thread_id)
    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thread not found")

    await group_onboarding.reset(snapshot.id, snapshot.metadata)
    logger.info("Group onboarding reset requested", extra={"context": {"thread_id": thread_id}})
    return OnboardingResetResponse(success=True, thread_id=thread_id)
