import hashlib
import hmac
import json
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError
from starlette.requests import ClientDisconnect

from threadline.config import Settings
from threadline.dependencies import get_app_settings, get_conversation_service
from threadline.logging_config import get_logger
from threadline.schemas.webhook import WebhookResponse, parse_inbound_message
from threadline.services.a1base_service import ProviderConfigurationError
from threadline.services.alert_service import alert_critical
from threadline.services.conversation_service import ConversationService

logger = get_logger("webhook")

router = APIRouter()


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    message = timestamp.encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(
    secret: str,
    timestamp: Optional[str],
    signature: Optional[str],
    body: bytes,
    *,
    max_age_seconds: int,
    now: Optional[float] = None,
) -> bool:
    if not timestamp or not signature:
        return False
    try:
        sent_at = float(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - sent_at) > max_age_seconds:
        return False
    expected = compute_signature(secret, timestamp, body)
    return hmac.compare_digest(expected, signature.strip().lower())


async def _read_webhook_body(request: Request) -> bytes | WebhookResponse:
    try:
        return await request.body()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during body read")
        return WebhookResponse(success=True, message="Client disconnected")


def _parse_webhook_payload(raw: bytes) -> dict | WebhookResponse:
    if not raw or not raw.strip():
        logger.info("Webhook ping with empty body")
        return WebhookResponse(success=True, message="Empty payload")
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        logger.warning(
            "Webhook payload is not valid JSON",
            extra={"context": {"error": str(exc), "body_preview": raw[:200].decode("utf-8", "ignore")}},
        )
        return WebhookResponse(success=False, message="Invalid JSON payload")
    if not isinstance(payload, dict):
        return WebhookResponse(success=False, message="Invalid payload format")
    return payload


@router.post("/webhook/messaging", response_model=WebhookResponse)
async def handle_messaging_webhook(
    request: Request,
    service: ConversationService = Depends(get_conversation_service),
    settings: Settings = Depends(get_app_settings),
):
    """Inbound message from the messaging provider."""
    raw = await _read_webhook_body(request)
    if isinstance(raw, WebhookResponse):
        return raw

    if settings.webhook_secret:
        valid = verify_signature(
            settings.webhook_secret,
            request.headers.get("X-Timestamp"),
            request.headers.get("X-Signature"),
            raw,
            max_age_seconds=settings.webhook_max_age_seconds,
        )
        if not valid:
            logger.warning("Webhook signature rejected")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    payload = _parse_webhook_payload(raw)
    if isinstance(payload, WebhookResponse):
        return payload

    try:
        message = parse_inbound_message(payload).normalize()
    except ValidationError as exc:
        logger.warning("Webhook payload failed validation", extra={"context": {"errors": exc.errors()[:5]}})
        return WebhookResponse(success=False, message="Invalid webhook payload")

    try:
        result = await service.handle(message)
    except ProviderConfigurationError as exc:
        logger.error("Messaging provider not configured", extra={"context": {"error": str(exc)}})
        await alert_critical("Messaging provider not configured", {"error": str(exc), "thread_id": message.thread_id})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))

    return WebhookResponse(
        success=True,
        message=result.status,
        thread_id=result.thread_id,
        route=result.route.value if result.route else None,
        replies=result.replies,
    )
