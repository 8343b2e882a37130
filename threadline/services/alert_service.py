"""Operator alerts sent to a Telegram chat."""

from typing import Optional

import httpx

from threadline.config import get_settings
from threadline.logging_config import get_logger

logger = get_logger("alert_service")


async def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send alert to Telegram.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict

    Returns:
        True if sent successfully. Never raises.
    """
    settings = get_settings()
    if not settings.alert_bot_token or not settings.alert_chat_id:
        logger.warning(f"Alert not configured: {level} - {message}", extra={"context": context or {}})
        return False

    text = f"*{level}* [{settings.agent_name}]\n\n{message}"
    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"

    try:
        async with httpx.AsyncClient(timeout=10) as client:
            response = await client.post(
                f"https://api.telegram.org/bot{settings.alert_bot_token}/sendMessage",
                json={"chat_id": settings.alert_chat_id, "text": text, "parse_mode": "Markdown"},
            )
            return response.status_code == 200
    except httpx.HTTPError as e:
        logger.error(f"Failed to send alert: {e}")
        return False


async def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    return await send_alert("CRITICAL", message, context)


async def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    return await send_alert("WARNING", message, context)
