from abc import ABC, abstractmethod
from typing import Optional

import httpx

from threadline.logging_config import get_logger
from threadline.services.alert_service import alert_critical
from threadline.services.result import Result

logger = get_logger("a1base_service")


class ProviderConfigurationError(Exception):
    """Credentials or the agent identity are missing; no send can succeed."""


class MessagingProvider(ABC):
    """Outbound side of the messaging provider: one call per message part."""

    @abstractmethod
    def ensure_configured(self) -> None:
        """Raise ProviderConfigurationError when sending is impossible."""

    @abstractmethod
    async def send_individual(self, recipient: str, content: str, service: str) -> Result[dict]:
        pass

    @abstractmethod
    async def send_group(self, thread_id: str, content: str, service: str) -> Result[dict]:
        pass


class A1BaseClient(MessagingProvider):
    """REST client for the A1Base send endpoints."""

    def __init__(
        self,
        *,
        api_key: str,
        api_secret: str,
        account_id: str,
        agent_number: str,
        base_url: str = "https://api.a1base.com/v1",
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.account_id = account_id
        self.agent_number = agent_number
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def ensure_configured(self) -> None:
        missing = [
            name
            for name, value in (
                ("A1BASE_API_KEY", self.api_key),
                ("A1BASE_API_SECRET", self.api_secret),
                ("A1BASE_ACCOUNT_ID", self.account_id),
                ("AGENT_NUMBER", self.agent_number),
            )
            if not value
        ]
        if missing:
            logger.error(f"Messaging provider is not configured, missing: {', '.join(missing)}")
            raise ProviderConfigurationError(f"Missing messaging provider settings: {', '.join(missing)}")

    async def send_individual(self, recipient: str, content: str, service: str) -> Result[dict]:
        payload = {
            "content": content,
            "from": self.agent_number,
            "to": recipient,
            "service": service,
        }
        return await self._post(f"/messages/individual/{self.account_id}/send", payload, target=recipient)

    async def send_group(self, thread_id: str, content: str, service: str) -> Result[dict]:
        payload = {
            "content": content,
            "from": self.agent_number,
            "thread_id": thread_id,
            "service": service,
        }
        return await self._post(f"/messages/group/{self.account_id}/send", payload, target=thread_id)

    async def _post(self, path: str, payload: dict, *, target: str) -> Result[dict]:
        self.ensure_configured()
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    url,
                    headers={
                        "X-API-Key": self.api_key,
                        "X-API-Secret": self.api_secret,
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as e:
            logger.error(f"Error sending message via A1Base: {e}", extra={"context": {"target": target}})
            await alert_critical("Message send failed", {"target": target, "error": str(e)})
            return Result.failure(str(e), code="transport_error", target=target)

        logger.info(
            f"A1Base response: status={response.status_code}, target={target}, body={response.text[:200]}"
        )
        if response.status_code >= 300:
            return Result.failure(
                f"A1Base rejected message: {response.status_code}",
                code="provider_rejected",
                target=target,
                status=response.status_code,
                body=response.text[:500],
            )

        try:
            body = response.json()
        except ValueError:
            body = {}
        return Result.success(body if isinstance(body, dict) else {}, target=target, status=response.status_code)
