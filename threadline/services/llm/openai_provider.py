from typing import List, Optional

import httpx

from threadline.logging_config import get_logger
from threadline.services.llm.base import LLMError, LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions over httpx."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        timeout_seconds: float = 30.0,
        base_url: str = "https://api.openai.com/v1",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds
        self.completions_url = f"{base_url.rstrip('/')}/chat/completions"
        self._transport = transport

    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> LLMResponse:
        if not self.api_key:
            raise LLMError("OpenAI API key is not configured")

        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    self.completions_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as exc:
            logger.error(f"OpenAI transport error: {exc}")
            raise LLMError(f"OpenAI request failed: {exc}") from exc

        if response.status_code != 200:
            logger.error(
                "OpenAI error response",
                extra={"context": {"status": response.status_code, "body": response.text[:500]}},
            )
            raise LLMError(f"OpenAI API error: {response.status_code} - {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as exc:
            raise LLMError("OpenAI returned a non-JSON body") from exc

        content = ""
        choices = data.get("choices") or []
        if choices:
            message = choices[0].get("message") or {}
            content = message.get("content") or ""
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )
