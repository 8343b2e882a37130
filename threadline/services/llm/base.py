from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


class LLMError(Exception):
    """Completion call failed: transport error, timeout, or a non-200 answer."""


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


class LLMProvider(ABC):
    """Abstract base class for completion providers: messages in, text out."""

    @abstractmethod
    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> LLMResponse:
        pass
