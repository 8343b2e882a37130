from threadline.services.llm.base import LLMError, LLMProvider, LLMResponse
from threadline.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMError", "LLMProvider", "LLMResponse", "OpenAIProvider"]
