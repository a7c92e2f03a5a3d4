from threadline.services.llm.base import LLMProvider, LLMResponse
from threadline.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMProvider", "LLMResponse", "OpenAIProvider"]
