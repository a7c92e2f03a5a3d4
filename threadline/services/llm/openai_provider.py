from typing import List, Optional

import httpx

from threadline.logging_config import get_logger
from threadline.services.errors import GenerationError
from threadline.services.llm.base import LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions provider."""

    name = "openai"

    def __init__(self, api_key: str, default_model: str = "gpt-4o-mini", timeout_seconds: float = 30.0):
        self.api_key = api_key
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds
        self.base_url = "https://api.openai.com/v1/chat/completions"

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.4,
        max_tokens: int = 400,
    ) -> LLMResponse:
        """Generate response from OpenAI."""

        model = model or self.default_model
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_completion_tokens": max_tokens,
        }
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as e:
            raise GenerationError(f"OpenAI request failed: {e}") from e

        logger.debug(f"OpenAI response status: {response.status_code}")

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text}")
            raise GenerationError(f"OpenAI API error: {response.status_code} - {response.text[:500]}")

        try:
            data = response.json()
            content = ""
            if data.get("choices"):
                message = data["choices"][0].get("message") or {}
                content = message.get("content") or ""
        except (ValueError, AttributeError, LookupError, TypeError) as e:
            raise GenerationError(f"OpenAI returned an unreadable response: {e}") from e
        if not isinstance(content, str):
            raise GenerationError(f"OpenAI returned non-text content: {type(content).__name__}")
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )
