from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


class LLMProvider(ABC):
    """Chat-completion backend used to draft auto-replies."""

    name = "abstract"

    @abstractmethod
    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.4,
        max_tokens: int = 400,
    ) -> LLMResponse:
        """Complete a chat prompt. Transport, API and malformed-body failures raise GenerationError."""
        pass
