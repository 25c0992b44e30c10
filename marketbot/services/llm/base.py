from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

ChatMessage = dict[str, str]


class LLMError(Exception):
    """Provider call failed (transport, HTTP status, or empty reply)."""


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None

    @property
    def total_tokens(self) -> int:
        return int((self.usage or {}).get("total_tokens", 0))


def system_and_user(system_prompt: str, user_text: str) -> list[ChatMessage]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_text},
    ]


class LLMProvider(ABC):
    """Chat-completion backend. Implementations raise LLMError instead of returning partial replies."""

    @abstractmethod
    def generate(
        self,
        messages: list[ChatMessage],
        model: Optional[str] = None,
        temperature: float = 0.1,
        max_tokens: int = 100,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        ...
