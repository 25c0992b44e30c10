from typing import Optional

import httpx

from marketbot.logging_config import get_logger
from marketbot.services.llm.base import ChatMessage, LLMError, LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions over plain httpx."""

    def __init__(self, api_key: str, default_model: str = "gpt-4o-mini", timeout_seconds: float = 8.0):
        self.api_key = api_key
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds
        self.base_url = "https://api.openai.com/v1/chat/completions"

    def generate(
        self,
        messages: list[ChatMessage],
        model: Optional[str] = None,
        temperature: float = 0.1,
        max_tokens: int = 100,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        model = model or self.default_model
        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as e:
            raise LLMError(f"OpenAI request failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.status_code} {response.text[:200]}")
            raise LLMError(f"OpenAI API error: {response.status_code}")

        data = response.json()
        content = ""
        if data.get("choices"):
            content = data["choices"][0].get("message", {}).get("content") or ""
        if not content.strip():
            raise LLMError("OpenAI returned an empty completion")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )
