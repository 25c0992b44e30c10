from marketbot.services.llm.base import ChatMessage, LLMError, LLMProvider, LLMResponse, system_and_user
from marketbot.services.llm.openai_provider import OpenAIProvider

__all__ = ["ChatMessage", "LLMError", "LLMProvider", "LLMResponse", "OpenAIProvider", "system_and_user"]
