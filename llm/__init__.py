"""LLM clients used to produce conversation summaries."""

from .base_client import BaseLLMClient, Message, LLMResponse
from .anthropic_client import AnthropicClient
from .openai_client import OpenAIClient
from .factory import create_llm_client, LLMProvider

__all__ = [
    "BaseLLMClient",
    "Message",
    "LLMResponse",
    "AnthropicClient",
    "OpenAIClient",
    "create_llm_client",
    "LLMProvider",
]
