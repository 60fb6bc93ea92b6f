"""LLM client used as the expensive operation behind the cache."""

from .gemini_client import GeminiClient, extract_text
from .key_pool import ApiKeyPool

__all__ = [
    "ApiKeyPool",
    "GeminiClient",
    "extract_text",
]
