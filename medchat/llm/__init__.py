from .client import LLMClient, OpenAILLMClient

__all__ = ["LLMClient", "OpenAILLMClient"]
