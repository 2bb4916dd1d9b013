from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Dict, Optional

from openai import OpenAI

from medchat.config import Settings


class LLMClient(ABC):
    """
    Chat-completion provider seen by the rest of the app.
    One attempt per call; callers decide what a failure means.
    """

    @abstractmethod
    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.2,
        model: Optional[str] = None,
    ) -> str:
        """
        messages: list of {"role": "system"|"user"|"assistant", "content": "..."}
        returns: assistant content as a string
        """
        ...

    def close(self) -> None:
        pass


class OpenAILLMClient(LLMClient):
    """
    OpenAI-compatible implementation using the official Python client.
    Point OPENAI_BASE_URL at any compatible provider.
    """

    def __init__(self, settings: Settings, model: Optional[str] = None):
        if not settings.openai_api_key:
            raise RuntimeError(
                "OPENAI_API_KEY is not set in environment (.env)."
            )

        self.client = OpenAI(api_key=settings.openai_api_key, base_url=settings.openai_base_url)
        self.default_model = model or settings.llm_model

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.2,
        model: Optional[str] = None,
    ) -> str:
        completion = self.client.chat.completions.create(
            model=model or self.default_model,
            messages=messages,
            temperature=temperature,
        )
        content = completion.choices[0].message.content
        return content or ""

    def close(self) -> None:
        self.client.close()
