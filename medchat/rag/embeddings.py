from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import numpy as np
from openai import OpenAI

from medchat.config import Settings
from medchat.outcome import Outcome


logger = logging.getLogger(__name__)


class EmbeddingClient(ABC):
    """
    Turns text into vectors for similarity retrieval.
    """

    @abstractmethod
    def embed(self, texts: List[str]) -> np.ndarray:
        """
        Returns a numpy array of shape (len(texts), dim).
        """
        ...

    def embed_one(self, text: str) -> List[float]:
        return self.embed([text])[0].astype(float).tolist()

    def close(self) -> None:
        pass


class OpenAIEmbeddingClient(EmbeddingClient):
    """
    Calls an OpenAI-compatible /embeddings endpoint.
    """

    def __init__(self, settings: Settings, model: Optional[str] = None):
        if not settings.openai_api_key:
            raise RuntimeError(
                "OPENAI_API_KEY is not set in environment (.env)."
            )
        self.client = OpenAI(api_key=settings.openai_api_key, base_url=settings.openai_base_url)
        self.model = model or settings.embedding_model
        self.dim = settings.embedding_dim

    def embed(self, texts: List[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dim or 0), dtype=np.float32)

        response = self.client.embeddings.create(model=self.model, input=texts)
        rows = sorted(response.data, key=lambda d: d.index)
        embeddings = np.asarray([row.embedding for row in rows], dtype=np.float32)
        if self.dim is not None and embeddings.shape[1] != self.dim:
            raise ValueError(
                f"Embedding dimension mismatch: expected {self.dim}, got {embeddings.shape[1]}"
            )
        return embeddings

    def close(self) -> None:
        self.client.close()


def get_embedding_client(settings: Settings) -> EmbeddingClient:
    backend = settings.embedding_backend.lower()
    if backend == "openai":
        return OpenAIEmbeddingClient(settings)
    if backend in ("sentence-transformers", "local"):
        # Loads torch; only pay for it when selected.
        from medchat.rag.local_embeddings import SentenceTransformerEmbeddingClient

        return SentenceTransformerEmbeddingClient(settings)
    raise ValueError(f"Unknown EMBEDDING_BACKEND: {settings.embedding_backend}")


def safe_embed(client: EmbeddingClient, text: str) -> Outcome[Optional[List[float]]]:
    """
    Embed a single text; any failure yields a FAILED outcome with value None.
    """
    try:
        return Outcome.success(client.embed_one(text))
    except Exception as e:
        logger.warning("Embedding failed: %s", e)
        return Outcome.failed(None, e)


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """
    Cosine of the angle between two vectors, in [-1, 1].
    Zero-norm vectors score 0.
    """
    a = np.asarray(vec_a, dtype=np.float64)
    b = np.asarray(vec_b, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError("Vectors must have the same length")

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))
