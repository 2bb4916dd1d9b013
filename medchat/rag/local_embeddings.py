from __future__ import annotations

from typing import List

import numpy as np
from sentence_transformers import SentenceTransformer

from medchat.config import Settings
from medchat.rag.embeddings import EmbeddingClient


DEFAULT_LOCAL_MODEL = "sentence-transformers/all-MiniLM-L6-v2"


class SentenceTransformerEmbeddingClient(EmbeddingClient):
    """
    Thin wrapper around a sentence-transformers model.
    """

    def __init__(self, settings: Settings):
        model_name = settings.embedding_model
        if model_name == "embedding-3":
            # embedding-3 is the remote provider default, not a local model
            model_name = DEFAULT_LOCAL_MODEL
        self.model = SentenceTransformer(model_name)
        self.dim = settings.embedding_dim or self.model.get_sentence_embedding_dimension()

    def embed(self, texts: List[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dim), dtype=np.float32)

        embeddings = self.model.encode(texts, convert_to_numpy=True, normalize_embeddings=True)
        if embeddings.shape[1] != self.dim:
            raise ValueError(
                f"Embedding dimension mismatch: expected {self.dim}, got {embeddings.shape[1]}"
            )
        return embeddings.astype(np.float32)
