from .embeddings import EmbeddingClient, cosine_similarity, get_embedding_client, safe_embed
from .retriever import RetrievedItem, retrieve_knowledge, retrieve_patient_facts

__all__ = [
    "EmbeddingClient",
    "cosine_similarity",
    "get_embedding_client",
    "safe_embed",
    "RetrievedItem",
    "retrieve_knowledge",
    "retrieve_patient_facts",
]
