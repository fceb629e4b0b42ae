"""Embedding services."""

from .service import Embedding, EmbeddingBackend, EmbeddingConfig, HashEmbeddingBackend, SentenceEmbeddingBackend
from .store import ChromaEmbeddingStore, EmbeddingStore

__all__ = [
    "ChromaEmbeddingStore",
    "Embedding",
    "EmbeddingBackend",
    "EmbeddingConfig",
    "EmbeddingStore",
    "HashEmbeddingBackend",
    "SentenceEmbeddingBackend",
]
