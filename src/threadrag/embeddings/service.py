"""Embedding backends turning chunk text into vectors for the index."""

from __future__ import annotations

import hashlib
import math
import re
from dataclasses import dataclass
from typing import List, Protocol, Sequence, Tuple

from langchain_community.embeddings import HuggingFaceEmbeddings
from langchain_core.embeddings import Embeddings as LangChainEmbeddings

from threadrag.metrics.observability import get_logger
from threadrag.models import Chunk

_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)

Vector = Tuple[float, ...]


@dataclass(frozen=True)
class EmbeddingConfig:
    model: str = "BAAI/bge-small-en-v1.5"
    dim: int = 384
    use_model: bool = False
    device: str | None = None
    normalize: bool = True
    cache_folder: str | None = None


@dataclass(frozen=True)
class Embedding:
    chunk: Chunk
    vector: Vector


class EmbeddingBackend(Protocol):
    def embed_chunks(self, chunks: Sequence[Chunk]) -> Sequence[Embedding]:
        """Return one embedding per chunk, in input order."""

    def embed_query(self, query: str) -> Vector:
        """Return the vector used to search the index for ``query``."""


def unit_length(vector: Sequence[float]) -> Vector:
    norm = math.sqrt(sum(value * value for value in vector))
    if not norm:
        return tuple(vector)
    return tuple(value / norm for value in vector)


class HashEmbeddingBackend:
    """Offline feature-hashing embedder.

    Every lowercase word is hashed into one of ``dim`` signed buckets, so texts
    sharing vocabulary land close together under cosine distance. Text without
    any word characters falls back to a digest of the raw string, which keeps
    every vector non-zero.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()

    def vectorize(self, text: str) -> Vector:
        dim = self._config.dim
        buckets: List[float] = [0.0] * dim
        tokens = _TOKEN_PATTERN.findall(text.lower())
        for token in tokens:
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], "big") % dim
            buckets[bucket] += 1.0 if digest[4] & 1 else -1.0
        if not any(buckets):
            digest = hashlib.sha256(text.encode("utf-8")).digest()
            buckets = [(digest[i % len(digest)] + 1) / 256.0 for i in range(dim)]
        return unit_length(buckets) if self._config.normalize else tuple(buckets)

    def embed_chunks(self, chunks: Sequence[Chunk]) -> Sequence[Embedding]:
        return [Embedding(chunk=chunk, vector=self.vectorize(chunk.text)) for chunk in chunks]

    def embed_query(self, query: str) -> Vector:
        return self.vectorize(query)


class SentenceEmbeddingBackend:
    """Sentence-embedding model loaded through LangChain, with hashing as the offline path."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()
        self._logger = get_logger("embeddings")
        self._fallback = HashEmbeddingBackend(self._config)
        self._client: LangChainEmbeddings | None = None
        if self._config.use_model:
            self._client = self._load_client()
        self._logger.info(
            "embeddings.ready",
            model=self._config.model if self._client else "hash",
            dim=self._config.dim,
        )

    def _load_client(self) -> LangChainEmbeddings | None:
        try:
            return HuggingFaceEmbeddings(
                model_name=self._config.model,
                model_kwargs={"device": self._config.device} if self._config.device else {},
                cache_folder=self._config.cache_folder,
                encode_kwargs={"normalize_embeddings": self._config.normalize},
            )
        except Exception as exc:  # pragma: no cover - model download/runtime guard
            self._logger.warning("embeddings.model_unavailable", model=self._config.model, error=str(exc))
            return None

    @property
    def uses_model(self) -> bool:
        return self._client is not None

    def embed_chunks(self, chunks: Sequence[Chunk]) -> Sequence[Embedding]:
        if not chunks:
            return []
        if self._client is None:
            return self._fallback.embed_chunks(chunks)
        vectors = self._client.embed_documents([chunk.text for chunk in chunks])
        if len(vectors) != len(chunks):
            raise ValueError(f"Embedding model returned {len(vectors)} vectors for {len(chunks)} chunks")
        if vectors and len(vectors[0]) != self._config.dim:
            self._logger.warning("embeddings.dim_mismatch", configured=self._config.dim, actual=len(vectors[0]))
        return [Embedding(chunk=chunk, vector=self._finish(vector)) for chunk, vector in zip(chunks, vectors)]

    def embed_query(self, query: str) -> Vector:
        if self._client is None:
            return self._fallback.embed_query(query)
        return self._finish(self._client.embed_query(query))

    def _finish(self, vector: Sequence[float]) -> Vector:
        return unit_length(vector) if self._config.normalize else tuple(vector)
