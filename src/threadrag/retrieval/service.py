"""Retrieval built on top of the vector index."""

from __future__ import annotations

import time
from typing import Protocol, Sequence

from threadrag.embeddings import EmbeddingStore
from threadrag.errors import IndexUnavailable, InvalidParameter
from threadrag.metrics.observability import PipelineMetrics, get_logger
from threadrag.models import Chunk, RetrievalResult, ScoredChunk

# Scores closer than this are treated as ties
_SCORE_PRECISION = 6


def _rank_key(hit: ScoredChunk) -> tuple[float, int]:
    return (-round(hit.score, _SCORE_PRECISION), hit.sequence)


class Retriever(Protocol):
    """Index chunks and retrieve the most similar ones for a query."""

    def index(self, chunks: Sequence[Chunk]) -> None:
        """Idempotently upsert chunks into the index."""

    def query(self, text: str, k: int) -> Sequence[RetrievalResult]:
        """Return at most ``k`` results ordered by descending score."""


class VectorRetriever:
    """Retriever backed by an embedding store.

    Failures of the backing store are surfaced as ``IndexUnavailable`` and
    never retried here; callers decide whether to answer ungrounded.
    """

    def __init__(self, store: EmbeddingStore) -> None:
        self._store = store
        self._logger = get_logger("retrieval")

    def index(self, chunks: Sequence[Chunk]) -> None:
        if not chunks:
            return
        try:
            ids = self._store.upsert(chunks)
        except Exception as exc:
            raise IndexUnavailable(f"Vector index upsert failed: {exc}") from exc
        self._logger.info("retrieval.indexed", chunk_count=len(ids))

    def query(self, text: str, k: int) -> Sequence[RetrievalResult]:
        if k < 1:
            raise InvalidParameter(f"k must be >= 1, got {k}")
        start = time.perf_counter()
        try:
            hits = self._candidates(text, k)
        except Exception as exc:
            raise IndexUnavailable(f"Vector index query failed: {exc}") from exc
        results = [
            RetrievalResult(chunk_text=hit.chunk.text, score=hit.score, rank=rank, source_id=hit.chunk.source_id)
            for rank, hit in enumerate(hits[:k], start=1)
        ]
        duration = time.perf_counter() - start
        PipelineMetrics.observe_retrieval(duration, len(results), (result.score for result in results))
        self._logger.info(
            "retrieval.complete",
            chunk_count=len(results),
            duration_seconds=duration,
            top_k=k,
        )
        return results

    def _candidates(self, text: str, k: int) -> list[ScoredChunk]:
        """Fetch until the k-th hit is strictly better than everything left out.

        Approximate search picks arbitrarily among equal scores, so the fetch
        widens while the cutoff still ties with the last candidate.
        """

        fetch = k * 2
        while True:
            hits = sorted(self._store.similarity_search(text, top_k=fetch), key=_rank_key)
            if len(hits) < fetch or _rank_key(hits[k - 1])[0] < _rank_key(hits[-1])[0]:
                return hits
            fetch *= 2
