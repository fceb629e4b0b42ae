"""Structured logging and Prometheus instrumentation shared by every stage."""

from __future__ import annotations

import logging
from typing import Iterable

import structlog
from prometheus_client import Counter, Histogram

_configured = False


def configure_logging(level: int | str = logging.INFO, *, json_logs: bool = True) -> None:
    """Configure structlog once per process; later calls are no-ops."""

    global _configured  # noqa: PLW0603 - module-level guard
    if _configured:
        return
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format="%(message)s")
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(colors=False)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str = "threadrag") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()


class PipelineMetrics:
    """Process-wide Prometheus instruments, one per observable stage of a turn."""

    ingestion_latency = Histogram(
        "threadrag_ingestion_duration_seconds",
        "Seconds spent chunking one ingested source.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
    )
    ingestion_chunks = Histogram(
        "threadrag_ingestion_chunk_count",
        "Chunks produced per ingested source.",
        buckets=(0, 1, 4, 16, 64, 256),
    )
    retrieval_latency = Histogram(
        "threadrag_retrieval_duration_seconds",
        "Seconds spent querying the vector index.",
        buckets=(0.005, 0.02, 0.1, 0.5, 2.0),
    )
    retrieved_chunks = Histogram(
        "threadrag_retrieved_chunk_count",
        "Chunks returned per retrieval.",
        buckets=(0, 1, 2, 4, 8, 16),
    )
    similarity = Histogram(
        "threadrag_retrieval_similarity",
        "Cosine similarity of each retrieved chunk, clamped to [0, 1].",
        buckets=(0.1, 0.3, 0.5, 0.7, 0.9, 1.0),
    )
    index_unavailable = Counter(
        "threadrag_index_unavailable_total",
        "Turns answered without grounding because the index was unreachable.",
    )
    generation_latency = Histogram(
        "threadrag_generation_duration_seconds",
        "Seconds from first request to last streamed token.",
        buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 60.0),
    )
    streamed_tokens = Histogram(
        "threadrag_streamed_token_count",
        "Tokens streamed per answer.",
        buckets=(0, 8, 32, 128, 512, 2048),
    )
    summarizations = Counter(
        "threadrag_summarization_total",
        "Rolling summarization attempts by outcome.",
        ["outcome"],
    )
    turns = Counter(
        "threadrag_turn_total",
        "Conversation turns by outcome.",
        ["outcome"],
    )

    @classmethod
    def observe_ingestion(cls, duration_seconds: float, chunk_count: int) -> None:
        cls.ingestion_latency.observe(duration_seconds)
        cls.ingestion_chunks.observe(chunk_count)

    @classmethod
    def observe_retrieval(cls, duration_seconds: float, chunk_count: int, scores: Iterable[float]) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.retrieved_chunks.observe(chunk_count)
        for score in scores:
            cls.similarity.observe(min(max(score, 0.0), 1.0))

    @classmethod
    def observe_generation(cls, duration_seconds: float, token_count: int) -> None:
        cls.generation_latency.observe(duration_seconds)
        cls.streamed_tokens.observe(token_count)

    @classmethod
    def record_index_unavailable(cls) -> None:
        cls.index_unavailable.inc()

    @classmethod
    def record_summarization(cls, outcome: str) -> None:
        cls.summarizations.labels(outcome=outcome).inc()

    @classmethod
    def record_turn(cls, outcome: str) -> None:
        cls.turns.labels(outcome=outcome).inc()


__all__ = [
    "PipelineMetrics",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_logger",
]
