"""Sliding-window character chunker."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from threadrag.errors import InvalidParameter
from threadrag.models import Chunk


def validate_chunk_parameters(chunk_size: int, chunk_overlap: int) -> None:
    if chunk_size <= 0:
        raise InvalidParameter(f"chunk_size must be positive, got {chunk_size}")
    if chunk_overlap < 0 or chunk_overlap >= chunk_size:
        raise InvalidParameter(
            f"chunk_overlap must satisfy 0 <= overlap < chunk_size ({chunk_size}), got {chunk_overlap}"
        )


def split_text(
    text: str,
    chunk_size: int,
    chunk_overlap: int,
    *,
    source_id: str = "",
    metadata: Mapping[str, Any] | None = None,
) -> list[Chunk]:
    """Split ``text`` into windows of ``chunk_size`` characters.

    Window ``i`` starts at ``i * (chunk_size - chunk_overlap)`` so adjacent
    chunks share exactly ``chunk_overlap`` characters. Splitting stops at the
    first window that reaches the end of the text; only that last window can
    be shorter than ``chunk_size``.
    """

    validate_chunk_parameters(chunk_size, chunk_overlap)
    step = chunk_size - chunk_overlap
    extra = dict(metadata or {})
    chunks: list[Chunk] = []
    start = 0
    while start < len(text):
        end = min(start + chunk_size, len(text))
        chunks.append(
            Chunk(
                source_id=source_id,
                text=text[start:end],
                position=len(chunks),
                metadata={**extra, "start_index": start},
            )
        )
        if end == len(text):
            break
        start += step
    return chunks


@dataclass(frozen=True)
class TextChunker:
    """Chunker bound to a fixed size/overlap pair."""

    chunk_size: int = 600
    chunk_overlap: int = 100

    def __post_init__(self) -> None:
        validate_chunk_parameters(self.chunk_size, self.chunk_overlap)

    def split(self, text: str, *, source_id: str = "", metadata: Mapping[str, Any] | None = None) -> list[Chunk]:
        return split_text(text, self.chunk_size, self.chunk_overlap, source_id=source_id, metadata=metadata)
