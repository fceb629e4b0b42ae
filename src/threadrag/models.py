"""Shared domain models used across the ThreadRAG pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Sequence
from uuid import uuid4


class Role(str, Enum):
    """Author of a conversation message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class Message:
    """Single immutable message within a thread."""

    role: Role
    content: str
    created_order: int
    id: str = field(default_factory=lambda: uuid4().hex)


@dataclass(frozen=True)
class ConversationThread:
    """Snapshot of a thread's memory: retained messages plus rolling summary."""

    thread_id: str
    messages: tuple[Message, ...] = ()
    summary: str | None = None

    @property
    def last_order(self) -> int:
        return self.messages[-1].created_order if self.messages else -1


@dataclass(frozen=True)
class Chunk:
    """Bounded slice of source text ready for embedding."""

    source_id: str
    text: str
    position: int
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def chunk_id(self) -> str:
        return f"{self.source_id}-{self.position}"


@dataclass(frozen=True)
class ScoredChunk:
    """Chunk returned from the vector store with its similarity score."""

    chunk: Chunk
    score: float
    sequence: int = 0


@dataclass(frozen=True)
class RetrievalResult:
    """Ranked retrieval hit handed to prompt assembly."""

    chunk_text: str
    score: float
    rank: int
    source_id: str = ""


@dataclass(frozen=True)
class PromptContext:
    """Everything the prompt template needs for one model call."""

    question: str
    history: str = ""
    summary: str | None = None
    retrieved_context: Sequence[str] = ()
