"""Error taxonomy shared by the ThreadRAG pipeline."""

from __future__ import annotations


class ThreadRAGError(RuntimeError):
    """Base class for pipeline errors."""


class InvalidParameter(ThreadRAGError, ValueError):
    """Raised for malformed chunking, template or turn parameters."""


class TemplateNotFound(ThreadRAGError, LookupError):
    """Raised when a prompt template name is absent from the registry."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Prompt template not found: {name}")
        self.name = name


class IndexUnavailable(ThreadRAGError):
    """Raised when the vector index cannot be reached."""


class GenerationFailure(ThreadRAGError):
    """Raised when the language model fails while answering a turn."""


class SummarizationFailure(ThreadRAGError):
    """Raised (or reported) when rolling summarization fails."""


__all__ = [
    "GenerationFailure",
    "IndexUnavailable",
    "InvalidParameter",
    "SummarizationFailure",
    "TemplateNotFound",
    "ThreadRAGError",
]
