"""Document ingestion pipeline."""

from .chunking import TextChunker, split_text
from .service import (
    DocumentIngestor,
    IngestionConfig,
    IngestionError,
    Ingestor,
    UnsupportedFileTypeError,
    render_record,
)

__all__ = [
    "DocumentIngestor",
    "IngestionConfig",
    "IngestionError",
    "Ingestor",
    "TextChunker",
    "UnsupportedFileTypeError",
    "render_record",
    "split_text",
]
