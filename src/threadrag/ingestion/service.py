"""Document and record ingestion for ThreadRAG."""

from __future__ import annotations

import json
import re
import time
import unicodedata
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Literal, Mapping, Protocol, Sequence
from uuid import NAMESPACE_URL, uuid5

from langchain_community.document_loaders import Docx2txtLoader, PyPDFLoader, TextLoader
from langchain_community.document_loaders.base import BaseLoader
from langchain_text_splitters import RecursiveCharacterTextSplitter

from threadrag.errors import ThreadRAGError
from threadrag.ingestion.chunking import TextChunker, validate_chunk_parameters
from threadrag.metrics.observability import PipelineMetrics, get_logger
from threadrag.models import Chunk


class IngestionError(ThreadRAGError):
    """Raised when ingestion fails for a particular document."""


class UnsupportedFileTypeError(IngestionError):
    """Raised when a document extension is not supported by the ingestor."""


@dataclass(frozen=True)
class IngestionConfig:
    """Configuration for document ingestion."""

    chunk_size: int = 600
    chunk_overlap: int = 100
    encoding: str = "utf-8"
    splitter: Literal["window", "recursive"] = "window"


class Ingestor(Protocol):
    """Protocol for ingestion implementations."""

    def ingest(self, paths: Sequence[Path]) -> Sequence[Chunk]:
        """Ingest the given document paths into chunks."""

    def ingest_text(self, source_id: str, text: str) -> Sequence[Chunk]:
        """Chunk a raw text snippet."""

    def ingest_records(
        self,
        source_id: str,
        records: Sequence[Mapping[str, Any]],
        fields: Sequence[str] | None = None,
    ) -> Sequence[Chunk]:
        """Chunk structured records, one source per record."""


def _normalize_text(raw: str) -> str:
    normalized = unicodedata.normalize("NFKC", raw)
    normalized = normalized.replace("\u00a0", " ")
    normalized = re.sub(r"\s+", " ", normalized)
    return normalized.strip()


def render_record(record: Mapping[str, Any], fields: Sequence[str] | None = None) -> str:
    """Render a structured record as ``key: value`` lines."""

    keys = list(fields) if fields else list(record.keys())
    lines = []
    for key in keys:
        if key not in record:
            continue
        value = record[key]
        if isinstance(value, (dict, list)):
            value = json.dumps(value, ensure_ascii=False)
        lines.append(f"{key}: {value}")
    return "\n".join(lines)


def _extract_records(payload: Any) -> list[Mapping[str, Any]]:
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, Mapping)]
    if isinstance(payload, Mapping):
        for value in payload.values():
            if isinstance(value, list):
                return [item for item in value if isinstance(item, Mapping)]
        return [payload]
    raise IngestionError("JSON source must hold an object or a list of objects")


class DocumentIngestor:
    """Ingest documents via LangChain loaders and structured records from JSON."""

    _LOADERS: Mapping[str, type[BaseLoader]] = {
        ".pdf": PyPDFLoader,
        ".docx": Docx2txtLoader,
        ".txt": TextLoader,
        ".md": TextLoader,
    }

    def __init__(self, config: IngestionConfig | None = None) -> None:
        self._config = config or IngestionConfig()
        self._logger = get_logger("ingestion")
        validate_chunk_parameters(self._config.chunk_size, self._config.chunk_overlap)
        self._chunker = TextChunker(self._config.chunk_size, self._config.chunk_overlap)
        self._recursive: RecursiveCharacterTextSplitter | None = None
        if self._config.splitter == "recursive":
            self._recursive = RecursiveCharacterTextSplitter(
                chunk_size=self._config.chunk_size,
                chunk_overlap=self._config.chunk_overlap,
            )

    def ingest(self, paths: Sequence[Path]) -> Sequence[Chunk]:
        chunks: List[Chunk] = []
        for path in paths:
            chunks.extend(self._ingest_single(Path(path)))
        return chunks

    def ingest_text(self, source_id: str, text: str) -> Sequence[Chunk]:
        start = time.perf_counter()
        chunks = self._split(_normalize_text(text), source_id=source_id, metadata={"source": source_id})
        self._observe(source_id, chunks, start)
        return chunks

    def ingest_records(
        self,
        source_id: str,
        records: Sequence[Mapping[str, Any]],
        fields: Sequence[str] | None = None,
    ) -> Sequence[Chunk]:
        start = time.perf_counter()
        chunks: List[Chunk] = []
        for index, record in enumerate(records):
            rendered = render_record(record, fields)
            if not rendered:
                continue
            record_source = f"{source_id}#{index}"
            chunks.extend(
                self._split(rendered, source_id=record_source, metadata={"source": source_id, "record": index})
            )
        self._observe(source_id, chunks, start)
        return chunks

    def _ingest_single(self, path: Path) -> Sequence[Chunk]:
        suffix = path.suffix.lower()
        source_id = uuid5(NAMESPACE_URL, str(path.resolve())).hex
        if suffix == ".json":
            try:
                payload = json.loads(path.read_text(encoding=self._config.encoding))
            except (OSError, json.JSONDecodeError) as exc:
                raise IngestionError(f"Failed to load {path}: {exc}") from exc
            return self.ingest_records(source_id, _extract_records(payload))

        loader_cls = self._LOADERS.get(suffix)
        if loader_cls is None:
            raise UnsupportedFileTypeError(f"Unsupported document type: {suffix or '<none>'}")

        start = time.perf_counter()
        try:
            documents = self._build_loader(loader_cls, path).load()
        except Exception as exc:  # pragma: no cover - loader specific errors
            raise IngestionError(f"Failed to load {path}: {exc}") from exc

        text = "\n\n".join(_normalize_text(document.page_content) for document in documents)
        chunks = self._split(
            text,
            source_id=source_id,
            metadata={"source": str(path), "display_name": path.name},
        )
        self._observe(str(path), chunks, start)
        return chunks

    def _split(self, text: str, *, source_id: str, metadata: Mapping[str, Any]) -> list[Chunk]:
        if self._recursive is None:
            return self._chunker.split(text, source_id=source_id, metadata=metadata)
        return [
            Chunk(source_id=source_id, text=piece, position=position, metadata=dict(metadata))
            for position, piece in enumerate(self._recursive.split_text(text))
        ]

    def _build_loader(self, loader_cls: type[BaseLoader], path: Path) -> BaseLoader:
        if loader_cls is TextLoader:
            return loader_cls(str(path), encoding=self._config.encoding)
        return loader_cls(str(path))

    def _observe(self, source: str, chunks: Sequence[Chunk], start: float) -> None:
        duration = time.perf_counter() - start
        PipelineMetrics.observe_ingestion(duration, len(chunks))
        self._logger.info(
            "ingestion.complete",
            source=source,
            chunk_count=len(chunks),
            duration_seconds=duration,
        )
