"""Tests for ingestion-related helpers."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from threadrag.errors import InvalidParameter
from threadrag.ingestion import DocumentIngestor, IngestionConfig, UnsupportedFileTypeError, render_record

CITIES = [
    {"city": "Springfield", "mayor": "Alice Moreau", "population": 30720, "slug": "springfield"},
    {"city": "Shelbyville", "mayor": "Bram Ito", "population": 12500, "slug": "shelbyville"},
]


def test_ingestor_records_display_name(tmp_path: Path) -> None:
    document = tmp_path / "example.txt"
    document.write_text("Hello   world\n\nsecond line")

    chunks = DocumentIngestor().ingest([document])

    assert chunks, "Expected at least one chunk from ingestion"
    assert chunks[0].text == "Hello world second line"
    for chunk in chunks:
        assert chunk.metadata["display_name"] == "example.txt"


def test_ingest_json_records_file(tmp_path: Path) -> None:
    path = tmp_path / "city.json"
    path.write_text(json.dumps({"cities": CITIES}), encoding="utf-8")

    chunks = DocumentIngestor().ingest([path])

    assert len(chunks) == 2
    assert chunks[0].source_id.endswith("#0")
    assert "mayor: Alice Moreau" in chunks[0].text
    assert "mayor: Bram Ito" in chunks[1].text


def test_ingest_records_restricts_fields() -> None:
    chunks = DocumentIngestor().ingest_records("cities", CITIES, fields=["city", "mayor"])

    assert [chunk.text for chunk in chunks] == [
        "city: Springfield\nmayor: Alice Moreau",
        "city: Shelbyville\nmayor: Bram Ito",
    ]
    assert [chunk.source_id for chunk in chunks] == ["cities#0", "cities#1"]


def test_render_record_serializes_nested_values() -> None:
    assert render_record({"name": "x", "tags": ["a", "b"]}) == 'name: x\ntags: ["a", "b"]'


def test_long_text_is_split_with_configured_window() -> None:
    ingestor = DocumentIngestor(IngestionConfig(chunk_size=50, chunk_overlap=10))
    chunks = ingestor.ingest_text("notes", "word " * 100)

    assert len(chunks) > 1
    assert all(len(chunk.text) <= 50 for chunk in chunks)
    assert chunks[0].text[-10:] == chunks[1].text[:10]


def test_recursive_splitter_respects_chunk_size() -> None:
    ingestor = DocumentIngestor(IngestionConfig(chunk_size=40, chunk_overlap=10, splitter="recursive"))
    chunks = ingestor.ingest_text("notes", "Sentence number one. " * 20)

    assert len(chunks) > 1
    assert all(len(chunk.text) <= 40 for chunk in chunks)
    assert [chunk.position for chunk in chunks] == list(range(len(chunks)))


def test_unsupported_extension_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "image.png"
    path.write_bytes(b"\x89PNG")

    with pytest.raises(UnsupportedFileTypeError):
        DocumentIngestor().ingest([path])


def test_invalid_chunk_configuration_is_rejected() -> None:
    with pytest.raises(InvalidParameter):
        DocumentIngestor(IngestionConfig(chunk_size=10, chunk_overlap=10))
