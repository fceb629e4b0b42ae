from __future__ import annotations

import pytest
from pydantic import ValidationError

from threadrag.config import get_settings


def test_memory_and_retrieval_defaults():
    settings = get_settings({})
    assert settings.summarize_threshold == 6
    assert settings.retain_messages == 2
    assert settings.history_window is None
    assert settings.retrieval_top_k == 2
    assert settings.default_model == "template"


def test_summarizer_falls_back_to_default_model():
    settings = get_settings({"default_model": "fake-llm"})
    assert settings.effective_summarizer_model == "fake-llm"
    assert get_settings({"summarizer_model": "small"}).effective_summarizer_model == "small"


def test_allowed_extensions_are_normalized():
    settings = get_settings({"allowed_extensions": ".TXT, md,,"})
    assert settings.allowed_extensions_tuple == (".txt", ".md")


def test_environment_variables_are_read(monkeypatch):
    monkeypatch.setenv("THREADRAG_SUMMARIZE_THRESHOLD", "10")
    monkeypatch.setenv("THREADRAG_GROUNDING_ENABLED", "false")

    settings = get_settings({"environment": "test"})

    assert settings.summarize_threshold == 10
    assert settings.grounding_enabled is False


@pytest.mark.parametrize(
    "override",
    [
        {"chunk_size": 100, "chunk_overlap": 100},
        {"summarize_threshold": 2, "retain_messages": 3},
        {"retrieval_top_k": 0},
    ],
)
def test_inconsistent_values_are_rejected(override):
    with pytest.raises(ValidationError):
        get_settings(override)
