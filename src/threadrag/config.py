"""Environment-driven settings for the ThreadRAG service."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """All knobs are read from ``THREADRAG_*`` variables or a local ``.env`` file."""

    model_config = SettingsConfigDict(env_prefix="threadrag_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"
    log_level: str = "INFO"
    log_json: bool = True

    # Vector index; a host selects the HTTP client, otherwise local or in-memory
    chroma_persist_dir: Path | None = None
    chroma_collection: str = "threadrag-default"
    chroma_host: str | None = None
    chroma_port: int | None = None
    chroma_ssl: bool = False

    embedding_model: str = "BAAI/bge-small-en-v1.5"
    embedding_dim: int = Field(default=384, ge=1)
    use_model_embeddings: bool = False

    default_model: str = "template"
    generator_model: str = "Qwen/Qwen2.5-1.8B-Instruct"
    generator_max_new_tokens: int = Field(default=512, ge=1)
    generator_temperature: float = Field(default=0.3, ge=0.0)
    use_model_generator: bool = False
    summarizer_model: str | None = None

    chunk_size: int = Field(default=600, ge=1)
    chunk_overlap: int = Field(default=100, ge=0)
    splitter: Literal["window", "recursive"] = "window"

    grounding_enabled: bool = True
    retrieval_top_k: int = Field(default=2, ge=1)

    summarize_threshold: int = Field(default=6, ge=0)
    retain_messages: int = Field(default=2, ge=0)
    history_window: int | None = Field(default=None, ge=0)

    template_path: Path | None = None
    default_template: str = "grounded-chat"

    allowed_extensions: str = ".pdf,.docx,.txt,.md,.json"
    max_files: int = Field(default=12, ge=1)
    max_upload_size_mb: int = Field(default=25, ge=1)

    @model_validator(mode="after")
    def _check_ranges(self) -> "Settings":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        if self.retain_messages > self.summarize_threshold:
            raise ValueError("retain_messages cannot exceed summarize_threshold")
        return self

    @property
    def allowed_extensions_tuple(self) -> tuple[str, ...]:
        parts = (part.strip().lower() for part in self.allowed_extensions.split(","))
        return tuple(part if part.startswith(".") else f".{part}" for part in parts if part)

    @property
    def effective_summarizer_model(self) -> str:
        return self.summarizer_model or self.default_model


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return the process settings, or a fresh instance built from ``override``."""

    if override:
        return Settings(**override)
    return _cached_settings()
