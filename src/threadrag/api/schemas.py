"""Pydantic models for the ThreadRAG API."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class ChatMessageModel(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class ChatRequest(BaseModel):
    """Turn request; the last message is the user's new question."""

    messages: List[ChatMessageModel] = Field(..., min_length=1)
    model: Optional[str] = Field(default=None, description="Language model name; defaults to the deployment model")
    template: Optional[str] = Field(default=None, description="Prompt template name")
    grounded: Optional[bool] = Field(default=None, description="Override retrieval grounding for this turn")
    top_k: Optional[int] = Field(default=None, ge=1, description="Number of chunks to retrieve")


class MessageModel(BaseModel):
    id: str
    role: str
    content: str
    created_order: int


class ThreadResponse(BaseModel):
    thread_id: str
    summary: Optional[str] = None
    messages: List[MessageModel]


class TextIngestionRequest(BaseModel):
    """Payload for ingesting raw text content."""

    texts: List[str] = Field(..., description="List of raw text snippets to ingest")
    source_id: Optional[str] = Field(default=None, description="Prefix for generated source ids; unique per request when omitted")


class RecordIngestionRequest(BaseModel):
    """Payload for ingesting structured records."""

    records: List[Dict[str, Any]] = Field(..., min_length=1)
    source_id: Optional[str] = Field(default=None, description="Prefix for record source ids; unique per request when omitted")
    fields: Optional[List[str]] = Field(default=None, description="Only render these record keys")


class IngestionResponse(BaseModel):
    sources: List[str]
    chunk_count: int = Field(..., ge=0)


class IndexStatsResponse(BaseModel):
    collection: str
    total_chunks: int
    threads: int
