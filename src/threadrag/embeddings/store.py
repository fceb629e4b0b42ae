"""Vector index backed by chromadb."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Protocol, Sequence

import chromadb
from chromadb.api import ClientAPI

from threadrag.embeddings.service import EmbeddingBackend
from threadrag.models import Chunk, ScoredChunk


class EmbeddingStore(Protocol):
    """Protocol for vector index backends."""

    def upsert(self, chunks: Sequence[Chunk]) -> Sequence[str]:
        """Persist embeddings for the provided chunks, keyed by chunk id."""

    def similarity_search(self, query: str, *, top_k: int = 5) -> Sequence[ScoredChunk]:
        """Return up to ``top_k`` chunks most similar to the query."""

    def count(self) -> int:
        """Return total number of stored chunks."""

    def reset(self) -> None:
        """Remove all stored embeddings."""


class ChromaEmbeddingStore:
    """Chroma-backed embedding store using cosine distance.

    Each chunk is stored with a dense ``sequence`` number assigned on first
    insertion; re-upserting an existing chunk id keeps its sequence so
    insertion order stays stable for tie breaking.
    """

    def __init__(
        self,
        embedding_backend: EmbeddingBackend,
        collection_name: str = "threadrag",
        *,
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
    ) -> None:
        if client is not None:
            self._client = client
        elif persist_directory is not None:
            self._client = chromadb.PersistentClient(path=str(persist_directory))
        else:
            self._client = chromadb.EphemeralClient()
        self._collection_name = collection_name
        self._collection = self._open_collection()
        self._backend = embedding_backend

    def _open_collection(self):
        return self._client.get_or_create_collection(
            name=self._collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    def upsert(self, chunks: Sequence[Chunk]) -> Sequence[str]:
        # Later duplicates of an id within one batch win
        unique: dict[str, Chunk] = {}
        for chunk in chunks:
            unique[chunk.chunk_id] = chunk
        if not unique:
            return []
        ids = list(unique)
        existing = self._collection.get(ids=ids, include=["metadatas"])
        sequences: dict[str, int] = {}
        for chunk_id, metadata in zip(existing.get("ids") or [], existing.get("metadatas") or []):
            if isinstance(metadata, Mapping) and "sequence" in metadata:
                sequences[chunk_id] = int(metadata["sequence"])
        next_sequence = int(self._collection.count())
        for chunk_id in ids:
            if chunk_id not in sequences:
                sequences[chunk_id] = next_sequence
                next_sequence += 1

        embeddings = self._backend.embed_chunks(list(unique.values()))
        self._collection.upsert(
            ids=[embedding.chunk.chunk_id for embedding in embeddings],
            documents=[embedding.chunk.text for embedding in embeddings],
            embeddings=[list(embedding.vector) for embedding in embeddings],
            metadatas=[
                self._serialize_chunk(embedding.chunk, sequences[embedding.chunk.chunk_id])
                for embedding in embeddings
            ],
        )
        return ids

    def similarity_search(self, query: str, *, top_k: int = 5) -> Sequence[ScoredChunk]:
        total = self.count()
        if top_k <= 0 or total == 0:
            return []
        vector = list(self._backend.embed_query(query))
        results = self._collection.query(
            query_embeddings=[vector],
            n_results=min(top_k, total),
            include=["documents", "metadatas", "distances"],
        )
        return self._deserialize_results(results)

    def count(self) -> int:
        return int(self._collection.count())

    def reset(self) -> None:
        self._client.delete_collection(self._collection_name)
        self._collection = self._open_collection()

    def _serialize_chunk(self, chunk: Chunk, sequence: int) -> MutableMapping[str, Any]:
        return {
            "source_id": chunk.source_id,
            "position": chunk.position,
            "sequence": sequence,
            "chunk_metadata": self._dumps(chunk.metadata),
        }

    def _deserialize_results(self, results: Mapping[str, Any]) -> Sequence[ScoredChunk]:
        documents = self._first(results.get("documents"))
        metadatas = self._first(results.get("metadatas"))
        distances = self._first(results.get("distances"))
        retrieved: list[ScoredChunk] = []
        for document, metadata, distance in zip(documents, metadatas, distances, strict=False):
            metadata = metadata or {}
            chunk = Chunk(
                source_id=str(metadata.get("source_id", "")),
                text=document or "",
                position=int(metadata.get("position", 0)),
                metadata=self._loads_dict(metadata.get("chunk_metadata")),
            )
            retrieved.append(
                ScoredChunk(
                    chunk=chunk,
                    score=min(max(1.0 - float(distance), -1.0), 1.0),
                    sequence=int(metadata.get("sequence", 0)),
                )
            )
        return retrieved

    @staticmethod
    def _first(value: Any) -> list:
        if isinstance(value, list) and value:
            return list(value[0] or [])
        return []

    @staticmethod
    def _dumps(value: object) -> str:
        try:
            return json.dumps(value, default=str)
        except TypeError:
            return "{}"

    @staticmethod
    def _loads_dict(value: object) -> Dict[str, object]:
        if isinstance(value, str) and value:
            try:
                loaded = json.loads(value)
            except json.JSONDecodeError:
                return {}
            return loaded if isinstance(loaded, dict) else {}
        return {}
