from __future__ import annotations

import math

from threadrag.embeddings.service import EmbeddingConfig, HashEmbeddingBackend, SentenceEmbeddingBackend
from threadrag.models import Chunk


def _cosine(a, b) -> float:
    return sum(x * y for x, y in zip(a, b))


def test_hash_vectors_are_unit_length_with_configured_dim():
    backend = HashEmbeddingBackend(EmbeddingConfig(dim=64))

    for text in ["hello world", "", "!!!"]:
        vec = backend.embed_query(text)
        assert len(vec) == 64
        assert math.isclose(sum(v * v for v in vec), 1.0, rel_tol=1e-9)


def test_shared_vocabulary_scores_higher_than_unrelated_text():
    backend = HashEmbeddingBackend(EmbeddingConfig(dim=256))
    query = backend.embed_query("Who is the mayor of Springfield?")

    related = backend.embed_query("The mayor of Springfield is Alice Moreau.")
    unrelated = backend.embed_query("Bus routes change on public holidays.")

    assert _cosine(query, related) > _cosine(query, unrelated)


def test_chunk_vectors_match_query_vectors_for_same_text():
    backend = HashEmbeddingBackend(EmbeddingConfig(dim=32))
    chunks = [Chunk(source_id="doc", text="alpha", position=0), Chunk(source_id="doc", text="beta", position=1)]

    embeddings = backend.embed_chunks(chunks)

    assert [e.chunk for e in embeddings] == chunks
    assert embeddings[0].vector == backend.embed_query("alpha")
    assert embeddings[1].vector != embeddings[0].vector


def test_sentence_backend_without_model_uses_hash_vectors():
    config = EmbeddingConfig(dim=16, use_model=False)
    backend = SentenceEmbeddingBackend(config)

    assert backend.uses_model is False
    assert backend.embed_query("q") == HashEmbeddingBackend(config).embed_query("q")
    assert backend.embed_chunks([]) == []
