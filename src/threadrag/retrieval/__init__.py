"""Retrieval components."""

from .service import Retriever, VectorRetriever

__all__ = ["Retriever", "VectorRetriever"]
