"""Conversation memory: thread storage and rolling summarization."""

from .controller import MemoryController, MemoryPolicy, MemoryState, TransitionResult
from .store import ThreadStore

__all__ = ["MemoryController", "MemoryPolicy", "MemoryState", "ThreadStore", "TransitionResult"]
