"""In-process conversation thread storage."""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from typing import Sequence

from threadrag.errors import InvalidParameter
from threadrag.models import ConversationThread, Message, Role


@dataclass
class _ThreadEntry:
    thread_id: str
    messages: list[Message] = field(default_factory=list)
    summary: str | None = None
    next_order: int = 0
    turn_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def snapshot(self) -> ConversationThread:
        return ConversationThread(
            thread_id=self.thread_id,
            messages=tuple(self.messages),
            summary=self.summary,
        )


class ThreadStore:
    """Mapping from thread id to conversation memory.

    Mutations are guarded by a single ``threading.Lock`` so every read sees a
    consistent summary/messages pair. Turns are serialized per thread through
    ``turn_lock``; threads never share a turn lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._threads: dict[str, _ThreadEntry] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._threads)

    def __contains__(self, thread_id: object) -> bool:
        with self._lock:
            return thread_id in self._threads

    def thread_ids(self) -> list[str]:
        with self._lock:
            return list(self._threads)

    def _entry(self, thread_id: str) -> _ThreadEntry:
        # Caller holds self._lock
        if not thread_id:
            raise InvalidParameter("thread_id must be a non-empty string")
        entry = self._threads.get(thread_id)
        if entry is None:
            entry = _ThreadEntry(thread_id=thread_id)
            self._threads[thread_id] = entry
        return entry

    def get(self, thread_id: str) -> ConversationThread:
        """Return the thread, creating an empty one on first access."""

        with self._lock:
            return self._entry(thread_id).snapshot()

    def turn_lock(self, thread_id: str) -> asyncio.Lock:
        with self._lock:
            return self._entry(thread_id).turn_lock

    def append(self, thread_id: str, message: Message) -> None:
        with self._lock:
            entry = self._entry(thread_id)
            if message.created_order < entry.next_order:
                raise InvalidParameter(
                    f"Message order {message.created_order} does not follow {entry.next_order - 1} "
                    f"in thread {thread_id}"
                )
            entry.messages.append(message)
            entry.next_order = message.created_order + 1

    def add_message(self, thread_id: str, role: Role, content: str) -> Message:
        """Create the next message for the thread and append it."""

        with self._lock:
            entry = self._entry(thread_id)
            message = Message(role=Role(role), content=content, created_order=entry.next_order)
            entry.messages.append(message)
            entry.next_order += 1
            return message

    def replace(self, thread_id: str, *, summary: str | None, messages: Sequence[Message]) -> ConversationThread:
        """Atomically swap the summary and retained messages.

        ``messages`` must be an ordered subset of the thread's current
        messages; otherwise nothing changes.
        """

        with self._lock:
            entry = self._entry(thread_id)
            current = {message.id for message in entry.messages}
            retained = list(messages)
            if any(message.id not in current for message in retained):
                raise InvalidParameter(f"Retained messages must already belong to thread {thread_id}")
            orders = [message.created_order for message in retained]
            if orders != sorted(set(orders)):
                raise InvalidParameter("Retained messages must be strictly ordered")
            entry.summary = summary
            entry.messages = retained
            return entry.snapshot()

    def delete(self, thread_id: str) -> bool:
        with self._lock:
            return self._threads.pop(thread_id, None) is not None
