from __future__ import annotations

import asyncio

import pytest
from conftest import ScriptedModel

from threadrag.errors import InvalidParameter, SummarizationFailure
from threadrag.memory import MemoryController, MemoryPolicy, MemoryState, ThreadStore
from threadrag.models import Role


def _seed(store: ThreadStore, thread_id: str, count: int) -> None:
    for i in range(count):
        store.add_message(thread_id, Role.USER if i % 2 == 0 else Role.ASSISTANT, f"message {i}")


def test_below_threshold_keeps_conversing():
    store = ThreadStore()
    summarizer = ScriptedModel()
    _seed(store, "t", 6)

    result = asyncio.run(MemoryController(store, summarizer).transition("t"))

    assert result.state is MemoryState.CONVERSING
    assert result.summarized is False
    assert summarizer.invocations == []
    assert len(store.get("t").messages) == 6


def test_crossing_threshold_compacts_to_last_two_messages():
    store = ThreadStore()
    summarizer = ScriptedModel(summary="  - greetings were exchanged  ")
    _seed(store, "t", 7)

    result = asyncio.run(MemoryController(store, summarizer).transition("t"))

    thread = store.get("t")
    assert result.summarized is True
    assert result.state is MemoryState.CONVERSING
    assert thread.summary == "- greetings were exchanged"
    assert [m.content for m in thread.messages] == ["message 5", "message 6"]
    assert len(summarizer.invocations) == 1
    prompt = summarizer.invocations[0]
    assert len(prompt) == 8
    assert prompt[-1].type == "system"
    assert "bullet-point summary" in prompt[-1].content


def test_existing_summary_is_extended():
    store = ThreadStore()
    _seed(store, "t", 3)
    store.replace("t", summary="old summary", messages=store.get("t").messages)
    _seed(store, "t", 4)
    summarizer = ScriptedModel(summary="new summary")

    asyncio.run(MemoryController(store, summarizer).transition("t"))

    instruction = summarizer.invocations[0][-1].content
    assert "old summary" in instruction
    assert "Extend the summary" in instruction
    assert store.get("t").summary == "new summary"


def test_summarization_failure_leaves_thread_untouched():
    store = ThreadStore()
    _seed(store, "t", 8)
    before = store.get("t")

    result = asyncio.run(MemoryController(store, ScriptedModel(fail_summary=True)).transition("t"))

    assert result.state is MemoryState.CONVERSING
    assert result.summarized is False
    assert isinstance(result.error, SummarizationFailure)
    assert store.get("t") == before


def test_empty_summary_counts_as_failure():
    store = ThreadStore()
    _seed(store, "t", 7)

    result = asyncio.run(MemoryController(store, ScriptedModel(summary="   ")).transition("t"))

    assert isinstance(result.error, SummarizationFailure)
    assert len(store.get("t").messages) == 7


def test_policy_is_configurable():
    store = ThreadStore()
    _seed(store, "t", 4)
    controller = MemoryController(store, ScriptedModel(), MemoryPolicy(summarize_threshold=3, retain_messages=1))

    asyncio.run(controller.transition("t"))

    assert [m.content for m in store.get("t").messages] == ["message 3"]


def test_invalid_policy_is_rejected():
    with pytest.raises(InvalidParameter):
        MemoryPolicy(summarize_threshold=1, retain_messages=2)


class DeletingSummarizer(ScriptedModel):
    """Deletes the thread while its summary is being written."""

    def __init__(self, store: ThreadStore) -> None:
        super().__init__()
        self.store = store

    async def invoke(self, messages):
        self.store.delete("t")
        return await super().invoke(messages)


def test_thread_deleted_during_summarization_is_a_recoverable_failure():
    store = ThreadStore()
    _seed(store, "t", 7)

    result = asyncio.run(MemoryController(store, DeletingSummarizer(store)).transition("t"))

    assert result.summarized is False
    assert isinstance(result.error, SummarizationFailure)
    assert store.get("t").messages == ()
    assert store.get("t").summary is None
