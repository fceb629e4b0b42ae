from __future__ import annotations

import asyncio

import pytest
from conftest import ScriptedModel, StaticRetriever, build_orchestrator, collect

from threadrag.errors import GenerationFailure, IndexUnavailable, InvalidParameter, TemplateNotFound
from threadrag.memory import ThreadStore
from threadrag.models import RetrievalResult, Role
from threadrag.services.orchestrator import TurnOptions


def _seed(store: ThreadStore, thread_id: str, count: int) -> None:
    for i in range(count):
        store.add_message(thread_id, Role.USER if i % 2 == 0 else Role.ASSISTANT, f"seed message {i}")


def test_turn_streams_tokens_and_records_exchange():
    model = ScriptedModel(tokens=["Hello", ", ", "world"])
    orchestrator = build_orchestrator(model=model)

    tokens = collect(orchestrator.handle_turn("t1", "Hi there"))

    assert tokens == ["Hello", ", ", "world"]
    thread = orchestrator.store.get("t1")
    assert [(m.role, m.content) for m in thread.messages] == [
        (Role.USER, "Hi there"),
        (Role.ASSISTANT, "Hello, world"),
    ]


def test_summarization_runs_before_generation_on_long_thread():
    store = ThreadStore()
    _seed(store, "t1", 7)
    model = ScriptedModel(tokens=["The mayor ", "is Alice."])
    summarizer = ScriptedModel(summary="- The user asked about the city and its services.")
    retriever = StaticRetriever([RetrievalResult(chunk_text="mayor: Alice Moreau", score=0.92, rank=1)])
    orchestrator = build_orchestrator(model=model, summarizer=summarizer, retriever=retriever, store=store)

    answer = "".join(collect(orchestrator.handle_turn("t1", "What is the mayor's name?")))

    assert answer == "The mayor is Alice."
    assert len(summarizer.invocations) == 1
    thread = store.get("t1")
    assert thread.summary == "- The user asked about the city and its services."
    # compaction kept exactly the last two messages; the answer followed them
    assert [m.content for m in thread.messages[:2]] == ["seed message 6", "What is the mayor's name?"]
    assert [m.role for m in thread.messages] == [Role.ASSISTANT, Role.USER, Role.ASSISTANT]
    prompt = model.last_prompt
    assert "mayor: Alice Moreau" in prompt
    assert "seed message 6" in prompt
    assert thread.summary in prompt
    for discarded in range(6):
        assert f"seed message {discarded}" not in prompt
    assert retriever.queries == [("What is the mayor's name?", 2)]


def test_unavailable_index_degrades_to_ungrounded_answer():
    model = ScriptedModel(tokens=["I ", "do not know."])
    retriever = StaticRetriever(error=IndexUnavailable("vector service unreachable"))
    orchestrator = build_orchestrator(model=model, retriever=retriever)

    answer = "".join(collect(orchestrator.handle_turn("t1", "Who runs the library?")))

    assert answer == "I do not know."
    assert retriever.queries
    assert "Context: \n" in model.last_prompt
    assert len(orchestrator.store.get("t1").messages) == 2


def test_failed_summarization_does_not_block_the_answer():
    store = ThreadStore()
    _seed(store, "t1", 7)
    orchestrator = build_orchestrator(store=store, summarizer=ScriptedModel(fail_summary=True))

    answer = "".join(collect(orchestrator.handle_turn("t1", "Still there?")))

    assert answer == "The answer is 42."
    thread = store.get("t1")
    assert thread.summary is None
    assert len(thread.messages) == 9


def test_mid_stream_failure_keeps_only_the_user_message():
    store = ThreadStore()
    _seed(store, "t1", 2)
    orchestrator = build_orchestrator(model=ScriptedModel(fail_after=2), store=store)

    with pytest.raises(GenerationFailure):
        collect(orchestrator.handle_turn("t1", "Tell me everything"))

    thread = store.get("t1")
    assert [m.content for m in thread.messages] == ["seed message 0", "seed message 1", "Tell me everything"]


def test_consumer_disconnect_closes_model_stream_and_discards_answer():
    model = ScriptedModel(tokens=["one ", "two ", "three"])
    orchestrator = build_orchestrator(model=model)

    async def scenario() -> str:
        stream = orchestrator.handle_turn("t1", "count")
        first = await anext(stream)
        await stream.aclose()
        return first

    assert asyncio.run(scenario()) == "one "
    assert model.closed == 1
    assert model.completed == 0
    assert [m.role for m in orchestrator.store.get("t1").messages] == [Role.USER]


def test_missing_template_aborts_before_any_state_change():
    model = ScriptedModel()
    orchestrator = build_orchestrator(model=model)

    with pytest.raises(TemplateNotFound):
        collect(orchestrator.handle_turn("t1", "hi", TurnOptions(template_name="missing")))

    assert "t1" not in orchestrator.store
    assert model.streams == []


def test_unknown_model_and_empty_question_are_invalid():
    orchestrator = build_orchestrator()

    with pytest.raises(InvalidParameter):
        collect(orchestrator.handle_turn("t1", "hi", TurnOptions(model_name="nope")))
    with pytest.raises(InvalidParameter):
        collect(orchestrator.handle_turn("t1", "   "))
    assert "t1" not in orchestrator.store


def test_grounding_can_be_disabled():
    retriever = StaticRetriever([RetrievalResult(chunk_text="ignored", score=1.0, rank=1)])
    orchestrator = build_orchestrator(retriever=retriever, grounding_enabled=False)

    collect(orchestrator.handle_turn("t1", "hi"))
    collect(orchestrator.handle_turn("t1", "again", TurnOptions(grounded=True, top_k=1)))

    assert retriever.queries == [("again", 1)]


def test_history_excludes_current_question_and_honours_window():
    store = ThreadStore()
    _seed(store, "t1", 4)
    model = ScriptedModel()
    orchestrator = build_orchestrator(model=model, store=store, history_window=2)

    collect(orchestrator.handle_turn("t1", "newest question"))

    prompt = model.last_prompt
    assert "Current conversation: user: seed message 2\nassistant: seed message 3\n" in prompt
    assert "seed message 1" not in prompt
    assert prompt.count("newest question") == 1


def test_turns_on_one_thread_are_serialized():
    orchestrator = build_orchestrator(model=ScriptedModel(tokens=["a", "b", "c"]))

    async def scenario() -> None:
        await asyncio.gather(
            _drain(orchestrator.handle_turn("t1", "first")),
            _drain(orchestrator.handle_turn("t1", "second")),
        )

    asyncio.run(scenario())

    messages = orchestrator.store.get("t1").messages
    assert [(m.role, m.content) for m in messages] == [
        (Role.USER, "first"),
        (Role.ASSISTANT, "abc"),
        (Role.USER, "second"),
        (Role.ASSISTANT, "abc"),
    ]
    assert [m.created_order for m in messages] == [0, 1, 2, 3]


def test_turns_on_different_threads_do_not_block_each_other():
    async def scenario() -> tuple[bool, list[str]]:
        gate = asyncio.Event()
        slow = ScriptedModel(tokens=["slow"], gate=gate)
        orchestrator = build_orchestrator(extra_models={"slow": slow})
        blocked = asyncio.create_task(_drain(orchestrator.handle_turn("t1", "wait", TurnOptions(model_name="slow"))))
        await slow.started.wait()
        other = await _drain(orchestrator.handle_turn("t2", "go"))
        still_blocked = not blocked.done()
        gate.set()
        await blocked
        return still_blocked, other

    still_blocked, other = asyncio.run(scenario())

    assert still_blocked is True
    assert "".join(other) == "The answer is 42."


async def _drain(stream) -> list[str]:
    return [token async for token in stream]
