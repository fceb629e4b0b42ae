from __future__ import annotations

import asyncio
from typing import AsyncIterator, Sequence

import pytest
from langchain_core.messages import BaseMessage

from threadrag.memory import MemoryController, MemoryPolicy, ThreadStore
from threadrag.models import Chunk, RetrievalResult
from threadrag.services.orchestrator import GenerationOrchestrator, OrchestratorConfig
from threadrag.services.prompting import PromptAssembler, TemplateRegistry


class ScriptedModel:
    """Language model double with canned output and optional failures."""

    def __init__(
        self,
        tokens: Sequence[str] = ("The ", "answer ", "is ", "42."),
        summary: str = "- The user and assistant talked about the city.",
        fail_summary: bool = False,
        fail_after: int | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.tokens = list(tokens)
        self.summary = summary
        self.fail_summary = fail_summary
        self.fail_after = fail_after
        self.gate = gate
        self.invocations: list[list[BaseMessage]] = []
        self.streams: list[list[BaseMessage]] = []
        self.started = asyncio.Event() if gate is not None else None
        self.closed = 0
        self.completed = 0

    async def invoke(self, messages: Sequence[BaseMessage]) -> str:
        self.invocations.append(list(messages))
        if self.fail_summary:
            raise RuntimeError("summarizer offline")
        return self.summary

    async def stream(self, messages: Sequence[BaseMessage]) -> AsyncIterator[str]:
        self.streams.append(list(messages))
        try:
            if self.gate is not None:
                self.started.set()
                await self.gate.wait()
            for index, token in enumerate(self.tokens):
                if self.fail_after is not None and index == self.fail_after:
                    raise RuntimeError("connection reset mid-stream")
                await asyncio.sleep(0)
                yield token
            self.completed += 1
        finally:
            self.closed += 1

    @property
    def last_prompt(self) -> str:
        return "\n".join(str(message.content) for message in self.streams[-1])


class StaticRetriever:
    def __init__(self, results: Sequence[RetrievalResult] = (), error: Exception | None = None) -> None:
        self.results = list(results)
        self.error = error
        self.queries: list[tuple[str, int]] = []
        self.indexed: list[Chunk] = []

    def index(self, chunks: Sequence[Chunk]) -> None:
        self.indexed.extend(chunks)

    def query(self, text: str, k: int) -> Sequence[RetrievalResult]:
        self.queries.append((text, k))
        if self.error is not None:
            raise self.error
        return self.results[:k]


def collect(stream: AsyncIterator[str]) -> list[str]:
    async def _drain() -> list[str]:
        return [token async for token in stream]

    return asyncio.run(_drain())


def build_orchestrator(
    *,
    model: ScriptedModel | None = None,
    summarizer: ScriptedModel | None = None,
    retriever: StaticRetriever | None = None,
    store: ThreadStore | None = None,
    extra_models: dict | None = None,
    **config,
) -> GenerationOrchestrator:
    store = store or ThreadStore()
    model = model or ScriptedModel()
    memory = MemoryController(store, summarizer or model, MemoryPolicy())
    models = {"scripted": model, **(extra_models or {})}
    return GenerationOrchestrator(
        store,
        memory,
        retriever or StaticRetriever(),
        PromptAssembler(TemplateRegistry.with_defaults()),
        models,
        OrchestratorConfig(default_model="scripted", **config),
    )


@pytest.fixture
def scripted_model() -> ScriptedModel:
    return ScriptedModel()
