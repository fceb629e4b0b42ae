"""Turn orchestration: memory, retrieval, prompting and streamed generation."""

from __future__ import annotations

import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Mapping, Sequence

from threadrag.errors import GenerationFailure, IndexUnavailable, InvalidParameter
from threadrag.memory.controller import MemoryController
from threadrag.memory.store import ThreadStore
from threadrag.metrics.observability import PipelineMetrics, get_logger
from threadrag.models import Message, PromptContext, RetrievalResult, Role
from threadrag.retrieval.service import Retriever
from threadrag.services.generation import LanguageModel
from threadrag.services.prompting import DEFAULT_TEMPLATE_NAME, PromptAssembler, format_history


@dataclass(frozen=True)
class OrchestratorConfig:
    """Deployment defaults applied to every turn."""

    default_template: str = DEFAULT_TEMPLATE_NAME
    default_model: str = "template"
    grounding_enabled: bool = True
    top_k: int = 2
    history_window: int | None = None


@dataclass(frozen=True)
class TurnOptions:
    """Per-turn overrides; ``None`` means use the deployment default."""

    template_name: str | None = None
    model_name: str | None = None
    grounded: bool | None = None
    top_k: int | None = None


class GenerationOrchestrator:
    """Coordinates a single conversation turn and streams the answer."""

    def __init__(
        self,
        store: ThreadStore,
        memory: MemoryController,
        retriever: Retriever,
        assembler: PromptAssembler,
        models: Mapping[str, LanguageModel],
        config: OrchestratorConfig | None = None,
    ) -> None:
        self._store = store
        self._memory = memory
        self._retriever = retriever
        self._assembler = assembler
        self._models = dict(models)
        self._config = config or OrchestratorConfig()
        self._logger = get_logger("orchestrator")
        if self._config.default_model not in self._models:
            raise InvalidParameter(f"Default model {self._config.default_model!r} is not registered")

    @property
    def store(self) -> ThreadStore:
        return self._store

    def model_names(self) -> list[str]:
        return sorted(self._models)

    def _resolve_model(self, name: str | None) -> LanguageModel:
        key = name or self._config.default_model
        try:
            return self._models[key]
        except KeyError:
            raise InvalidParameter(f"Unknown model: {key}") from None

    async def handle_turn(
        self,
        thread_id: str,
        user_text: str,
        options: TurnOptions | None = None,
    ) -> AsyncIterator[str]:
        """Answer ``user_text`` in ``thread_id``, yielding tokens as they arrive.

        Configuration errors are raised before the thread is touched. The user
        message is kept even if generation fails; the assistant message is
        recorded only after the stream completes.
        """

        options = options or TurnOptions()
        template_name = options.template_name or self._config.default_template
        self._assembler.resolve(template_name)
        model = self._resolve_model(options.model_name)
        if not user_text or not user_text.strip():
            raise InvalidParameter("user_text must not be empty")
        top_k = options.top_k if options.top_k is not None else self._config.top_k
        if top_k < 1:
            raise InvalidParameter(f"top_k must be >= 1, got {top_k}")
        grounded = self._config.grounding_enabled if options.grounded is None else options.grounded

        logger = self._logger.bind(thread_id=thread_id)
        async with self._store.turn_lock(thread_id):
            logger.info("turn.start", template=template_name, grounded=grounded)
            question = self._store.add_message(thread_id, Role.USER, user_text)

            outcome = await self._memory.transition(thread_id)
            if outcome.error is not None:
                logger.warning("turn.summarization_degraded", error=str(outcome.error))

            retrieved = await self._retrieve(user_text, top_k, logger) if grounded else []

            thread = self._store.get(thread_id)
            context = PromptContext(
                question=user_text,
                history=format_history(self._history(thread.messages, question)),
                summary=thread.summary,
                retrieved_context=[result.chunk_text for result in retrieved],
            )
            messages = self._assembler.assemble(template_name, context)

            parts: list[str] = []
            start = time.perf_counter()
            try:
                async with aclosing(model.stream(messages)) as stream:
                    async for token in stream:
                        parts.append(token)
                        yield token
            except Exception as exc:
                PipelineMetrics.record_turn("failure")
                logger.error("turn.generation_failed", error=str(exc), streamed_tokens=len(parts))
                if isinstance(exc, GenerationFailure):
                    raise
                raise GenerationFailure(f"Model stream failed: {exc}") from exc
            except BaseException:
                # Consumer went away or the task was cancelled; drop the partial answer
                PipelineMetrics.record_turn("cancelled")
                logger.info("turn.cancelled", streamed_tokens=len(parts))
                raise

            duration = time.perf_counter() - start
            self._store.add_message(thread_id, Role.ASSISTANT, "".join(parts))
            PipelineMetrics.observe_generation(duration, len(parts))
            PipelineMetrics.record_turn("success")
            logger.info(
                "turn.complete",
                streamed_tokens=len(parts),
                duration_seconds=duration,
                summarized=outcome.summarized,
                citation_count=len(retrieved),
            )

    async def _retrieve(self, text: str, k: int, logger) -> Sequence[RetrievalResult]:
        try:
            return await asyncio.to_thread(self._retriever.query, text, k)
        except IndexUnavailable as exc:
            PipelineMetrics.record_index_unavailable()
            logger.warning("retrieval.unavailable", error=str(exc))
            return []

    def _history(self, messages: Sequence[Message], question: Message) -> Sequence[Message]:
        earlier = [message for message in messages if message.id != question.id]
        window = self._config.history_window
        if window is not None:
            earlier = earlier[-window:] if window > 0 else []
        return earlier
