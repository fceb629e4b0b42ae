"""Conversation memory state machine with rolling summarization."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from threadrag.errors import InvalidParameter, SummarizationFailure
from threadrag.memory.store import ThreadStore
from threadrag.metrics.observability import PipelineMetrics, get_logger
from threadrag.models import ConversationThread, Message, Role

if TYPE_CHECKING:
    from threadrag.services.generation import LanguageModel

EXTEND_SUMMARY_INSTRUCTION = (
    "This is a summary of the conversation so far: {summary}\n\n"
    "Extend the summary by taking into account the new messages above:"
)
NEW_SUMMARY_INSTRUCTION = (
    "Write a bullet-point summary of the conversation above, keeping the flow of the conversation:"
)


class MemoryState(str, Enum):
    CONVERSING = "conversing"
    SUMMARIZING = "summarizing"


@dataclass(frozen=True)
class MemoryPolicy:
    """When to compact a thread and how much of it to keep verbatim."""

    summarize_threshold: int = 6
    retain_messages: int = 2

    def __post_init__(self) -> None:
        if self.retain_messages < 0:
            raise InvalidParameter("retain_messages must be >= 0")
        if self.summarize_threshold < self.retain_messages:
            raise InvalidParameter("summarize_threshold must be >= retain_messages")


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of one controller evaluation."""

    state: MemoryState
    summarized: bool = False
    error: SummarizationFailure | None = None
    thread: ConversationThread | None = None


def to_langchain_messages(messages: Sequence[Message]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for message in messages:
        if message.role is Role.USER:
            converted.append(HumanMessage(content=message.content, id=message.id))
        elif message.role is Role.ASSISTANT:
            converted.append(AIMessage(content=message.content, id=message.id))
        else:
            converted.append(SystemMessage(content=message.content, id=message.id))
    return converted


class MemoryController:
    """Decides per turn whether to keep conversing or fold history into the summary.

    The thread is ``CONVERSING`` between turns. When it holds more than
    ``summarize_threshold`` messages it enters ``SUMMARIZING``: the summarizer
    model is invoked once and the store swaps every message but the last
    ``retain_messages`` for the new summary. Whatever happens, the controller
    ends back in ``CONVERSING``; a failed summarization leaves the thread
    untouched and is reported in the result instead of raised.
    """

    def __init__(self, store: ThreadStore, summarizer: LanguageModel, policy: MemoryPolicy | None = None) -> None:
        self._store = store
        self._summarizer = summarizer
        self._policy = policy or MemoryPolicy()
        self._logger = get_logger("memory")

    @property
    def policy(self) -> MemoryPolicy:
        return self._policy

    def should_summarize(self, thread: ConversationThread) -> bool:
        return len(thread.messages) > self._policy.summarize_threshold

    def next_state(self, thread: ConversationThread) -> MemoryState:
        return MemoryState.SUMMARIZING if self.should_summarize(thread) else MemoryState.CONVERSING

    def summarization_messages(self, thread: ConversationThread) -> list[BaseMessage]:
        if thread.summary:
            instruction = EXTEND_SUMMARY_INSTRUCTION.format(summary=thread.summary)
        else:
            instruction = NEW_SUMMARY_INSTRUCTION
        return [*to_langchain_messages(thread.messages), SystemMessage(content=instruction)]

    async def transition(self, thread_id: str) -> TransitionResult:
        thread = self._store.get(thread_id)
        if self.next_state(thread) is MemoryState.CONVERSING:
            return TransitionResult(state=MemoryState.CONVERSING, thread=thread)

        logger = self._logger.bind(thread_id=thread_id, message_count=len(thread.messages))
        logger.info("memory.summarizing")
        try:
            summary = (await self._summarizer.invoke(self.summarization_messages(thread))).strip()
            if not summary:
                raise SummarizationFailure("Summarizer returned an empty summary")
        except Exception as exc:
            error = exc if isinstance(exc, SummarizationFailure) else SummarizationFailure(str(exc))
            if error is not exc:
                error.__cause__ = exc
            PipelineMetrics.record_summarization("failure")
            logger.warning("memory.summarization_failed", error=str(exc))
            return TransitionResult(state=MemoryState.CONVERSING, error=error, thread=thread)

        retain = self._policy.retain_messages
        retained = thread.messages[-retain:] if retain else ()
        try:
            compacted = self._store.replace(thread_id, summary=summary, messages=retained)
        except InvalidParameter as exc:
            # Thread deleted or rewritten while the summarizer ran
            PipelineMetrics.record_summarization("failure")
            logger.warning("memory.compaction_conflict", error=str(exc))
            error = SummarizationFailure(str(exc))
            error.__cause__ = exc
            return TransitionResult(state=MemoryState.CONVERSING, error=error, thread=self._store.get(thread_id))
        PipelineMetrics.record_summarization("success")
        logger.info("memory.summarized", retained=len(compacted.messages), summary_chars=len(summary))
        return TransitionResult(state=MemoryState.CONVERSING, summarized=True, thread=compacted)
