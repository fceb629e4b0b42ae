"""Language model backends for ThreadRAG."""

from __future__ import annotations

import asyncio
import re
import threading
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping, Protocol, Sequence

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage

from threadrag.config import Settings
from threadrag.metrics.observability import get_logger

_ROLE_BY_TYPE = {"human": "user", "ai": "assistant", "system": "system"}
_TOKEN_PATTERN = re.compile(r"\S+\s*|\s+")


@dataclass(frozen=True)
class GenerationConfig:
    """Configuration for a local Transformers model."""

    model: str = "Qwen/Qwen2.5-1.8B-Instruct"
    max_new_tokens: int = 512
    temperature: float = 0.3
    use_model: bool = False
    device: str | None = None
    stream_timeout: float = 120.0


class LanguageModel(Protocol):
    """Protocol describing single-shot and streaming generation."""

    async def invoke(self, messages: Sequence[BaseMessage]) -> str:
        """Return a complete response for the messages."""

    def stream(self, messages: Sequence[BaseMessage]) -> AsyncIterator[str]:
        """Yield response tokens as they are produced."""


def message_text(content: Any) -> str:
    """Flatten LangChain message content (string or content parts) to text."""

    if isinstance(content, str):
        return content
    parts = []
    for part in content or ():
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, Mapping) and part.get("type") == "text":
            parts.append(str(part.get("text", "")))
    return "".join(parts)


def to_chat_dicts(messages: Sequence[BaseMessage]) -> list[dict[str, str]]:
    return [
        {"role": _ROLE_BY_TYPE.get(message.type, "user"), "content": message_text(message.content)}
        for message in messages
    ]


class TemplateModel:
    """Deterministic offline model used for tests and environments without weights."""

    def __init__(self, max_chars: int = 400) -> None:
        self._max_chars = max_chars

    async def invoke(self, messages: Sequence[BaseMessage]) -> str:
        lines = []
        for message in messages:
            if message.type == "system":
                continue
            text = " ".join(message_text(message.content).split())
            if text:
                lines.append(f"- {_ROLE_BY_TYPE.get(message.type, 'user')}: {text[:80]}")
        return "\n".join(lines)

    async def stream(self, messages: Sequence[BaseMessage]) -> AsyncIterator[str]:
        for token in _TOKEN_PATTERN.findall(self._answer(messages)):
            yield token

    def _answer(self, messages: Sequence[BaseMessage]) -> str:
        prompt = ""
        for message in reversed(messages):
            if message.type == "human":
                prompt = " ".join(message_text(message.content).split())
                break
        if not prompt:
            return "I do not have enough information to answer that question."
        return f"Offline answer for prompt: {prompt[: self._max_chars]}"


class LangChainChatModel:
    """Adapter exposing any LangChain chat model through ``LanguageModel``."""

    def __init__(self, model: BaseChatModel) -> None:
        self._model = model

    async def invoke(self, messages: Sequence[BaseMessage]) -> str:
        result = await self._model.ainvoke(list(messages))
        return message_text(result.content)

    async def stream(self, messages: Sequence[BaseMessage]) -> AsyncIterator[str]:
        upstream = self._model.astream(list(messages))
        try:
            async for chunk in upstream:
                text = message_text(chunk.content)
                if text:
                    yield text
        finally:
            # Propagates cancellation to the in-flight provider request
            await upstream.aclose()


class TransformersModel:
    """Local causal LM via Transformers, falling back to ``TemplateModel``."""

    def __init__(self, config: GenerationConfig | None = None, fallback: LanguageModel | None = None) -> None:
        self._config = config or GenerationConfig()
        self._fallback = fallback or TemplateModel()
        self._logger = get_logger("generation")
        self._tokenizer = None
        self._model = None
        if not self._config.use_model:
            self._logger.info("generation.template_only", model=self._config.model)
            return
        try:
            from transformers import AutoModelForCausalLM, AutoTokenizer

            self._tokenizer = AutoTokenizer.from_pretrained(self._config.model, trust_remote_code=True)
            self._model = AutoModelForCausalLM.from_pretrained(self._config.model, trust_remote_code=True)
            if self._tokenizer.pad_token is None and self._tokenizer.eos_token is not None:
                self._tokenizer.pad_token = self._tokenizer.eos_token
            if getattr(self._model.config, "pad_token_id", None) is None and self._tokenizer.pad_token_id is not None:
                self._model.config.pad_token_id = self._tokenizer.pad_token_id
            if self._config.device:
                self._model.to(self._config.device)
            self._logger.info("generation.model_loaded", model=self._config.model)
        except Exception as exc:  # pragma: no cover - model download/runtime guard
            self._logger.warning("generation.model_unavailable", model=self._config.model, error=str(exc))
            self._tokenizer = None
            self._model = None

    @property
    def loaded(self) -> bool:
        return self._tokenizer is not None and self._model is not None

    async def invoke(self, messages: Sequence[BaseMessage]) -> str:
        if not self.loaded:
            return await self._fallback.invoke(messages)
        return await asyncio.to_thread(self._generate, messages)

    async def stream(self, messages: Sequence[BaseMessage]) -> AsyncIterator[str]:
        if not self.loaded:
            async for token in self._fallback.stream(messages):
                yield token
            return

        import torch
        from transformers import StoppingCriteria, StoppingCriteriaList, TextIteratorStreamer

        stop = threading.Event()
        errors: list[BaseException] = []

        class _StopOnEvent(StoppingCriteria):
            def __call__(self, input_ids, scores, **kwargs):
                return torch.full((input_ids.shape[0],), stop.is_set(), dtype=torch.bool, device=input_ids.device)

        streamer = TextIteratorStreamer(
            self._tokenizer,
            skip_prompt=True,
            skip_special_tokens=True,
            timeout=self._config.stream_timeout,
        )
        kwargs = dict(
            **self._encode(messages),
            streamer=streamer,
            max_new_tokens=self._config.max_new_tokens,
            temperature=self._config.temperature,
            stopping_criteria=StoppingCriteriaList([_StopOnEvent()]),
        )

        def _run() -> None:
            try:
                with torch.no_grad():
                    self._model.generate(**kwargs)
            except Exception as exc:  # pragma: no cover - surfaced to the consumer below
                errors.append(exc)
                streamer.end()

        worker = threading.Thread(target=_run, name="threadrag-generate", daemon=True)
        worker.start()
        try:
            while True:
                token = await asyncio.to_thread(next, streamer, None)
                if token is None:
                    break
                if token:
                    yield token
            if errors:
                raise errors[0]
        finally:
            stop.set()

    def _encode(self, messages: Sequence[BaseMessage]) -> dict[str, Any]:
        chat = to_chat_dicts(messages)
        if hasattr(self._tokenizer, "apply_chat_template"):
            prompt = self._tokenizer.apply_chat_template(chat, tokenize=False, add_generation_prompt=True)
        else:
            prompt = "\n".join(f"{item['role']}: {item['content']}" for item in chat) + "\nassistant:"
        tokenized = self._tokenizer(prompt, return_tensors="pt", padding=True)
        input_ids = tokenized.input_ids
        attention_mask = tokenized.attention_mask
        if self._config.device:
            input_ids = input_ids.to(self._config.device)
            attention_mask = attention_mask.to(self._config.device)
        return {"input_ids": input_ids, "attention_mask": attention_mask}

    def _generate(self, messages: Sequence[BaseMessage]) -> str:
        import torch

        inputs = self._encode(messages)
        prompt_length = inputs["input_ids"].shape[1]
        with torch.no_grad():
            output = self._model.generate(
                **inputs,
                max_new_tokens=self._config.max_new_tokens,
                temperature=self._config.temperature,
            )
        generated = self._tokenizer.decode(output[0][prompt_length:], skip_special_tokens=True)
        return generated.strip()


def build_models(settings: Settings) -> dict[str, LanguageModel]:
    """Return the catalog of language models available to turns."""

    template = TemplateModel()
    transformers_model = TransformersModel(
        GenerationConfig(
            model=settings.generator_model,
            max_new_tokens=settings.generator_max_new_tokens,
            temperature=settings.generator_temperature,
            use_model=settings.use_model_generator,
        ),
        fallback=template,
    )
    return {
        "template": template,
        "fake-llm": template,
        settings.generator_model: transformers_model,
    }
