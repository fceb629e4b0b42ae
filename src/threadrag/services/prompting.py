"""Prompt templates and assembly."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_core.prompts import PromptTemplate
from pydantic import BaseModel, Field, ValidationError, field_validator

from threadrag.errors import InvalidParameter, TemplateNotFound
from threadrag.models import Message, PromptContext

ALLOWED_PLACEHOLDERS = frozenset({"question", "history", "context", "summary"})
DEFAULT_TEMPLATE_NAME = "grounded-chat"

DEFAULT_TEMPLATES: Mapping[str, str] = {
    DEFAULT_TEMPLATE_NAME: (
        "Answer the user's question based on the database below. If the answer is not "
        "contained in the database, say honestly that you do not have that information.\n"
        "==============================\n"
        "Context: {context}\n"
        "==============================\n"
        "Current conversation: {history}\n\n"
        "user: {question}\n"
        "assistant:"
    ),
}


class PromptTemplateRecord(BaseModel):
    """Named prompt template validated at load time."""

    name: str = Field(..., min_length=1)
    template: str = Field(..., min_length=1)

    @field_validator("template")
    @classmethod
    def _check_placeholders(cls, value: str) -> str:
        try:
            variables = set(PromptTemplate.from_template(value).input_variables)
        except (ValueError, KeyError) as exc:
            raise ValueError(f"malformed template: {exc}") from exc
        unknown = variables - ALLOWED_PLACEHOLDERS
        if unknown:
            raise ValueError(f"unknown placeholders: {sorted(unknown)}")
        if "question" not in variables:
            raise ValueError("template must contain a {question} placeholder")
        return value

    @property
    def placeholders(self) -> frozenset[str]:
        return frozenset(PromptTemplate.from_template(self.template).input_variables)


def _records_from(source: Any) -> list[Mapping[str, Any]]:
    if isinstance(source, Mapping):
        return [{"name": name, "template": template} for name, template in source.items()]
    if isinstance(source, Sequence) and not isinstance(source, (str, bytes)):
        return list(source)
    raise InvalidParameter("Templates must be a list of {name, template} objects or a name -> template mapping")


def load_templates(source: str | Path | Mapping[str, str] | Iterable[Mapping[str, Any]]) -> "TemplateRegistry":
    """Load and validate templates from a JSON file or in-memory data."""

    if isinstance(source, (str, Path)):
        path = Path(source)
        try:
            source = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise InvalidParameter(f"Could not read templates from {path}: {exc}") from exc
    elif not isinstance(source, Mapping):
        source = list(source)
    records: dict[str, PromptTemplateRecord] = {}
    for raw in _records_from(source):
        try:
            record = PromptTemplateRecord.model_validate(raw)
        except ValidationError as exc:
            raise InvalidParameter(f"Invalid prompt template: {exc}") from exc
        if record.name in records:
            raise InvalidParameter(f"Duplicate prompt template name: {record.name}")
        records[record.name] = record
    return TemplateRegistry(records)


class TemplateRegistry:
    """Typed mapping from template name to template record."""

    def __init__(self, records: Mapping[str, PromptTemplateRecord] | None = None) -> None:
        self._records = dict(records or {})

    @classmethod
    def with_defaults(cls, extra: "TemplateRegistry | None" = None) -> "TemplateRegistry":
        merged = dict(load_templates(DEFAULT_TEMPLATES)._records)
        if extra is not None:
            merged.update(extra._records)
        return cls(merged)

    def __contains__(self, name: object) -> bool:
        return name in self._records

    def names(self) -> list[str]:
        return sorted(self._records)

    def get(self, name: str) -> PromptTemplateRecord:
        try:
            return self._records[name]
        except KeyError:
            raise TemplateNotFound(name) from None


def format_history(messages: Sequence[Message]) -> str:
    return "\n".join(f"{message.role.value}: {message.content}" for message in messages)


class PromptAssembler:
    """Renders a named template into model-ready messages."""

    def __init__(self, registry: TemplateRegistry, *, context_separator: str = "\n\n") -> None:
        self._registry = registry
        self._separator = context_separator

    def resolve(self, template_name: str) -> PromptTemplateRecord:
        return self._registry.get(template_name)

    def assemble(self, template_name: str, context: PromptContext) -> list[BaseMessage]:
        record = self.resolve(template_name)
        values = {
            "question": context.question,
            "history": context.history or "",
            "summary": context.summary or "",
            "context": self._separator.join(text for text in context.retrieved_context if text),
        }
        prompt = PromptTemplate.from_template(record.template)
        rendered = prompt.format(**{name: values[name] for name in prompt.input_variables})
        messages: list[BaseMessage] = []
        if context.summary and "summary" not in record.placeholders:
            messages.append(SystemMessage(content=f"Summary of the earlier conversation: {context.summary}"))
        messages.append(HumanMessage(content=rendered))
        return messages
