"""Shared provider types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from polycodex.core.items import ConversationItem

OUTPUT_ITEM_START = "response.output_item.start"
OUTPUT_ITEM_DELTA = "response.output_item.delta"
OUTPUT_ITEM_DONE = "response.output_item.done"
RESPONSE_COMPLETED = "response.completed"


class ProviderType(str, Enum):
    OPENAI = "openai"
    OLLAMA = "ollama"
    HUGGINGFACE = "huggingface"

    @classmethod
    def parse(cls, value: str | ProviderType) -> ProviderType:
        if isinstance(value, ProviderType):
            return value
        normalized = value.strip().lower()
        aliases = {"hf": "huggingface", "tgi": "huggingface", "gpt": "openai"}
        return cls(aliases.get(normalized, normalized))


@dataclass(slots=True)
class ProviderOptions:
    """Configuration bag consumed once by `LLMProvider.initialize`."""

    api_key: str | None = None
    base_url: str | None = None
    timeout_seconds: float = 60.0
    extras: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ResponseSnapshot:
    id: str
    output: list[ConversationItem]
    status: str = "completed"


@dataclass(slots=True)
class StreamingEvent:
    """One normalized event produced by a provider adapter."""

    type: str
    item: ConversationItem | None = None
    item_id: str | None = None
    delta: str | None = None
    response: ResponseSnapshot | None = None

    @classmethod
    def start(cls, item: ConversationItem) -> StreamingEvent:
        return cls(type=OUTPUT_ITEM_START, item=item, item_id=item.id)

    @classmethod
    def text_delta(cls, item_id: str, delta: str) -> StreamingEvent:
        return cls(type=OUTPUT_ITEM_DELTA, item_id=item_id, delta=delta)

    @classmethod
    def done(cls, item: ConversationItem) -> StreamingEvent:
        return cls(type=OUTPUT_ITEM_DONE, item=item, item_id=item.id)

    @classmethod
    def completed(cls, response_id: str, output: list[ConversationItem], status: str = "completed") -> StreamingEvent:
        return cls(type=RESPONSE_COMPLETED, response=ResponseSnapshot(id=response_id, output=list(output), status=status))


__all__ = [
    "OUTPUT_ITEM_DELTA",
    "OUTPUT_ITEM_DONE",
    "OUTPUT_ITEM_START",
    "RESPONSE_COMPLETED",
    "ProviderOptions",
    "ProviderType",
    "ResponseSnapshot",
    "StreamingEvent",
]
