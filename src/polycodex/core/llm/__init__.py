"""Provider abstraction and adapters for polycodex."""

from polycodex.core.llm.errors import (
    ContextLengthExceededError,
    LLMError,
    PrematureCloseError,
    ProviderConnectionError,
    ProviderNotInitializedError,
    ProviderTimeoutError,
    RateLimitError,
    UnsupportedProviderError,
)
from polycodex.core.llm.models import RECOMMENDED_MODELS, ModelCatalog
from polycodex.core.llm.provider import ConversationMemory, LLMProvider, create_provider
from polycodex.core.llm.stream import EventStream, ResponseAssembler, stream_from_events
from polycodex.core.llm.types import (
    OUTPUT_ITEM_DELTA,
    OUTPUT_ITEM_DONE,
    OUTPUT_ITEM_START,
    RESPONSE_COMPLETED,
    ProviderOptions,
    ProviderType,
    ResponseSnapshot,
    StreamingEvent,
)

__all__ = [
    "OUTPUT_ITEM_DELTA",
    "OUTPUT_ITEM_DONE",
    "OUTPUT_ITEM_START",
    "RECOMMENDED_MODELS",
    "RESPONSE_COMPLETED",
    "ContextLengthExceededError",
    "ConversationMemory",
    "EventStream",
    "LLMError",
    "LLMProvider",
    "ModelCatalog",
    "PrematureCloseError",
    "ProviderConnectionError",
    "ProviderNotInitializedError",
    "ProviderOptions",
    "ProviderTimeoutError",
    "ProviderType",
    "RateLimitError",
    "ResponseAssembler",
    "ResponseSnapshot",
    "StreamingEvent",
    "UnsupportedProviderError",
    "create_provider",
    "stream_from_events",
]
