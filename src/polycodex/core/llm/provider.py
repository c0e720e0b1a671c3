"""Provider capability shared by every LLM backend adapter."""

from __future__ import annotations

import importlib
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence

from polycodex.core.items import ConversationItem
from polycodex.core.llm.errors import UnsupportedProviderError
from polycodex.core.llm.stream import EventStream
from polycodex.core.llm.types import ProviderOptions, ProviderType

logger = logging.getLogger(__name__)

_PROVIDER_CLASSES: dict[ProviderType, tuple[str, str]] = {
    ProviderType.OPENAI: ("polycodex.core.llm.providers.openai", "OpenAIProvider"),
    ProviderType.OLLAMA: ("polycodex.core.llm.providers.ollama", "OllamaProvider"),
    ProviderType.HUGGINGFACE: ("polycodex.core.llm.providers.huggingface", "HuggingFaceProvider"),
}


class LLMProvider(ABC):
    """Normalizes one backend's request/response shape into `StreamingEvent`s."""

    name: str = "provider"

    @abstractmethod
    async def initialize(self, options: ProviderOptions) -> None:
        """Configure the adapter; may probe the backend."""

    @abstractmethod
    async def create_streaming_response(
        self,
        model: str,
        instructions: str,
        input: Sequence[ConversationItem],  # noqa: A002
        previous_response_id: str | None = None,
    ) -> EventStream:
        """Open a request and return the normalized event stream."""

    @abstractmethod
    async def list_available_models(self) -> list[str]:
        """Return the backend's model names, or `[]` when unreachable."""

    async def is_model_supported(self, model: str) -> bool:
        models = await self.list_available_models()
        return model in models

    async def close(self) -> None:
        """Release any network resources held by the adapter."""


class ConversationMemory:
    """Keeps full transcripts for backends without server-side context.

    Each completed response id maps to the transcript that produced it, so a
    follow-up request carrying `previous_response_id` can replay the
    conversation. Old entries are evicted beyond `max_responses`.
    """

    def __init__(self, max_responses: int = 32) -> None:
        self.max_responses = max(max_responses, 1)
        self._transcripts: dict[str, list[ConversationItem]] = {}

    def history(self, previous_response_id: str | None) -> list[ConversationItem]:
        if not previous_response_id:
            return []
        return list(self._transcripts.get(previous_response_id, []))

    def remember(self, response_id: str, transcript: Sequence[ConversationItem]) -> None:
        self._transcripts[response_id] = list(transcript)
        while len(self._transcripts) > self.max_responses:
            oldest = next(iter(self._transcripts))
            del self._transcripts[oldest]

    def clear(self) -> None:
        self._transcripts.clear()


def create_provider(provider_type: ProviderType | str) -> LLMProvider:
    """Instantiate only the adapter for `provider_type`.

    Adapter modules are imported on demand so unused backends never load.
    """

    try:
        resolved = ProviderType.parse(provider_type)
    except ValueError as exc:
        raise UnsupportedProviderError(f"Unsupported provider: {provider_type}") from exc
    module_name, class_name = _PROVIDER_CLASSES[resolved]
    logger.debug("Loading provider adapter %s.%s", module_name, class_name)
    module = importlib.import_module(module_name)
    provider_cls: type[LLMProvider] = getattr(module, class_name)
    return provider_cls()


__all__ = ["ConversationMemory", "LLMProvider", "create_provider"]
