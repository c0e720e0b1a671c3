"""Session-scoped model list cache and model support checks."""

from __future__ import annotations

import asyncio
import logging

from polycodex.core.llm.errors import LLMError
from polycodex.core.llm.provider import LLMProvider
from polycodex.core.llm.types import ProviderType

logger = logging.getLogger(__name__)

MODEL_LIST_TIMEOUT_SECONDS = 2.0

RECOMMENDED_MODELS: dict[ProviderType, tuple[str, ...]] = {
    ProviderType.OPENAI: ("o4-mini", "o3"),
    ProviderType.OLLAMA: ("llama3", "llama2", "mistral"),
    ProviderType.HUGGINGFACE: ("mistral-7b-instruct", "gemma-7b-it"),
}


class ModelCatalog:
    """Caches one model-list fetch per provider type for the session.

    A failed or empty fetch is not cached, so a later call tries again.
    """

    def __init__(self, timeout_seconds: float = MODEL_LIST_TIMEOUT_SECONDS) -> None:
        self.timeout_seconds = timeout_seconds
        self._fetches: dict[ProviderType, asyncio.Task[list[str]]] = {}

    def recommended(self, provider_type: ProviderType | str) -> list[str]:
        return list(RECOMMENDED_MODELS.get(ProviderType.parse(provider_type), ()))

    def _fetch(self, provider: LLMProvider, provider_type: ProviderType) -> asyncio.Task[list[str]]:
        task = self._fetches.get(provider_type)
        if task is None or (task.done() and (task.cancelled() or task.exception() or not task.result())):
            task = asyncio.ensure_future(provider.list_available_models())
            self._fetches[provider_type] = task
        return task

    async def get_available_models(self, provider: LLMProvider, provider_type: ProviderType | str) -> list[str]:
        """Return the backend's models, or the recommended list when the fetch fails."""

        resolved = ProviderType.parse(provider_type)
        try:
            models = await self._fetch(provider, resolved)
        except (LLMError, OSError) as exc:
            logger.warning("Failed to fetch %s models: %s", resolved.value, exc)
            return self.recommended(resolved)
        return list(models) if models else self.recommended(resolved)

    async def is_model_supported_for_responses(
        self,
        model: str,
        provider: LLMProvider,
        provider_type: ProviderType | str,
    ) -> bool:
        """Best-effort support check; an unanswered or empty lookup counts as supported."""

        if not model or not model.strip():
            return True
        resolved = ProviderType.parse(provider_type)
        if model.strip() in RECOMMENDED_MODELS.get(resolved, ()):
            return True
        try:
            models = await asyncio.wait_for(
                asyncio.shield(self._fetch(provider, resolved)),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.info("Model list lookup for %s timed out; assuming %s is supported", resolved.value, model)
            return True
        except (LLMError, OSError) as exc:
            logger.warning("Model list lookup for %s failed: %s", resolved.value, exc)
            return True
        if not models:
            return True
        return model.strip() in models

    def clear(self) -> None:
        for task in self._fetches.values():
            if not task.done():
                task.cancel()
        self._fetches.clear()


__all__ = ["MODEL_LIST_TIMEOUT_SECONDS", "RECOMMENDED_MODELS", "ModelCatalog"]
