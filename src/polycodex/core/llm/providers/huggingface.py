"""Hugging Face text-generation-inference adapter (token streaming)."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx

from polycodex.core.items import ConversationItem, new_item_id
from polycodex.core.llm.errors import LLMError, ProviderNotInitializedError
from polycodex.core.llm.provider import ConversationMemory, LLMProvider
from polycodex.core.llm.stream import EventStream, ResponseAssembler
from polycodex.core.llm.transport import build_headers, fetch_json, items_to_prompt, iter_json_payloads, open_stream
from polycodex.core.llm.types import ProviderOptions, StreamingEvent

logger = logging.getLogger(__name__)

DEFAULT_HUGGINGFACE_BASE_URL = "http://localhost:8080"

DEFAULT_GENERATION_PARAMETERS: dict[str, Any] = {
    "max_new_tokens": 1024,
    "temperature": 0.7,
    "top_p": 0.95,
    "do_sample": True,
    "return_full_text": False,
}


class HuggingFaceProvider(LLMProvider):
    """Renders the conversation as an instruction prompt for `/generate_stream`."""

    name = "huggingface"

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        memory: ConversationMemory | None = None,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._memory = memory or ConversationMemory()
        self._base_url = DEFAULT_HUGGINGFACE_BASE_URL
        self._api_key: str | None = None
        self._parameters: dict[str, Any] = dict(DEFAULT_GENERATION_PARAMETERS)
        self._initialized = False

    async def initialize(self, options: ProviderOptions) -> None:
        self._base_url = (options.base_url or DEFAULT_HUGGINGFACE_BASE_URL).rstrip("/")
        self._api_key = options.api_key
        overrides = options.extras.get("generation_parameters")
        if isinstance(overrides, dict):
            self._parameters.update(overrides)
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=options.timeout_seconds)
        self._initialized = True
        logger.debug("Hugging Face provider initialized (base_url=%s)", self._base_url)

    def _require_client(self) -> httpx.AsyncClient:
        if not self._initialized or self._client is None:
            raise ProviderNotInitializedError("Hugging Face client not initialized. Did you call initialize()?")
        return self._client

    async def create_streaming_response(
        self,
        model: str,
        instructions: str,
        input: Sequence[ConversationItem],  # noqa: A002
        previous_response_id: str | None = None,
    ) -> EventStream:
        client = self._require_client()
        transcript = self._memory.history(previous_response_id) + list(input)
        payload: dict[str, Any] = {
            "inputs": items_to_prompt(instructions, transcript),
            "parameters": dict(self._parameters),
            "stream": True,
        }
        if model:
            payload["model"] = model
        response = await open_stream(
            client,
            f"{self._base_url}/generate_stream",
            provider=self.name,
            payload=payload,
            headers=build_headers(self._api_key),
        )
        return EventStream(self._events(response, transcript), on_close=response.aclose)

    async def _events(
        self,
        response: httpx.Response,
        transcript: list[ConversationItem],
    ) -> AsyncIterator[StreamingEvent]:
        assembler = ResponseAssembler(new_item_id("resp"))
        async for chunk in iter_json_payloads(response, provider=self.name):
            if chunk.get("error"):
                raise LLMError(
                    f"Hugging Face error: {chunk['error']}",
                    type=str(chunk["error_type"]) if chunk.get("error_type") else None,
                )
            token = chunk.get("token")
            if not isinstance(token, dict) or token.get("special"):
                continue
            text = token.get("text")
            if isinstance(text, str):
                for event in assembler.add_text(text):
                    yield event
        events = assembler.finish()
        self._memory.remember(assembler.response_id, transcript + assembler.output)
        for event in events:
            yield event

    async def list_available_models(self) -> list[str]:
        client = self._require_client()
        try:
            data = await fetch_json(
                client,
                f"{self._base_url}/models",
                provider=self.name,
                headers=build_headers(self._api_key),
            )
        except LLMError as exc:
            logger.warning("Unable to list Hugging Face models: %s", exc)
            return []
        entries = data.get("data") if isinstance(data, dict) else None
        models: list[str] = []
        for entry in entries or []:
            if isinstance(entry, str):
                models.append(entry)
            elif isinstance(entry, dict) and entry.get("id"):
                models.append(str(entry["id"]))
        return models

    async def close(self) -> None:
        self._memory.clear()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
            self._initialized = False


__all__ = ["DEFAULT_GENERATION_PARAMETERS", "DEFAULT_HUGGINGFACE_BASE_URL", "HuggingFaceProvider"]
