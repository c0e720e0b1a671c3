"""OpenAI responses-API adapter (native streaming)."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx

from polycodex.core.items import ConversationItem, item_from_dict
from polycodex.core.llm.errors import LLMError, ProviderNotInitializedError, RateLimitError
from polycodex.core.llm.provider import LLMProvider
from polycodex.core.llm.stream import EventStream
from polycodex.core.llm.transport import (
    build_headers,
    fetch_json,
    items_to_responses_input,
    iter_json_payloads,
    open_stream,
)
from polycodex.core.llm.types import ProviderOptions, StreamingEvent

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"


class OpenAIProvider(LLMProvider):
    """Passes conversation items straight to `/responses` and maps its SSE events."""

    name = "openai"

    def __init__(self, *, client: httpx.AsyncClient | None = None) -> None:
        self._client = client
        self._owns_client = client is None
        self._base_url = DEFAULT_OPENAI_BASE_URL
        self._api_key: str | None = None
        self._tools: list[dict[str, Any]] = []
        self._extra_payload: dict[str, Any] = {}
        self._initialized = False

    async def initialize(self, options: ProviderOptions) -> None:
        if not options.api_key:
            raise LLMError("OpenAI provider requires an API key. Set OPENAI_API_KEY or configure api_key.")
        self._api_key = options.api_key
        self._base_url = (options.base_url or DEFAULT_OPENAI_BASE_URL).rstrip("/")
        self._tools = list(options.extras.get("tools") or [])
        reasoning = options.extras.get("reasoning_effort")
        if reasoning:
            self._extra_payload["reasoning"] = {"effort": reasoning}
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=options.timeout_seconds)
        self._initialized = True
        logger.debug("OpenAI provider initialized (base_url=%s)", self._base_url)

    def _require_client(self) -> httpx.AsyncClient:
        if not self._initialized or self._client is None:
            raise ProviderNotInitializedError("OpenAI client not initialized. Did you call initialize()?")
        return self._client

    async def create_streaming_response(
        self,
        model: str,
        instructions: str,
        input: Sequence[ConversationItem],  # noqa: A002
        previous_response_id: str | None = None,
    ) -> EventStream:
        client = self._require_client()
        payload: dict[str, Any] = {
            "model": model,
            "instructions": instructions,
            "input": items_to_responses_input(input),
            "stream": True,
            **self._extra_payload,
        }
        if previous_response_id:
            payload["previous_response_id"] = previous_response_id
        if self._tools:
            payload["tools"] = self._tools
            payload["tool_choice"] = "auto"
            payload["parallel_tool_calls"] = False
        url = f"{self._base_url}/responses"
        response = await open_stream(
            client,
            url,
            provider=self.name,
            payload=payload,
            headers=build_headers(self._api_key),
        )
        return EventStream(self._events(response), on_close=response.aclose)

    async def _events(self, response: httpx.Response) -> AsyncIterator[StreamingEvent]:
        done_items: list[ConversationItem] = []
        async for payload in iter_json_payloads(response, provider=self.name):
            event_type = str(payload.get("type", ""))
            if event_type in {"error", "response.error", "response.failed"}:
                raise _stream_error(payload)
            if event_type == "response.output_item.added":
                item = _parse_item(payload.get("item"))
                if item is not None:
                    yield StreamingEvent.start(item)
            elif event_type == "response.output_text.delta":
                delta = payload.get("delta")
                item_id = payload.get("item_id")
                if isinstance(delta, str) and delta:
                    yield StreamingEvent.text_delta(str(item_id or ""), delta)
            elif event_type == "response.output_item.done":
                item = _parse_item(payload.get("item"))
                if item is not None:
                    done_items.append(item)
                    yield StreamingEvent.done(item)
            elif event_type == "response.completed":
                block = payload.get("response")
                if not isinstance(block, dict):
                    continue
                output = done_items
                if not output:
                    output = [item for item in map(_parse_item, block.get("output") or []) if item is not None]
                yield StreamingEvent.completed(
                    str(block.get("id") or ""),
                    output,
                    str(block.get("status") or "completed"),
                )
                return

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
            logger.warning("Unable to list OpenAI models: %s", exc)
            return []
        entries = data.get("data") if isinstance(data, dict) else None
        return [str(entry["id"]) for entry in entries or [] if isinstance(entry, dict) and entry.get("id")]

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
            self._initialized = False


def _parse_item(raw: object) -> ConversationItem | None:
    if not isinstance(raw, dict):
        return None
    try:
        return item_from_dict(raw)
    except ValueError:
        logger.debug("Ignoring unsupported output item: %s", raw.get("type"))
        return None


def _stream_error(payload: dict[str, Any]) -> LLMError:
    error = payload.get("error")
    if error is None and isinstance(payload.get("response"), dict):
        error = payload["response"].get("error")
    if isinstance(error, dict):
        message = str(error.get("message") or "Unknown OpenAI error")
        code = error.get("code")
        error_type = error.get("type")
    else:
        message = str(error or payload.get("message") or "Unknown OpenAI error")
        code = payload.get("code")
        error_type = None
    error_cls = RateLimitError if code == "rate_limit_exceeded" else LLMError
    return error_cls(
        message,
        code=str(code) if code else None,
        type=str(error_type) if error_type else None,
    )


__all__ = ["DEFAULT_OPENAI_BASE_URL", "OpenAIProvider"]
