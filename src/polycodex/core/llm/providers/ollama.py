"""Local Ollama server adapter (chat endpoint, JSON-lines streaming)."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx

from polycodex.core.items import ConversationItem, FunctionCallItem, new_item_id
from polycodex.core.llm.errors import LLMError, ProviderConnectionError, ProviderNotInitializedError
from polycodex.core.llm.provider import ConversationMemory, LLMProvider
from polycodex.core.llm.stream import EventStream, ResponseAssembler
from polycodex.core.llm.transport import build_headers, fetch_json, items_to_chat_messages, iter_json_payloads, open_stream
from polycodex.core.llm.types import OUTPUT_ITEM_START, ProviderOptions, StreamingEvent
from polycodex.core.ollama_config import OllamaConfigStore, build_request_options

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434/api"
CONNECT_PROBE_TIMEOUT_SECONDS = 5.0


class OllamaProvider(LLMProvider):
    """Talks to `/chat` and keeps transcripts locally to emulate response chaining."""

    name = "ollama"

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        params_store: OllamaConfigStore | None = None,
        memory: ConversationMemory | None = None,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._params_store = params_store
        self._memory = memory or ConversationMemory()
        self._base_url = DEFAULT_OLLAMA_BASE_URL
        self._tools: list[dict[str, Any]] = []
        self._initialized = False

    async def initialize(self, options: ProviderOptions) -> None:
        self._base_url = (options.base_url or DEFAULT_OLLAMA_BASE_URL).rstrip("/")
        self._tools = [_chat_tool(tool) for tool in options.extras.get("tools") or []]
        if self._params_store is None:
            store = options.extras.get("ollama_config")
            self._params_store = store if isinstance(store, OllamaConfigStore) else OllamaConfigStore()
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=options.timeout_seconds)

        endpoint = f"{self._base_url}/tags"
        try:
            await fetch_json(self._client, endpoint, provider=self.name, timeout=CONNECT_PROBE_TIMEOUT_SECONDS)
        except LLMError as exc:
            raise ProviderConnectionError(
                f"Failed to connect to Ollama at {self._base_url}. Is Ollama running? ({exc})",
                provider=self.name,
                endpoint=endpoint,
            ) from exc
        self._initialized = True
        logger.debug("Ollama provider initialized (base_url=%s)", self._base_url)

    def _require_client(self) -> httpx.AsyncClient:
        if not self._initialized or self._client is None:
            raise ProviderNotInitializedError("Ollama client not initialized. Did you call initialize()?")
        return self._client

    async def create_streaming_response(
        self,
        model: str,
        instructions: str,
        input: Sequence[ConversationItem],  # noqa: A002
        previous_response_id: str | None = None,
    ) -> EventStream:
        client = self._require_client()
        assert self._params_store is not None
        transcript = self._memory.history(previous_response_id) + list(input)
        params = self._params_store.get_model_params(model)
        streaming = bool(params.get("use_streaming", True))
        payload: dict[str, Any] = {
            "model": model,
            "messages": items_to_chat_messages(instructions, transcript),
            "stream": streaming,
            "options": build_request_options(params),
        }
        if self._tools:
            payload["tools"] = self._tools
        response = await open_stream(
            client,
            f"{self._base_url}/chat",
            provider=self.name,
            payload=payload,
            headers=build_headers(),
        )
        return EventStream(self._events(response, transcript, streaming), on_close=response.aclose)

    async def _events(
        self,
        response: httpx.Response,
        transcript: list[ConversationItem],
        streaming: bool,
    ) -> AsyncIterator[StreamingEvent]:
        assembler = ResponseAssembler(new_item_id("resp"))
        buffered: list[str] = []
        async for chunk in iter_json_payloads(response, provider=self.name):
            if chunk.get("error"):
                raise LLMError(f"Ollama error: {chunk['error']}")
            message = chunk.get("message")
            if isinstance(message, dict):
                content = message.get("content")
                if isinstance(content, str) and content:
                    if streaming:
                        for event in assembler.add_text(content):
                            yield event
                    else:
                        buffered.append(content)
                for call in _tool_calls(message.get("tool_calls")):
                    if streaming:
                        for event in assembler.add_function_call(call):
                            yield event
                    else:
                        assembler.add_function_call(call)
            if chunk.get("done"):
                break

        if streaming:
            events = assembler.finish()
        else:
            # Non-streaming replies collapse into done items plus the completion.
            assembler.add_text("".join(buffered))
            calls = [StreamingEvent.done(item) for item in assembler.output if isinstance(item, FunctionCallItem)]
            events = calls + [event for event in assembler.finish() if event.type != OUTPUT_ITEM_START]
        self._memory.remember(assembler.response_id, transcript + assembler.output)
        for event in events:
            yield event

    async def list_available_models(self) -> list[str]:
        client = self._require_client()
        try:
            data = await fetch_json(client, f"{self._base_url}/tags", provider=self.name)
        except LLMError as exc:
            logger.warning("Unable to list Ollama models: %s", exc)
            return []
        entries = data.get("models") if isinstance(data, dict) else None
        return [str(entry["name"]) for entry in entries or [] if isinstance(entry, dict) and entry.get("name")]

    async def close(self) -> None:
        self._memory.clear()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
            self._initialized = False


def _chat_tool(tool: dict[str, Any]) -> dict[str, Any]:
    """Convert a responses-style tool definition into the chat `function` shape."""

    if "function" in tool:
        return tool
    function = {key: tool[key] for key in ("name", "description", "parameters") if key in tool}
    return {"type": "function", "function": function}


def _tool_calls(raw: object) -> list[FunctionCallItem]:
    calls: list[FunctionCallItem] = []
    if not isinstance(raw, list):
        return calls
    for entry in raw:
        function = entry.get("function") if isinstance(entry, dict) else None
        if not isinstance(function, dict) or not function.get("name"):
            continue
        arguments = function.get("arguments")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments or {})
        call_id = entry.get("id") if isinstance(entry.get("id"), str) else new_item_id("call")
        calls.append(FunctionCallItem(name=str(function["name"]), arguments=arguments, call_id=call_id))
    return calls


__all__ = ["DEFAULT_OLLAMA_BASE_URL", "OllamaProvider"]
