"""HTTP transport helpers shared by the provider adapters."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx

from polycodex.core.items import (
    ConversationItem,
    FunctionCallItem,
    FunctionCallOutputItem,
    MessageItem,
    ReasoningItem,
)
from polycodex.core.llm.errors import (
    ContextLengthExceededError,
    LLMError,
    PrematureCloseError,
    ProviderConnectionError,
    ProviderTimeoutError,
    RateLimitError,
)

logger = logging.getLogger(__name__)

_CONTEXT_LENGTH_PATTERN = re.compile(
    r"max_tokens is too large|maximum context length|context length exceeded|context_length_exceeded",
    re.IGNORECASE,
)


def build_headers(api_key: str | None = None) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def wrap_transport_error(exc: httpx.HTTPError, *, provider: str, endpoint: str) -> LLMError:
    """Translate an httpx failure into the provider error taxonomy."""

    if isinstance(exc, httpx.TimeoutException):
        error: LLMError = ProviderTimeoutError(f"{provider} request to {endpoint} timed out: {exc}")
    elif isinstance(exc, httpx.RemoteProtocolError):
        error = PrematureCloseError(f"{provider} stream closed prematurely: {exc}")
    elif isinstance(exc, httpx.TransportError):
        error = ProviderConnectionError(
            f"Unable to reach {provider} at {endpoint}: {exc}",
            provider=provider,
            endpoint=endpoint,
        )
    else:
        error = LLMError(f"{provider} request failed: {exc}")
    return error


async def error_from_response(response: httpx.Response) -> LLMError:
    """Build an `LLMError` from a non-2xx response, reading its body if needed."""

    status = response.status_code
    try:
        raw = await response.aread()
    except httpx.HTTPError as read_exc:
        logger.debug("Unable to read error payload: %s", read_exc)
        raw = b""

    message: str = response.reason_phrase or f"HTTP {status}"
    code: str | None = None
    error_type: str | None = None
    param: str | None = None
    text = raw.decode("utf-8", errors="replace") if raw else ""
    if text:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            message = text.strip() or message
        else:
            error = payload.get("error") if isinstance(payload, dict) else None
            if isinstance(error, dict):
                message = str(error.get("message") or message)
                code = _optional_str(error.get("code"))
                error_type = _optional_str(error.get("type"))
                param = _optional_str(error.get("param"))
            elif isinstance(error, str):
                message = error
                error_type = _optional_str(payload.get("error_type"))
            elif isinstance(payload, dict) and isinstance(payload.get("message"), str):
                message = payload["message"]

    request_id = response.headers.get("x-request-id")
    kwargs: dict[str, Any] = {
        "status": status,
        "code": code,
        "type": error_type,
        "param": param,
        "request_id": request_id,
    }
    if status == 429 or code == "rate_limit_exceeded" or error_type == "rate_limit_exceeded":
        return RateLimitError(message, **kwargs)
    if code == "context_length_exceeded" or _CONTEXT_LENGTH_PATTERN.search(message):
        return ContextLengthExceededError(message, **kwargs)
    return LLMError(message, **kwargs)


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)


async def open_stream(
    client: httpx.AsyncClient,
    url: str,
    *,
    provider: str,
    payload: dict[str, Any],
    headers: dict[str, str] | None = None,
) -> httpx.Response:
    """POST `payload` and return the streaming response once headers arrived.

    Connection failures and HTTP error statuses raise here, before any event
    is produced, so callers can retry the whole request.
    """

    request = client.build_request("POST", url, headers=headers, json=payload)
    try:
        response = await client.send(request, stream=True)
    except httpx.HTTPError as exc:
        raise wrap_transport_error(exc, provider=provider, endpoint=url) from exc
    if response.status_code >= 400:
        try:
            error = await error_from_response(response)
        finally:
            await response.aclose()
        logger.error("%s request failed with status %s: %s", provider, error.status, error.message)
        raise error
    return response


async def fetch_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    provider: str,
    headers: dict[str, str] | None = None,
    timeout: float | None = None,
) -> Any:
    try:
        if timeout is None:
            response = await client.get(url, headers=headers)
        else:
            response = await client.get(url, headers=headers, timeout=timeout)
    except httpx.HTTPError as exc:
        raise wrap_transport_error(exc, provider=provider, endpoint=url) from exc
    if response.status_code >= 400:
        raise await error_from_response(response)
    try:
        return response.json()
    except json.JSONDecodeError as exc:
        raise LLMError(f"{provider} returned invalid JSON from {url}") from exc


async def iter_json_payloads(response: httpx.Response, *, provider: str) -> AsyncIterator[dict[str, Any]]:
    """Yield JSON objects from an SSE (`data:` lines) or JSON-lines body."""

    try:
        async for raw_line in response.aiter_lines():
            if not raw_line:
                continue
            if raw_line.startswith(("event:", "id:", ":")):
                continue
            if raw_line.startswith("data:"):
                payload = raw_line.partition("data:")[2].strip()
            else:
                payload = raw_line.strip()
            if not payload or payload == "[DONE]":
                continue
            try:
                parsed = json.loads(payload)
            except json.JSONDecodeError:
                logger.debug("Skipping non-JSON %s payload: %s", provider, payload)
                continue
            if isinstance(parsed, dict):
                yield parsed
    except httpx.HTTPError as exc:
        raise wrap_transport_error(exc, provider=provider, endpoint=str(response.request.url)) from exc


def items_to_responses_input(items: Sequence[ConversationItem]) -> list[dict[str, Any]]:
    """Serialize items for the OpenAI responses endpoint (ids are server-owned)."""

    wire: list[dict[str, Any]] = []
    for item in items:
        data = item.as_dict()
        data.pop("id", None)
        data.pop("duration_ms", None)
        wire.append(data)
    return wire


def items_to_chat_messages(instructions: str, items: Sequence[ConversationItem]) -> list[dict[str, Any]]:
    """Convert items into chat-completion style messages."""

    messages: list[dict[str, Any]] = []
    if instructions and instructions.strip():
        messages.append({"role": "system", "content": instructions})
    for item in items:
        if isinstance(item, MessageItem):
            message: dict[str, Any] = {"role": item.role, "content": item.text}
            images = [part.image_url for part in item.content if part.image_url]
            if images:
                message["images"] = images
            messages.append(message)
        elif isinstance(item, FunctionCallItem):
            try:
                arguments: Any = json.loads(item.arguments)
            except json.JSONDecodeError:
                arguments = item.arguments
            messages.append(
                {
                    "role": "assistant",
                    "content": "",
                    "tool_calls": [{"function": {"name": item.name, "arguments": arguments}}],
                }
            )
        elif isinstance(item, FunctionCallOutputItem):
            messages.append({"role": "tool", "content": item.output})
    return messages


def items_to_prompt(instructions: str, items: Sequence[ConversationItem]) -> str:
    """Render items with the instruction prompt template used by raw text backends."""

    lines: list[str] = []
    if instructions and instructions.strip():
        lines.append(f"System: {instructions.strip()}")
    for item in items:
        if isinstance(item, MessageItem):
            speaker = {"user": "User", "assistant": "Assistant", "system": "System"}.get(item.role, "User")
            lines.append(f"{speaker}: {item.text}")
        elif isinstance(item, FunctionCallItem):
            lines.append(f"Assistant: [tool call {item.name}] {item.arguments}")
        elif isinstance(item, FunctionCallOutputItem):
            lines.append(f"Tool: {item.output}")
        elif isinstance(item, ReasoningItem):
            continue
    lines.append("Assistant: ")
    return "\n".join(lines)


__all__ = [
    "build_headers",
    "error_from_response",
    "fetch_json",
    "items_to_chat_messages",
    "items_to_prompt",
    "items_to_responses_input",
    "iter_json_payloads",
    "open_stream",
    "wrap_transport_error",
]
