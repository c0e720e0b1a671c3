import json
from pathlib import Path

import httpx
import pytest

from polycodex.core.items import FunctionCallItem, MessageItem, text_message
from polycodex.core.llm import (
    OUTPUT_ITEM_DELTA,
    OUTPUT_ITEM_DONE,
    OUTPUT_ITEM_START,
    RESPONSE_COMPLETED,
    ContextLengthExceededError,
    LLMError,
    ProviderConnectionError,
    ProviderOptions,
    RateLimitError,
    UnsupportedProviderError,
    create_provider,
)
from polycodex.core.llm.providers.huggingface import HuggingFaceProvider
from polycodex.core.llm.providers.ollama import OllamaProvider
from polycodex.core.llm.providers.openai import OpenAIProvider
from polycodex.core.ollama_config import OllamaConfigStore


def sse(*payloads: dict) -> bytes:
    return b"".join(f"data: {json.dumps(payload)}\n\n".encode() for payload in payloads) + b"data: [DONE]\n\n"


def ndjson(*payloads: dict) -> bytes:
    return b"".join(json.dumps(payload).encode() + b"\n" for payload in payloads)


async def collect(stream) -> list:
    return [event async for event in stream]


def openai_hello_body() -> bytes:
    message = {
        "id": "msg_1",
        "type": "message",
        "role": "assistant",
        "content": [{"type": "output_text", "text": "Hello"}],
    }
    return sse(
        {"type": "response.created", "response": {"id": "resp_1"}},
        {"type": "response.output_item.added", "item": {**message, "content": []}},
        {"type": "response.output_text.delta", "item_id": "msg_1", "delta": "Hel"},
        {"type": "response.output_text.delta", "item_id": "msg_1", "delta": "lo"},
        {"type": "response.output_item.done", "item": message},
        {"type": "response.completed", "response": {"id": "resp_1", "status": "completed", "output": [message]}},
    )


def make_openai(handler) -> OpenAIProvider:
    return OpenAIProvider(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.asyncio
async def test_openai_maps_native_events() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/responses"
        assert request.headers["authorization"] == "Bearer test-key"
        payload = json.loads(request.content.decode())
        assert payload["stream"] is True
        assert payload["previous_response_id"] == "resp_0"
        assert payload["input"][0]["content"][0]["text"] == "ping"
        assert "id" not in payload["input"][0]
        assert payload["tools"][0]["name"] == "shell"
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=openai_hello_body())

    provider = make_openai(handler)
    await provider.initialize(ProviderOptions(api_key="test-key", extras={"tools": [{"type": "function", "name": "shell"}]}))

    stream = await provider.create_streaming_response("o4-mini", "be nice", [text_message("user", "ping")], "resp_0")
    events = await collect(stream)

    assert [event.type for event in events] == [
        OUTPUT_ITEM_START,
        OUTPUT_ITEM_DELTA,
        OUTPUT_ITEM_DELTA,
        OUTPUT_ITEM_DONE,
        RESPONSE_COMPLETED,
    ]
    assert [event.delta for event in events if event.type == OUTPUT_ITEM_DELTA] == ["Hel", "lo"]
    completed = events[-1].response
    assert completed is not None
    assert completed.id == "resp_1"
    assert completed.output == [event.item for event in events if event.type == OUTPUT_ITEM_DONE]
    assert stream.closed


@pytest.mark.asyncio
async def test_openai_requires_api_key() -> None:
    provider = make_openai(lambda request: httpx.Response(200))
    with pytest.raises(LLMError):
        await provider.initialize(ProviderOptions(api_key=None))


@pytest.mark.asyncio
async def test_openai_http_errors_are_classified() -> None:
    responses = [
        httpx.Response(429, json={"error": {"message": "Rate limit reached. Please try again in 1.5s", "code": "rate_limit_exceeded"}}),
        httpx.Response(
            400,
            headers={"x-request-id": "req_42"},
            json={"error": {"message": "bad input", "type": "invalid_request_error"}},
        ),
        httpx.Response(400, json={"error": {"message": "maximum context length is 8192 tokens", "type": "invalid_request_error"}}),
    ]

    provider = make_openai(lambda request: responses.pop(0))
    await provider.initialize(ProviderOptions(api_key="k"))

    with pytest.raises(RateLimitError) as rate_limited:
        await provider.create_streaming_response("o4-mini", "", [text_message("user", "hi")])
    assert rate_limited.value.status == 429

    with pytest.raises(LLMError) as rejected:
        await provider.create_streaming_response("o4-mini", "", [text_message("user", "hi")])
    assert rejected.value.request_id == "req_42"
    assert rejected.value.type == "invalid_request_error"

    with pytest.raises(ContextLengthExceededError):
        await provider.create_streaming_response("o4-mini", "", [text_message("user", "hi")])


@pytest.mark.asyncio
async def test_openai_stream_failure_event_raises() -> None:
    body = sse({"type": "response.failed", "response": {"id": "r", "error": {"message": "boom", "code": "server_error"}}})
    provider = make_openai(lambda request: httpx.Response(200, content=body))
    await provider.initialize(ProviderOptions(api_key="k"))

    stream = await provider.create_streaming_response("o4-mini", "", [text_message("user", "hi")])
    with pytest.raises(LLMError, match="boom"):
        await collect(stream)


@pytest.mark.asyncio
async def test_openai_list_models_returns_empty_on_error() -> None:
    provider = make_openai(lambda request: httpx.Response(500, text="down"))
    await provider.initialize(ProviderOptions(api_key="k"))

    assert await provider.list_available_models() == []


def ollama_handler(chat_body: bytes, seen: list[dict]):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/tags"):
            return httpx.Response(200, json={"models": [{"name": "llama3"}, {"name": "mistral"}]})
        assert request.url.path == "/api/chat"
        seen.append(json.loads(request.content.decode()))
        return httpx.Response(200, content=chat_body)

    return handler


def make_ollama(handler, tmp_path: Path) -> OllamaProvider:
    return OllamaProvider(
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        params_store=OllamaConfigStore(tmp_path),
    )


HELLO_CHUNKS = (
    {"model": "llama3", "message": {"role": "assistant", "content": "Hel"}, "done": False},
    {"model": "llama3", "message": {"role": "assistant", "content": "lo"}, "done": False},
    {"model": "llama3", "message": {"role": "assistant", "content": ""}, "done": True},
)


@pytest.mark.asyncio
async def test_ollama_streams_chat_chunks(tmp_path: Path) -> None:
    seen: list[dict] = []
    provider = make_ollama(ollama_handler(ndjson(*HELLO_CHUNKS), seen), tmp_path)
    await provider.initialize(ProviderOptions())

    events = await collect(
        await provider.create_streaming_response("llama3", "be brief", [text_message("user", "ping")])
    )

    assert [event.type for event in events] == [
        OUTPUT_ITEM_START,
        OUTPUT_ITEM_DELTA,
        OUTPUT_ITEM_DELTA,
        OUTPUT_ITEM_DONE,
        RESPONSE_COMPLETED,
    ]
    done = events[3].item
    assert isinstance(done, MessageItem)
    assert done.text == "Hello"
    assert events[-1].response.output == [done]
    request = seen[0]
    assert request["stream"] is True
    assert request["messages"][0] == {"role": "system", "content": "be brief"}
    assert request["messages"][1] == {"role": "user", "content": "ping"}
    assert request["options"]["temperature"] == 0.8
    assert request["options"]["num_ctx"] == 8192


@pytest.mark.asyncio
async def test_ollama_replays_previous_transcript(tmp_path: Path) -> None:
    seen: list[dict] = []
    provider = make_ollama(ollama_handler(ndjson(*HELLO_CHUNKS), seen), tmp_path)
    await provider.initialize(ProviderOptions())

    first = await collect(await provider.create_streaming_response("llama3", "", [text_message("user", "one")]))
    response_id = first[-1].response.id
    await collect(await provider.create_streaming_response("llama3", "", [text_message("user", "two")], response_id))

    assert [message["content"] for message in seen[1]["messages"]] == ["one", "Hello", "two"]
    assert first[-1].response.id != ""


@pytest.mark.asyncio
async def test_ollama_non_streaming_synthesizes_done_and_completed(tmp_path: Path) -> None:
    store = OllamaConfigStore(tmp_path)
    store.update_global_params({"use_streaming": False, "stop_sequences": ["###"]})
    seen: list[dict] = []
    body = json.dumps({"model": "phi", "message": {"role": "assistant", "content": "Hello"}, "done": True}).encode()
    provider = OllamaProvider(
        client=httpx.AsyncClient(transport=httpx.MockTransport(ollama_handler(body, seen))),
        params_store=store,
    )
    await provider.initialize(ProviderOptions())

    events = await collect(await provider.create_streaming_response("phi", "", [text_message("user", "hi")]))

    assert [event.type for event in events] == [OUTPUT_ITEM_DONE, RESPONSE_COMPLETED]
    assert events[0].item.text == "Hello"
    assert seen[0]["stream"] is False
    assert seen[0]["options"]["stop"] == ["###"]


@pytest.mark.asyncio
async def test_ollama_tool_calls_become_function_calls(tmp_path: Path) -> None:
    chunk = {
        "message": {
            "role": "assistant",
            "content": "",
            "tool_calls": [{"function": {"name": "shell", "arguments": {"command": ["ls"]}}}],
        },
        "done": True,
    }
    provider = make_ollama(ollama_handler(ndjson(chunk), []), tmp_path)
    await provider.initialize(ProviderOptions())

    events = await collect(await provider.create_streaming_response("llama3", "", [text_message("user", "list")]))

    assert [event.type for event in events] == [OUTPUT_ITEM_DONE, RESPONSE_COMPLETED]
    call = events[0].item
    assert isinstance(call, FunctionCallItem)
    assert call.name == "shell"
    assert json.loads(call.arguments) == {"command": ["ls"]}
    assert events[1].response.output == [call]


@pytest.mark.asyncio
async def test_ollama_initialize_reports_unreachable_server(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = make_ollama(handler, tmp_path)
    with pytest.raises(ProviderConnectionError) as excinfo:
        await provider.initialize(ProviderOptions(base_url="http://localhost:11434/api"))

    assert isinstance(excinfo.value, ConnectionError)
    assert excinfo.value.provider == "ollama"
    assert excinfo.value.endpoint == "http://localhost:11434/api/tags"


@pytest.mark.asyncio
async def test_ollama_lists_models(tmp_path: Path) -> None:
    provider = make_ollama(ollama_handler(b"", []), tmp_path)
    await provider.initialize(ProviderOptions())

    assert await provider.list_available_models() == ["llama3", "mistral"]


def tgi_body() -> bytes:
    return sse(
        {"token": {"id": 1, "text": "Hel", "special": False}, "generated_text": None},
        {"token": {"id": 2, "text": "lo", "special": False}, "generated_text": None},
        {"token": {"id": 3, "text": "</s>", "special": True}, "generated_text": "Hello"},
    )


@pytest.mark.asyncio
async def test_huggingface_streams_tokens_with_prompt_template() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=tgi_body())

    provider = HuggingFaceProvider(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    await provider.initialize(ProviderOptions(api_key="hf_token"))

    events = await collect(
        await provider.create_streaming_response("mistral-7b-instruct", "Be brief", [text_message("user", "Hi")])
    )

    assert [event.type for event in events] == [
        OUTPUT_ITEM_START,
        OUTPUT_ITEM_DELTA,
        OUTPUT_ITEM_DELTA,
        OUTPUT_ITEM_DONE,
        RESPONSE_COMPLETED,
    ]
    assert events[3].item.text == "Hello"
    request = seen[0]
    assert request.url.path == "/generate_stream"
    assert request.headers["authorization"] == "Bearer hf_token"
    payload = json.loads(request.content.decode())
    assert payload["inputs"] == "System: Be brief\nUser: Hi\nAssistant: "
    assert payload["parameters"]["max_new_tokens"] == 1024
    assert payload["parameters"]["return_full_text"] is False


@pytest.mark.asyncio
async def test_huggingface_error_payload_raises() -> None:
    body = sse({"error": "Input validation error", "error_type": "validation"})
    provider = HuggingFaceProvider(
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body)))
    )
    await provider.initialize(ProviderOptions())

    stream = await provider.create_streaming_response("tgi", "", [text_message("user", "Hi")])
    with pytest.raises(LLMError, match="Input validation error"):
        await collect(stream)


@pytest.mark.asyncio
async def test_huggingface_lists_string_and_object_models() -> None:
    provider = HuggingFaceProvider(
        client=httpx.AsyncClient(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, json={"data": ["gemma-7b-it", {"id": "mistral-7b-instruct"}]})
            )
        )
    )
    await provider.initialize(ProviderOptions())

    assert await provider.list_available_models() == ["gemma-7b-it", "mistral-7b-instruct"]


@pytest.mark.asyncio
async def test_adapters_produce_identical_event_shapes(tmp_path: Path) -> None:
    openai = make_openai(lambda request: httpx.Response(200, content=openai_hello_body()))
    await openai.initialize(ProviderOptions(api_key="k"))
    ollama = make_ollama(ollama_handler(ndjson(*HELLO_CHUNKS), []), tmp_path)
    await ollama.initialize(ProviderOptions())
    tgi = HuggingFaceProvider(
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, content=tgi_body())))
    )
    await tgi.initialize(ProviderOptions())

    shapes = []
    for provider in (openai, ollama, tgi):
        events = await collect(await provider.create_streaming_response("m", "", [text_message("user", "hi")]))
        done = [event.item for event in events if event.type == OUTPUT_ITEM_DONE]
        shapes.append(
            (
                [event.type for event in events],
                [event.delta for event in events if event.type == OUTPUT_ITEM_DELTA],
                [(item.type, item.role, [part.type for part in item.content], item.text) for item in done],
                events[-1].response.output == done,
            )
        )

    assert shapes[0] == shapes[1] == shapes[2]


def test_create_provider_is_lazy_and_validates_type() -> None:
    assert isinstance(create_provider("hf"), HuggingFaceProvider)
    assert isinstance(create_provider("ollama"), OllamaProvider)
    with pytest.raises(UnsupportedProviderError):
        create_provider("anthropic-on-a-toaster")
