"""Turn loop orchestrating provider streams, tool execution and cancellation."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from polycodex.core.approvals import ApprovalPolicy
from polycodex.core.cancellation import AbortedError, AbortSignal
from polycodex.core.config import PolycodexConfig
from polycodex.core.exec import SHELL_TOOL, ConfirmationCallback, handle_exec_command
from polycodex.core.items import (
    ConversationItem,
    FunctionCallItem,
    FunctionCallOutputItem,
    ReasoningItem,
    function_call_output,
    item_from_dict,
    system_message,
    text_message,
)
from polycodex.core.llm.errors import (
    ContextLengthExceededError,
    LLMError,
    PrematureCloseError,
    ProviderConnectionError,
    ProviderTimeoutError,
    RateLimitError,
)
from polycodex.core.llm.models import ModelCatalog
from polycodex.core.llm.provider import LLMProvider, create_provider
from polycodex.core.llm.stream import EventStream
from polycodex.core.llm.types import (
    OUTPUT_ITEM_DELTA,
    OUTPUT_ITEM_DONE,
    RESPONSE_COMPLETED,
    ProviderOptions,
    ProviderType,
    StreamingEvent,
)
from polycodex.core.parsers import parse_tool_call_arguments

logger = logging.getLogger(__name__)

MAX_RETRIES = 5
STAGE_DELAY_SECONDS = 0.01
FLUSH_DELAY_SECONDS = 0.03
SHELL_TOOL_NAMES = frozenset({"shell", "container.exec"})

CONTEXT_LENGTH_MESSAGE = (
    "⚠️  The current request exceeds the maximum context length supported by the chosen model. "
    "Please shorten the conversation, run /clear, or switch to a model with a larger context window and try again."
)
PREMATURE_CLOSE_MESSAGE = "⚠️  Connection closed prematurely while waiting for the model. Please try again."
NETWORK_ERROR_MESSAGE = (
    "⚠️  Network error while contacting the LLM provider. Please check your connection and try again."
)

_RETRY_AFTER_PATTERN = re.compile(r"(?:re)?try again in\s*([\d.]+)\s*s", re.IGNORECASE)
_MAX_TOKENS_PATTERN = re.compile(r"max_tokens is too large", re.IGNORECASE)
_NETWORK_MESSAGE_PATTERN = re.compile(r"network|socket|stream", re.IGNORECASE)

ItemCallback = Callable[[ConversationItem], None]
LoadingCallback = Callable[[bool], None]
ResponseIdCallback = Callable[[str], None]
DeltaCallback = Callable[[str, str], None]
Sleeper = Callable[[float], Awaitable[None]]


class AgentTerminatedError(RuntimeError):
    """Raised when `run()` is called on a terminated agent loop."""


# ----------------------------------------------------------------------
# Error classification
# ----------------------------------------------------------------------
def _status(exc: BaseException) -> int | None:
    status = getattr(exc, "status", None)
    return status if isinstance(status, int) else None


def is_retryable(exc: BaseException) -> bool:
    """Timeouts, connection failures and 5xx responses are retried immediately."""

    if isinstance(exc, (ProviderTimeoutError, ProviderConnectionError, asyncio.TimeoutError)):
        return True
    status = _status(exc)
    return status is not None and status >= 500


def is_context_length_error(exc: BaseException) -> bool:
    if isinstance(exc, ContextLengthExceededError):
        return True
    message = str(getattr(exc, "message", exc))
    mentions_max_tokens = getattr(exc, "param", None) == "max_tokens" or bool(_MAX_TOKENS_PATTERN.search(message))
    return mentions_max_tokens and getattr(exc, "type", None) == "invalid_request_error"


def is_rate_limit(exc: BaseException) -> bool:
    if isinstance(exc, RateLimitError) or _status(exc) == 429:
        return True
    if "rate_limit_exceeded" in (getattr(exc, "code", None), getattr(exc, "type", None)):
        return True
    return "rate limit" in str(getattr(exc, "message", exc)).lower()


def is_client_error(exc: BaseException) -> bool:
    status = _status(exc)
    if status is not None and 400 <= status < 500 and status != 429:
        return True
    return "invalid_request_error" in (getattr(exc, "code", None), getattr(exc, "type", None))


def is_network_or_server_error(exc: BaseException) -> bool:
    if isinstance(exc, (ProviderConnectionError, ProviderTimeoutError, ConnectionError)):
        return True
    status = _status(exc)
    if status is not None and status >= 500:
        return True
    return isinstance(exc, LLMError) and bool(_NETWORK_MESSAGE_PATTERN.search(exc.message))


def parse_retry_after_seconds(message: str) -> float | None:
    match = _RETRY_AFTER_PATTERN.search(message or "")
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def _error_details(exc: BaseException) -> str:
    return ", ".join(
        [
            f"Status: {_status(exc) or 'unknown'}",
            f"Code: {getattr(exc, 'code', None) or 'unknown'}",
            f"Type: {getattr(exc, 'type', None) or 'unknown'}",
            f"Message: {getattr(exc, 'message', None) or str(exc) or 'unknown'}",
        ]
    )


class AgentLoop:
    """Runs conversation turns against one provider adapter.

    Every asynchronous delivery captures the generation it belongs to and is
    dropped when `run()` or `cancel()` has since advanced the counter.
    """

    def __init__(
        self,
        *,
        model: str,
        instructions: str = "",
        approval_policy: ApprovalPolicy | str = ApprovalPolicy.SUGGEST,
        config: PolycodexConfig | None = None,
        on_item: ItemCallback,
        on_loading: LoadingCallback,
        get_command_confirmation: ConfirmationCallback,
        on_last_response_id: ResponseIdCallback,
        provider_type: ProviderType | str = ProviderType.OPENAI,
        provider: LLMProvider | None = None,
        on_delta: DeltaCallback | None = None,
        sleep: Sleeper | None = None,
        model_catalog: ModelCatalog | None = None,
    ) -> None:
        self.model = model
        self.instructions = instructions
        self.approval_policy = ApprovalPolicy.parse(approval_policy)
        self.config = config or PolycodexConfig()
        self.provider_type = ProviderType.parse(provider_type)
        self._on_item = on_item
        self._on_loading = on_loading
        self._get_command_confirmation = get_command_confirmation
        self._on_last_response_id = on_last_response_id
        self._on_delta = on_delta
        self._sleep = sleep or asyncio.sleep
        self._model_catalog = model_catalog or ModelCatalog()

        self._provider = provider
        self._provider_initialized = False
        self._generation = 0
        self._canceled = False
        self._terminated = False
        self._active = False
        self._turn_abort = AbortSignal()
        self._pending_aborts: set[str] = set()
        self._processed_call_ids: set[str] = set()

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------
    @property
    def generation(self) -> int:
        return self._generation

    @property
    def pending_aborts(self) -> frozenset[str]:
        return frozenset(self._pending_aborts)

    @property
    def terminated(self) -> bool:
        return self._terminated

    def cancel(self) -> None:
        """Abort the in-flight run, if any; safe to call while idle."""

        logger.debug("cancel() at generation %s (pending aborts: %s)", self._generation, len(self._pending_aborts))
        self._canceled = True
        self._turn_abort.abort("canceled")
        # Unanswered calls keep the previous response id so the next turn can answer them.
        if self._active and not self._pending_aborts:
            self._on_last_response_id("")
        self._on_loading(False)
        self._generation += 1

    def terminate(self) -> None:
        if self._terminated:
            return
        self._terminated = True
        self.cancel()

    async def close(self) -> None:
        """Terminate the loop and release the provider's network resources."""

        self.terminate()
        self._model_catalog.clear()
        if self._provider is not None:
            await self._provider.close()

    # ------------------------------------------------------------------
    # Turn execution
    # ------------------------------------------------------------------
    async def run(
        self,
        input: Sequence[ConversationItem | str],  # noqa: A002
        previous_response_id: str = "",
    ) -> None:
        if self._terminated:
            raise AgentTerminatedError("AgentLoop has been terminated")
        self._active = True
        try:
            await self._run(input, previous_response_id)
        except PrematureCloseError as exc:
            logger.warning("Provider stream closed prematurely: %s", exc)
            self._on_item(system_message(PREMATURE_CLOSE_MESSAGE))
            self._on_loading(False)
        except Exception as exc:
            if not is_network_or_server_error(exc):
                raise
            logger.warning("Network error during run: %s", exc)
            self._on_item(system_message(NETWORK_ERROR_MESSAGE))
            self._on_loading(False)
        finally:
            self._active = False

    async def _run(self, input: Sequence[ConversationItem | str], previous_response_id: str) -> None:  # noqa: A002
        # The turn owns a generation from the start so cancel() during setup is honoured.
        self._generation += 1
        generation = self._generation
        self._canceled = False
        abort = AbortSignal()
        self._turn_abort = abort

        def is_current() -> bool:
            return generation == self._generation and not self._canceled and not self._terminated

        if not await self._ensure_provider(abort) or not is_current():
            self._on_loading(False)
            return
        assert self._provider is not None
        if self.provider_type is not ProviderType.HUGGINGFACE:
            try:
                supported = await abort.race(
                    self._model_catalog.is_model_supported_for_responses(self.model, self._provider, self.provider_type)
                )
            except AbortedError:
                self._on_loading(False)
                return
            if not supported:
                self._on_item(
                    system_message(
                        f'⚠️  The model "{self.model}" does not appear in the list of models available '
                        f"for provider {self.provider_type.value}. Please check the model name and try again."
                    )
                )
                self._on_loading(False)
                return

        thinking_start = time.monotonic()
        abort_outputs: list[ConversationItem] = [
            function_call_output(call_id, "aborted", {"exit_code": 1, "duration_seconds": 0})
            for call_id in self._pending_aborts
        ]
        self._pending_aborts.clear()
        turn_input: list[ConversationItem] = abort_outputs + [_coerce_item(entry) for entry in input]
        last_response_id = previous_response_id

        self._on_loading(True)
        loop = asyncio.get_running_loop()
        staged: list[ConversationItem | None] = []
        staged_ids: set[str] = set()

        def stage_item(item: ConversationItem) -> None:
            if generation != self._generation or item.id in staged_ids:
                return
            staged_ids.add(item.id)
            index = len(staged)
            staged.append(item)

            def deliver() -> None:
                if is_current() and staged[index] is not None:
                    staged[index] = None
                    self._on_item(item)

            loop.call_later(STAGE_DELAY_SECONDS, deliver)

        while turn_input:
            if self._canceled or self._terminated:
                self._on_loading(False)
                return
            for item in turn_input:
                stage_item(item)

            stream = await self._open_stream(turn_input, last_response_id, abort)
            if stream is None:
                return
            turn_input = []
            if self._canceled or self._terminated:
                await stream.aclose()
                self._on_loading(False)
                return

            queued: list[FunctionCallItem] = []
            completed_status: str | None = None
            iterator = stream.__aiter__()
            try:
                while True:
                    try:
                        event = await abort.race(_next_event(iterator))
                    except AbortedError:
                        self._on_loading(False)
                        return
                    if event is None:
                        break
                    if not is_current():
                        continue
                    if event.type == OUTPUT_ITEM_DELTA and self._on_delta and event.item_id and event.delta:
                        self._on_delta(event.item_id, event.delta)
                    elif event.type == OUTPUT_ITEM_DONE and event.item is not None:
                        item = event.item
                        if isinstance(item, ReasoningItem):
                            item.duration_ms = int((time.monotonic() - thinking_start) * 1000)
                        if isinstance(item, FunctionCallItem):
                            self._pending_aborts.add(item.call_id)
                            queued.extend(self._extract_function_calls([item], stage_item))
                        else:
                            stage_item(item)
                    elif event.type == RESPONSE_COMPLETED and event.response is not None:
                        completed_status = event.response.status
                        queued.extend(self._extract_function_calls(event.response.output, stage_item))
                        last_response_id = event.response.id
                        self._on_last_response_id(event.response.id)
            finally:
                await stream.aclose()

            if completed_status == "completed":
                for call in queued:
                    if self._canceled or self._terminated:
                        break
                    turn_input.extend(await self._handle_function_call(call, abort))
            if self._canceled or self._terminated:
                self._on_loading(False)
                return
            logger.debug("Next turn input: %s", ", ".join(item.type for item in turn_input) or "(none)")

        await asyncio.sleep(FLUSH_DELAY_SECONDS)
        if is_current():
            for index, item in enumerate(staged):
                if item is not None:
                    staged[index] = None
                    self._on_item(item)
        self._pending_aborts.clear()
        self._on_loading(False)

    def _extract_function_calls(
        self,
        output: Sequence[ConversationItem],
        stage_item: Callable[[ConversationItem], None],
    ) -> list[FunctionCallItem]:
        """Collect unseen function calls from streamed or batched output.

        Non-call items are staged; each call id is returned at most once.
        """

        calls: list[FunctionCallItem] = []
        for item in output:
            if not isinstance(item, FunctionCallItem):
                stage_item(item)
                continue
            if item.call_id in self._processed_call_ids:
                continue
            self._processed_call_ids.add(item.call_id)
            self._pending_aborts.add(item.call_id)
            calls.append(item)
        return calls

    async def _open_stream(
        self,
        turn_input: list[ConversationItem],
        last_response_id: str,
        abort: AbortSignal,
    ) -> EventStream | None:
        """Request a response with retries; `None` means the turn already ended."""

        assert self._provider is not None
        instructions = "\n".join(part for part in (PREFIX, self.instructions) if part)
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                return await abort.race(
                    self._provider.create_streaming_response(
                        self.model,
                        instructions,
                        turn_input,
                        last_response_id or None,
                    )
                )
            except AbortedError:
                self._on_loading(False)
                return None
            except Exception as exc:
                if is_retryable(exc) and attempt < MAX_RETRIES:
                    logger.info("LLM request failed (attempt %s/%s), retrying: %s", attempt, MAX_RETRIES, exc)
                    continue
                if is_context_length_error(exc):
                    self._end_turn_with(CONTEXT_LENGTH_MESSAGE)
                    return None
                if is_rate_limit(exc):
                    if attempt < MAX_RETRIES:
                        delay_ms = self.config.rate_limit_retry_wait_ms * 2 ** (attempt - 1)
                        suggested = parse_retry_after_seconds(str(getattr(exc, "message", exc)))
                        if suggested is not None:
                            delay_ms = suggested * 1000
                        logger.info(
                            "Rate limit exceeded (attempt %s/%s), retrying in %s ms",
                            attempt,
                            MAX_RETRIES,
                            round(delay_ms),
                        )
                        try:
                            await abort.race(self._sleep(delay_ms / 1000))
                        except AbortedError:
                            self._on_loading(False)
                            return None
                        continue
                    self._end_turn_with(
                        f"⚠️  Rate limit reached. Error details: {_error_details(exc)}. Please try again later."
                    )
                    return None
                if is_client_error(exc):
                    request_id = getattr(exc, "request_id", None)
                    suffix = f" (request ID: {request_id})" if request_id else ""
                    self._end_turn_with(
                        f"⚠️  The provider rejected the request{suffix}. "
                        f"Error details: {_error_details(exc)}. Please check your settings and try again."
                    )
                    return None
                raise
        return None

    def _end_turn_with(self, message: str) -> None:
        self._on_item(system_message(message))
        self._on_loading(False)

    async def _ensure_provider(self, abort: AbortSignal) -> bool:
        if self._provider_initialized:
            return True
        try:
            if self._provider is None:
                self._provider = create_provider(self.provider_type)
            options = ProviderOptions(
                api_key=self.config.resolved_api_key(self.provider_type),
                base_url=self.config.resolved_provider_url(self.provider_type),
                timeout_seconds=self.config.timeout_ms / 1000,
                extras={"tools": [SHELL_TOOL], "reasoning_effort": self.config.reasoning_effort},
            )
            await abort.race(self._provider.initialize(options))
        except AbortedError:
            logger.debug("Provider initialization abandoned by cancel()")
            return False
        except (LLMError, OSError) as exc:
            logger.error("Failed to initialize %s provider: %s", self.provider_type.value, exc)
            self._on_item(
                system_message(
                    f"⚠️  Problem initializing provider {self.provider_type.value}. Error: {exc}"
                )
            )
            return False
        self._provider_initialized = True
        return True

    async def _handle_function_call(self, call: FunctionCallItem, abort: AbortSignal) -> list[ConversationItem]:
        args = parse_tool_call_arguments(call.arguments)
        logger.debug("Function call %s (%s): %s", call.name, call.call_id, call.arguments)
        if args is None:
            return [FunctionCallOutputItem(call_id=call.call_id, output=f"invalid arguments: {call.arguments}")]
        if call.name not in SHELL_TOOL_NAMES:
            return [FunctionCallOutputItem(call_id=call.call_id, output="no function found")]
        result = await handle_exec_command(
            args,
            self.config,
            self.approval_policy,
            self._get_command_confirmation,
            abort,
        )
        output = function_call_output(call.call_id, result.output_text, result.metadata)
        return [output, *result.additional_items]


async def _next_event(iterator: EventStream) -> StreamingEvent | None:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


def _coerce_item(entry: ConversationItem | str | dict[str, Any]) -> ConversationItem:
    if isinstance(entry, str):
        return text_message("user", entry)
    if isinstance(entry, dict):
        return item_from_dict(entry)
    return entry


PREFIX = """You are polycodex, a command-line coding assistant that uses language models to work with a local codebase. You are precise, helpful and safe.

You can:
- Receive requests from the user along with project context and files.
- Reply and call functions (shell commands, code edits).
- Apply patches, run commands and work with the user's approval settings.
- Work inside a sandboxed workspace with git support.

You are an agent: keep going until the user's request is completely resolved before ending your turn. If you are unsure about file contents or code structure, use your tools to read files and gather the relevant information. Do NOT guess.

Solve the task by editing and testing the code files in your current session. The repositories are already cloned in your working directory.

When carrying out the task you MUST follow these rules:
- Working on the repositories in the current environment is allowed, even if they are proprietary.
- Analysing code for vulnerabilities is allowed.
- Showing user code and tool call details is allowed.
- Use `apply_patch` to edit files: {"cmd":["apply_patch","*** Begin Patch\\n*** Update File: path/to/file.py\\n@@ def example():\\n-  pass\\n+  return 123\\n*** End Patch"]}
- If the task requires writing or modifying files:
    - Fix the problem at its root rather than applying surface-level patches.
    - Avoid unneeded complexity.
    - Update documentation where needed.
    - Stay consistent with the style of the existing codebase.
    - NEVER add copyright or license headers unless asked.
    - Check your changes with `git status` when you are done.
- If the task does NOT require writing or modifying files, answer in a friendly tone, like a knowledgeable remote colleague."""


__all__ = [
    "MAX_RETRIES",
    "PREFIX",
    "AgentLoop",
    "AgentTerminatedError",
    "is_client_error",
    "is_context_length_error",
    "is_network_or_server_error",
    "is_rate_limit",
    "is_retryable",
    "parse_retry_after_seconds",
]
