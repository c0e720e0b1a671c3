"""Interactive CLI shell for polycodex."""

from __future__ import annotations

import asyncio
import logging
import shlex
import signal
from pathlib import Path

from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory, InMemoryHistory
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.status import Status

from polycodex.cli.branding import create_chat_panel, render_banner, themed_console
from polycodex.core.agent_loop import AgentLoop
from polycodex.core.approvals import ApplyPatchCommand, ApprovalPolicy, CommandConfirmation, ReviewDecision
from polycodex.core.config import ConfigManager, ConfigurationError, PolycodexConfig
from polycodex.core.items import (
    ConversationItem,
    FunctionCallOutputItem,
    MessageItem,
    ReasoningItem,
    item_text,
)
from polycodex.core.llm.provider import LLMProvider
from polycodex.core.llm.types import ProviderType

logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  /help            Show this help
  /clear           Start a fresh conversation
  /model <name>    Switch the active model
  /exit            Quit polycodex

Press Ctrl-C while the agent is working to cancel the current request."""

QUIET_DENY_MESSAGE = "Commands cannot be approved in quiet mode; answer without running them."
_MAX_TOOL_PREVIEW_LINES = 12


class CLIApp:
    """Prompt loop that feeds user input into an `AgentLoop` and renders its items."""

    def __init__(
        self,
        config: PolycodexConfig,
        *,
        model: str | None = None,
        provider_type: ProviderType | str | None = None,
        approval_policy: ApprovalPolicy | str | None = None,
        console: Console | None = None,
        prompt_session: PromptSession | None = None,
        history_path: Path | None = None,
        quiet: bool = False,
        provider: LLMProvider | None = None,
        config_manager: ConfigManager | None = None,
    ) -> None:
        self.config = config
        self.config_manager = config_manager
        self.model = model or config.model
        self.provider_type = ProviderType.parse(provider_type or config.provider)
        self.approval_policy = ApprovalPolicy.parse(approval_policy or config.approval_mode)
        self.console = console or themed_console()
        self.quiet = quiet
        if prompt_session is None:
            history = FileHistory(str(history_path)) if history_path is not None else InMemoryHistory()
            prompt_session = PromptSession(history=history)
        self.session = prompt_session
        self.last_response_id = ""
        self.loading = False
        self._status: Status | None = None
        self._provider = provider
        self.agent = self._build_agent()

    def _build_agent(self) -> AgentLoop:
        return AgentLoop(
            model=self.model,
            instructions=self.config.instructions,
            approval_policy=self.approval_policy,
            config=self.config,
            on_item=self.render_item,
            on_loading=self.set_loading,
            get_command_confirmation=self.confirm_command,
            on_last_response_id=self._remember_response_id,
            provider_type=self.provider_type,
            provider=self._provider,
        )

    # ------------------------------------------------------------------
    # Agent callbacks
    # ------------------------------------------------------------------
    def _remember_response_id(self, response_id: str) -> None:
        self.last_response_id = response_id

    def set_loading(self, loading: bool) -> None:
        self.loading = loading
        if self.quiet:
            return
        if loading and self._status is None:
            self._status = self.console.status("[polycodex.text.secondary]Thinking...[/]")
            self._status.start()
        elif not loading and self._status is not None:
            self._status.stop()
            self._status = None

    def render_item(self, item: ConversationItem) -> None:
        if isinstance(item, MessageItem):
            if item.role == "user":
                return
            if self.quiet:
                self.console.print(item.text)
                return
            self.console.print(create_chat_panel(item.role, item.text, use_markdown=item.role == "assistant"))
        elif isinstance(item, FunctionCallOutputItem):
            if self.quiet:
                return
            payload = item.parsed_output()
            output = item_text(item)
            lines = output.splitlines()
            if len(lines) > _MAX_TOOL_PREVIEW_LINES:
                hidden = len(lines) - _MAX_TOOL_PREVIEW_LINES
                output = "\n".join(lines[:_MAX_TOOL_PREVIEW_LINES]) + f"\n... ({hidden} more lines)"
            exit_code = (payload.get("metadata") or {}).get("exit_code")
            title = "tool" if exit_code is None else f"tool (exit {exit_code})"
            self.console.print(create_chat_panel("tool", output or "(no output)", title=title))
        elif isinstance(item, ReasoningItem) and not self.quiet:
            seconds = (item.duration_ms or 0) / 1000
            self.console.print(f"[polycodex.text.secondary]thought for {seconds:.1f}s[/]")

    async def confirm_command(self, command: list[str], patch: ApplyPatchCommand | None) -> CommandConfirmation:
        if self.quiet:
            return CommandConfirmation(review=ReviewDecision.DENY, custom_deny_message=QUIET_DENY_MESSAGE)
        self.set_loading(False)
        body = patch.patch if patch is not None else shlex.join(command)
        title = "apply_patch" if patch is not None else "shell"
        self.console.print(create_chat_panel("tool", body, title=f"Run {title}?"))
        answer = (await self.session.prompt_async("Allow? [y]es / [n]o <reason> / [e]xplain: ")).strip()
        self.set_loading(True)
        return parse_confirmation(answer)

    # ------------------------------------------------------------------
    # Prompt handling
    # ------------------------------------------------------------------
    async def submit(self, text: str) -> None:
        """Run one user turn; Ctrl-C cancels it instead of exiting."""

        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(self.agent.run([text], self.last_response_id))
        handler_installed = False
        try:
            loop.add_signal_handler(signal.SIGINT, self.cancel)
            handler_installed = True
        except (NotImplementedError, RuntimeError):
            logger.debug("SIGINT handler unavailable; Ctrl-C will not cancel runs")
        try:
            await task
        finally:
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)
            self.set_loading(False)

    def cancel(self) -> None:
        self.agent.cancel()
        if not self.quiet:
            self.console.print("[polycodex.text.secondary]Cancelled.[/]")

    async def handle_line(self, line: str) -> bool:
        """Handle one line of input; return False to leave the shell."""

        text = line.strip()
        if not text:
            return True
        if text in {"/exit", "/quit"}:
            return False
        if text == "/help":
            self.console.print(HELP_TEXT)
            return True
        if text == "/clear":
            self.agent.cancel()
            self.last_response_id = ""
            self.console.clear()
            self.console.print("[polycodex.text.secondary]Started a new conversation.[/]")
            return True
        if text.startswith("/model"):
            name = text[len("/model") :].strip()
            if not name:
                self.console.print(f"Current model: {self.agent.model}")
                return True
            self.agent.model = name
            self.model = name
            self.last_response_id = ""
            if self.config_manager is not None:
                try:
                    self.config_manager.update(model=name)
                except ConfigurationError as exc:
                    logger.warning("Failed to persist model selection: %s", exc)
            self.console.print(f"Switched model to {name}.")
            return True
        if text.startswith("/"):
            self.console.print(f"Unknown command {text.split()[0]}. Type /help for the list of commands.")
            return True
        await self.submit(text)
        return True

    async def run_async(self) -> None:
        render_banner(self.console)
        self.console.print(
            f"[polycodex.text.secondary]provider[/] {self.provider_type.value}  "
            f"[polycodex.text.secondary]model[/] {self.model}  "
            f"[polycodex.text.secondary]approval[/] {self.approval_policy.value}"
        )
        with patch_stdout(raw=True):
            while True:
                try:
                    line = await self.session.prompt_async("› ")
                except KeyboardInterrupt:
                    continue
                except EOFError:
                    break
                if not await self.handle_line(line):
                    break
        self.console.print("Bye!")

    async def run_once(self, prompt: str) -> None:
        await self.submit(prompt)

    async def close(self) -> None:
        await self.agent.close()

    def run(self, prompt: str | None = None) -> None:
        """Start the interactive shell, or answer a single prompt when given one."""

        async def _main() -> None:
            try:
                if prompt is not None:
                    await self.run_once(prompt)
                else:
                    await self.run_async()
            finally:
                await self.close()

        asyncio.run(_main())


def parse_confirmation(answer: str) -> CommandConfirmation:
    lowered = answer.lower()
    if lowered in {"y", "yes"}:
        return CommandConfirmation(review=ReviewDecision.APPROVE)
    if lowered in {"e", "explain"}:
        return CommandConfirmation(review=ReviewDecision.EXPLAIN)
    reason = answer
    for prefix in ("no", "n"):
        if lowered == prefix or lowered.startswith(prefix + " "):
            reason = answer[len(prefix) :].strip()
            break
    return CommandConfirmation(review=ReviewDecision.DENY, custom_deny_message=reason or None)


__all__ = ["CLIApp", "HELP_TEXT", "parse_confirmation"]
