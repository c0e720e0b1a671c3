from __future__ import annotations

from io import StringIO
from pathlib import Path

import pytest
from rich.console import Console

from polycodex.cli.app import HELP_TEXT, CLIApp, parse_confirmation
from polycodex.cli.branding import POLYCODEX_THEME, create_chat_panel, render_banner
from polycodex.core.approvals import ReviewDecision
from polycodex.core.config import ConfigManager, PolycodexConfig
from polycodex.core.items import function_call_output, text_message
from polycodex.core.llm import LLMProvider, ProviderOptions, StreamingEvent, stream_from_events


class EchoProvider(LLMProvider):
    name = "echo"

    def __init__(self) -> None:
        self.previous_ids: list[str | None] = []

    async def initialize(self, options: ProviderOptions) -> None:
        return None

    async def create_streaming_response(self, model, instructions, input, previous_response_id=None):  # noqa: A002
        self.previous_ids.append(previous_response_id)
        message = text_message("assistant", f"echo: {input[-1].text}")
        response_id = f"resp_{len(self.previous_ids)}"
        return stream_from_events([StreamingEvent.done(message), StreamingEvent.completed(response_id, [message])])

    async def list_available_models(self) -> list[str]:
        return []


class FakeSession:
    def __init__(self, *answers: str) -> None:
        self.answers = list(answers)

    async def prompt_async(self, message: str) -> str:
        if not self.answers:
            raise EOFError
        return self.answers.pop(0)


def make_app(*answers: str, quiet: bool = False) -> tuple[CLIApp, StringIO, EchoProvider]:
    stream = StringIO()
    console = Console(file=stream, theme=POLYCODEX_THEME, width=100, color_system=None)
    provider = EchoProvider()
    cli = CLIApp(
        PolycodexConfig(api_key="sk-test"),
        console=console,
        prompt_session=FakeSession(*answers),
        quiet=quiet,
        provider=provider,
    )
    return cli, stream, provider


@pytest.mark.parametrize(
    ("answer", "review", "message"),
    [
        ("y", ReviewDecision.APPROVE, None),
        ("YES", ReviewDecision.APPROVE, None),
        ("e", ReviewDecision.EXPLAIN, None),
        ("n", ReviewDecision.DENY, None),
        ("no use the other file", ReviewDecision.DENY, "use the other file"),
        ("nothing like that", ReviewDecision.DENY, "nothing like that"),
    ],
)
def test_parse_confirmation(answer: str, review: ReviewDecision, message: str | None) -> None:
    confirmation = parse_confirmation(answer)

    assert confirmation.review is review
    assert confirmation.custom_deny_message == message


@pytest.mark.asyncio
async def test_quiet_submit_prints_reply_and_tracks_response_id() -> None:
    cli, stream, provider = make_app(quiet=True)

    await cli.submit("ping")
    await cli.submit("again")

    output = stream.getvalue()
    assert "echo: ping" in output
    assert "echo: again" in output
    assert cli.last_response_id == "resp_2"
    assert provider.previous_ids == [None, "resp_1"]
    assert cli.loading is False
    await cli.close()


@pytest.mark.asyncio
async def test_slash_commands() -> None:
    cli, stream, provider = make_app()

    assert await cli.handle_line("/help")
    assert HELP_TEXT.splitlines()[0] in stream.getvalue()

    assert await cli.handle_line("/model llama3")
    assert cli.agent.model == "llama3"

    cli.last_response_id = "resp_9"
    assert await cli.handle_line("/clear")
    assert cli.last_response_id == ""

    assert await cli.handle_line("/bogus")
    assert "Unknown command /bogus" in stream.getvalue()

    assert await cli.handle_line("   ")
    assert not await cli.handle_line("/exit")
    assert provider.previous_ids == []


@pytest.mark.asyncio
async def test_confirm_command_prompts_user() -> None:
    cli, stream, _ = make_app("n too risky")

    confirmation = await cli.confirm_command(["rm", "-rf", "dist"], None)

    assert confirmation.review is ReviewDecision.DENY
    assert confirmation.custom_deny_message == "too risky"
    assert "rm -rf dist" in stream.getvalue()
    cli.set_loading(False)


@pytest.mark.asyncio
async def test_quiet_mode_denies_commands_without_prompting() -> None:
    cli, _, _ = make_app(quiet=True)

    confirmation = await cli.confirm_command(["ls"], None)

    assert confirmation.review is ReviewDecision.DENY


def test_render_item_shows_tool_output_preview() -> None:
    cli, stream, _ = make_app()

    cli.render_item(text_message("user", "hidden user echo"))
    cli.render_item(function_call_output("c1", "\n".join(f"row {i}" for i in range(20)), {"exit_code": 0}))

    output = stream.getvalue()
    assert "hidden user echo" not in output
    assert "tool (exit 0)" in output
    assert "row 11" in output
    assert "(8 more lines)" in output


def test_render_banner_respects_disable(monkeypatch: pytest.MonkeyPatch) -> None:
    stream = StringIO()
    console = Console(file=stream, theme=POLYCODEX_THEME, color_system=None)
    monkeypatch.setenv("POLYCODEX_DISABLE_BANNER", "1")

    render_banner(console)

    assert stream.getvalue() == ""
    monkeypatch.delenv("POLYCODEX_DISABLE_BANNER")
    render_banner(console)
    assert "polycodex" in stream.getvalue()


def test_chat_panel_title_override() -> None:
    stream = StringIO()
    console = Console(file=stream, theme=POLYCODEX_THEME, color_system=None, width=60)

    console.print(create_chat_panel("tool", "ls -la", title="Run shell?"))

    assert "Run shell?" in stream.getvalue()
    assert "ls -la" in stream.getvalue()


@pytest.mark.asyncio
async def test_model_switch_is_persisted(tmp_path: Path) -> None:
    manager = ConfigManager(config_dir=tmp_path, env={})
    config = manager.load()
    stream = StringIO()
    cli = CLIApp(
        config,
        console=Console(file=stream, theme=POLYCODEX_THEME, width=100, color_system=None),
        prompt_session=FakeSession(),
        provider=EchoProvider(),
        config_manager=manager,
    )

    assert await cli.handle_line("/model llama3")

    assert 'model = "llama3"' in (tmp_path / "config.toml").read_text()
    assert manager.load().model == "llama3"
    assert "Switched model to llama3." in stream.getvalue()
