"""polycodex CLI styling helpers."""

from __future__ import annotations

import os
from collections.abc import Iterable

from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.text import Text
from rich.theme import Theme

POLYCODEX_THEME = Theme(
    {
        "polycodex.banner.primary": "bold #38BDF8",
        "polycodex.banner.secondary": "bold #A855F7",
        "polycodex.prompt": "bold #38BDF8",
        "polycodex.user.border": "#A855F7",
        "polycodex.user.header": "bold #A855F7",
        "polycodex.user.text": "#E6FFFA",
        "polycodex.agent.border": "#38BDF8",
        "polycodex.agent.header": "bold #38BDF8",
        "polycodex.agent.text": "#E6FFFA",
        "polycodex.system.border": "#FBBF24",
        "polycodex.system.header": "bold #FBBF24",
        "polycodex.system.text": "#FEF3C7",
        "polycodex.tool.border": "#94A3B8",
        "polycodex.tool.header": "bold #94A3B8",
        "polycodex.tool.text": "#CBD5E1",
        "polycodex.text.secondary": "#94A3B8",
    }
)

BANNER_LINES = (
    "[polycodex.banner.primary]polycodex[/] [polycodex.banner.secondary]· terminal coding agent[/]",
    "[polycodex.text.secondary]OpenAI · Ollama · Hugging Face[/]",
)

_ROLE_STYLES: dict[str, tuple[str, str]] = {
    "user": ("You", "polycodex.user"),
    "assistant": ("polycodex", "polycodex.agent"),
    "system": ("System", "polycodex.system"),
    "tool": ("Tool", "polycodex.tool"),
}


def themed_console(**kwargs: object) -> Console:
    """Return a Console configured with the polycodex theme."""
    return Console(theme=POLYCODEX_THEME, **kwargs)


def banner_lines() -> Iterable[Text]:
    for line in BANNER_LINES:
        yield Text.from_markup(line)


def render_banner(console: Console) -> None:
    if os.environ.get("POLYCODEX_DISABLE_BANNER"):
        return
    for line in banner_lines():
        console.print(line, overflow="ignore", crop=False)
    console.print()


def create_chat_panel(role: str, message: str, *, use_markdown: bool = False, title: str | None = None) -> Panel:
    """Create a chat panel for user, assistant, system or tool output."""
    header, style = _ROLE_STYLES.get(role, (role.title(), "polycodex.system"))
    header = title or header
    body = Markdown(message) if use_markdown else Text(message, style=f"{style}.text")
    return Panel(
        body,
        title=f"[{style}.header]{header}[/]",
        title_align="left",
        border_style=f"{style}.border",
        box=box.ROUNDED,
        padding=(0, 1),
    )


__all__ = ["POLYCODEX_THEME", "create_chat_panel", "render_banner", "themed_console"]
