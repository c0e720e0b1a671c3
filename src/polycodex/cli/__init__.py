"""CLI package for polycodex."""

from __future__ import annotations

import asyncio
import logging
import os
from importlib import metadata
from pathlib import Path

import typer

from polycodex.core.approvals import ApprovalPolicy
from polycodex.core.config import (
    DEFAULT_CONFIG_DIR,
    ConfigManager,
    ConfigurationError,
    PolycodexConfig,
    project_config_path,
)
from polycodex.core.llm.errors import LLMError
from polycodex.core.llm.models import ModelCatalog
from polycodex.core.llm.provider import create_provider
from polycodex.core.llm.types import ProviderOptions, ProviderType

from .app import CLIApp
from .branding import themed_console

app = typer.Typer(help="polycodex terminal coding agent", add_completion=False)

CLI_CONSOLE = themed_console()


def styled_echo(message: str = "", *, nl: bool = True) -> None:
    """Print using the polycodex themed console."""
    CLI_CONSOLE.print(message, end="" if not nl else "\n")


def _package_version() -> str:
    try:
        return metadata.version("polycodex")
    except metadata.PackageNotFoundError:
        return "0.0.0"


def _configure_logging(verbose: bool, log_dir: Path | None) -> None:
    root_logger = logging.getLogger()
    if verbose:
        if not root_logger.handlers:
            logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
        root_logger.setLevel(logging.DEBUG)
    else:
        if root_logger.handlers:
            root_logger.setLevel(logging.WARNING)
        else:
            logging.basicConfig(level=logging.WARNING, format="%(message)s")
    if verbose and log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_dir / "polycodex.log", encoding="utf-8")
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        logging.getLogger().addHandler(handler)


def _config_manager(config_file: Path | None) -> ConfigManager:
    override = config_file.expanduser().resolve() if config_file is not None else None
    return ConfigManager(
        config_dir=DEFAULT_CONFIG_DIR,
        project_config_path=project_config_path() if override is None else None,
        override_config_path=override,
    )


def _load_config(manager: ConfigManager) -> PolycodexConfig:
    try:
        return manager.load()
    except ConfigurationError as exc:
        styled_echo(f"❌ {exc}")
        raise typer.Exit(code=1) from exc


def _apply_overrides(
    config: PolycodexConfig,
    *,
    model: str | None,
    provider: str | None,
    provider_url: str | None,
    approval_mode: str | None,
) -> PolycodexConfig:
    updates: dict[str, object] = {}
    if model:
        updates["model"] = model
    if provider:
        try:
            updates["provider"] = ProviderType.parse(provider).value
        except ValueError as exc:
            styled_echo(f"❌ Unknown provider '{provider}'. Choose one of: openai, ollama, huggingface.")
            raise typer.Exit(code=2) from exc
    if provider_url:
        updates["provider_url"] = provider_url
    if approval_mode:
        try:
            updates["approval_mode"] = ApprovalPolicy.parse(approval_mode).value
        except ValueError as exc:
            styled_echo(f"❌ Unknown approval mode '{approval_mode}'. Choose suggest, auto-edit or full-auto.")
            raise typer.Exit(code=2) from exc
    if not updates:
        return config
    return config.model_copy(update=updates)


async def _list_models(config: PolycodexConfig) -> list[str]:
    provider = create_provider(config.provider_type)
    options = ProviderOptions(
        api_key=config.resolved_api_key(),
        base_url=config.resolved_provider_url(),
        timeout_seconds=config.timeout_ms / 1000,
    )
    catalog = ModelCatalog()
    try:
        await provider.initialize(options)
        return await catalog.get_available_models(provider, config.provider_type)
    except LLMError as exc:
        logging.getLogger(__name__).warning("Unable to reach %s: %s", config.provider, exc)
        return catalog.recommended(config.provider_type)
    finally:
        catalog.clear()
        await provider.close()


def _launch(
    prompt: str | None,
    *,
    config: PolycodexConfig,
    quiet: bool,
    config_manager: ConfigManager | None = None,
) -> None:
    history_path = Path(config.history_file).expanduser() if config.history_file else DEFAULT_CONFIG_DIR / "history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    logging.getLogger(__name__).debug("Prompt history at %s", history_path)
    cli = CLIApp(
        config,
        console=CLI_CONSOLE,
        history_path=history_path,
        quiet=quiet,
        config_manager=config_manager,
    )
    cli.run(prompt)


@app.command()
def run(
    prompt: str | None = typer.Argument(None, help="Prompt to send; omit to start the interactive shell"),  # noqa: B008
    model: str | None = typer.Option(None, "--model", "-m", help="Model to use"),  # noqa: B008
    provider: str | None = typer.Option(None, "--provider", "-p", help="openai, ollama or huggingface"),  # noqa: B008
    provider_url: str | None = typer.Option(None, "--provider-url", help="Override the provider base URL"),  # noqa: B008
    approval_mode: str | None = typer.Option(None, "--approval-mode", "-a", help="suggest, auto-edit or full-auto"),  # noqa: B008
    auto_edit: bool = typer.Option(False, "--auto-edit", help="Auto-approve file edits"),  # noqa: B008
    full_auto: bool = typer.Option(False, "--full-auto", help="Auto-approve every command"),  # noqa: B008
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Answer a single prompt without the interactive shell"),  # noqa: B008
    list_models: bool = typer.Option(False, "--list-models", help="List the provider's models and exit"),  # noqa: B008
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),  # noqa: B008
    config_file: Path | None = typer.Option(None, "--config", help="Use an alternate config file"),  # noqa: B008
    version: bool = typer.Option(False, "--version", "-V", help="Show the version and exit"),  # noqa: B008
) -> None:
    """Launch the polycodex interactive shell or answer one prompt."""
    if version:
        styled_echo(f"polycodex version {_package_version()}")
        raise typer.Exit()

    _configure_logging(verbose, log_dir=Path.cwd() / ".polycodex" / "logs")
    if full_auto:
        approval_mode = ApprovalPolicy.FULL_AUTO.value
    elif auto_edit:
        approval_mode = ApprovalPolicy.AUTO_EDIT.value
    manager = _config_manager(config_file)
    config = _apply_overrides(
        _load_config(manager),
        model=model,
        provider=provider,
        provider_url=provider_url,
        approval_mode=approval_mode,
    )

    if list_models:
        for name in asyncio.run(_list_models(config)):
            styled_echo(name)
        raise typer.Exit()

    if quiet and not prompt:
        styled_echo("❌ --quiet requires a prompt.")
        raise typer.Exit(code=2)
    if config.provider_type is ProviderType.OPENAI and not config.resolved_api_key():
        styled_echo("❌ Missing OpenAI API key. Set OPENAI_API_KEY or add api_key to your config.")
        raise typer.Exit(code=1)
    _launch(prompt, config=config, quiet=quiet, config_manager=manager)


def main() -> None:
    """Console script entrypoint."""
    if os.environ.get("POLYCODEX_DEBUG"):
        _configure_logging(True, log_dir=None)
    app()


__all__ = ["CLIApp", "app", "main"]
