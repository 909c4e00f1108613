"""
Main CLI application for chatbridge.

Usage:
    chatbridge chat [--model ID] [--config PATH]
    chatbridge ask PROMPT [--model ID]
    chatbridge models list
    chatbridge config show|validate
    chatbridge version
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from chatbridge import __version__
from chatbridge.config import BridgeConfig, find_config_path, load_config
from chatbridge.errors import ChatBridgeError

app = typer.Typer(name="chatbridge", help="Chat with OpenAI-compatible endpoints")
models_app = typer.Typer(help="Model management")
config_app = typer.Typer(help="Configuration management")

app.add_typer(models_app, name="models")
app.add_typer(config_app, name="config")

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _config_path(explicit: Path | None) -> Path | None:
    return explicit if explicit is not None else find_config_path()


def _load(config: Path | None) -> BridgeConfig:
    try:
        return load_config(_config_path(config))
    except ChatBridgeError as e:
        console.print(f"[red]Config error:[/red] {e}")
        raise typer.Exit(1)


def _setup_router(cfg: BridgeConfig, model: str | None):
    from chatbridge.llm.router import ModelRouter

    if not cfg.models:
        console.print("[red]No models configured.[/red] Add a models list to your config file.")
        raise typer.Exit(1)

    router = ModelRouter.from_config(cfg)
    if model:
        try:
            router.set_active(model)
        except KeyError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
    return router


def _options(max_tokens: int | None, temperature: float | None):
    from chatbridge.llm.types import ChatOptions

    return ChatOptions(max_tokens=max_tokens, temperature=temperature)


ConfigOption = typer.Option(None, "--config", "-c", help="Path to config file")


@app.callback()
def _main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def chat(
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id"),
    config: Optional[Path] = ConfigOption,
    max_tokens: Optional[int] = typer.Option(None, help="Max output tokens"),
    temperature: Optional[float] = typer.Option(None, help="Sampling temperature"),
    thinking: bool = typer.Option(True, "--thinking/--no-thinking", help="Show model reasoning"),
):
    """Start an interactive chat session."""
    from chatbridge.cli.chat import ChatHandler

    router = _setup_router(_load(config), model)
    handler = ChatHandler(
        router,
        console=console,
        options=_options(max_tokens, temperature),
        show_thinking=thinking,
    )
    asyncio.run(handler.run_loop())


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="Prompt to send"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id"),
    config: Optional[Path] = ConfigOption,
    max_tokens: Optional[int] = typer.Option(None, help="Max output tokens"),
    temperature: Optional[float] = typer.Option(None, help="Sampling temperature"),
    thinking: bool = typer.Option(False, "--thinking/--no-thinking", help="Show model reasoning"),
):
    """Send a single prompt and stream the answer."""
    from chatbridge.cli.output import OutputFormatter
    from chatbridge.llm.types import Message

    router = _setup_router(_load(config), model)
    formatter = OutputFormatter(console)

    async def _run():
        async for part in router.respond(
            [Message.user(prompt)],
            _options(max_tokens, temperature),
            supports_thinking=thinking,
            on_warning=formatter.format_warning,
        ):
            formatter.format_part(part)
        console.print()

    try:
        asyncio.run(_run())
    except ChatBridgeError as e:
        formatter.format_error(str(e))
        raise typer.Exit(1)


@models_app.command("list")
def models_list(config: Optional[Path] = ConfigOption):
    """List configured models."""
    from chatbridge.cli.output import OutputFormatter

    cfg = _load(config)
    default = cfg.default
    formatter = OutputFormatter(console)
    formatter.format_model_list(cfg.models, default.id if default else None)


@config_app.command("show")
def config_show(config: Optional[Path] = ConfigOption):
    """Show effective config."""
    from chatbridge.cli.output import OutputFormatter

    cfg = _load(config)
    formatter = OutputFormatter(console)
    formatter.format_config(cfg.to_dict())


@config_app.command("validate")
def config_validate(config: Optional[Path] = ConfigOption):
    """Validate config and summarize what was loaded."""
    config_path = _config_path(config)
    try:
        cfg = load_config(config_path)
    except ChatBridgeError as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)

    console.print("[green]Config is valid.[/green]")
    if config_path:
        console.print(f"  Loaded from: {config_path}")
    else:
        console.print("  [dim]No config file found, using defaults.[/dim]")
    console.print(f"  Models: {len(cfg.models)}")
    default = cfg.default
    if default is not None:
        console.print(f"  Default model: {default.id} ({default.api_mode})")
    for m in cfg.models:
        if not m.resolved_api_key():
            console.print(f"  [yellow]Warning:[/yellow] no API key for model {m.id}")


@app.command()
def version():
    """Show version."""
    console.print(f"chatbridge v{__version__}")


def main():
    app()


if __name__ == "__main__":
    main()
