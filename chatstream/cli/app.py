"""
Main CLI application for chatstream-core.

Usage:
    chatstream send MESSAGE [--system TEXT] [--model NAME] [--stream/--no-stream]
    chatstream chat [--system TEXT] [--model NAME] [--profile NAME]
    chatstream config show|validate
    chatstream version
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from chatstream.config import ChatStreamConfig, load_config

app = typer.Typer(name="chatstream", help="chatstream - streaming chat completion client")
config_app = typer.Typer(help="Configuration management")

app.add_typer(config_app, name="config")

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_config_path() -> Path | None:
    """Find config file in standard locations."""
    candidates = [
        Path.cwd() / "chatstream.yaml",
        Path.cwd() / "chatstream.yml",
        Path.home() / ".config" / "chatstream" / "config.yaml",
    ]
    for p in candidates:
        if p.is_file():
            return p
    return None


def _setup_logging(verbose: bool) -> None:
    if not verbose:
        return
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def _load(
    config: Optional[Path],
    profile: Optional[str],
    model: Optional[str] = None,
    stream: Optional[bool] = None,
) -> ChatStreamConfig:
    return load_config(
        config or _get_config_path(),
        profile=profile,
        cli_overrides={"chat.model": model, "chat.stream": stream},
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def send(
    message: str = typer.Argument(..., help="User message to send"),
    system: Optional[str] = typer.Option(None, "--system", help="System prompt"),
    model: Optional[str] = typer.Option(None, help="Model name"),
    stream: Optional[bool] = typer.Option(None, "--stream/--no-stream", help="Stream the reply"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    config: Optional[Path] = typer.Option(None, "--config", help="Config file path"),
    as_json: bool = typer.Option(False, "--json", help="Print every event as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Send one message and print the reply."""
    from chatstream.cli.output import OutputFormatter, StreamPrinter
    from chatstream.llm.types import Message, Role
    from chatstream.tasks.chat_request import ChatRequest
    from chatstream.tasks.events import (
        ALL_EVENTS,
        EVENT_ERROR_RECEIVED,
        EVENT_PROCESS_COMPLETED,
        EVENT_PROGRESS_STARTED,
        EVENT_PROGRESS_UPDATED,
        EVENT_REQUEST_FAILED,
    )

    _setup_logging(verbose)
    cfg = _load(config, profile, model, stream)

    messages = []
    if system:
        messages.append(Message(Role.SYSTEM, system))
    messages.append(Message(Role.USER, message))

    task = ChatRequest.from_config(cfg, messages)
    formatter = OutputFormatter(console)
    failed = []

    def on_failed(event):
        failed.append(event)
        if not as_json:
            formatter.format_error(event)

    if as_json:
        for event_type in ALL_EVENTS:
            task.subscribe(event_type, formatter.format_event_json)
    else:
        printer = StreamPrinter(console)

        def on_completed(event):
            if cfg.chat.stream:
                printer.finish(event.response)
            else:
                formatter.format_response(event.response)
            formatter.format_usage(event.response)

        if cfg.chat.stream:
            task.subscribe(EVENT_PROGRESS_STARTED, lambda ev: printer.update(ev.response))
            task.subscribe(EVENT_PROGRESS_UPDATED, lambda ev: printer.update(ev.response))
        task.subscribe(EVENT_PROCESS_COMPLETED, on_completed)

    task.subscribe(EVENT_ERROR_RECEIVED, on_failed)
    task.subscribe(EVENT_REQUEST_FAILED, on_failed)

    task.activate()
    try:
        task.wait()
    except KeyboardInterrupt:
        task.stop()
        task.wait(5.0)
        raise typer.Exit(130)

    if failed:
        raise typer.Exit(1)


@app.command()
def chat(
    system: Optional[str] = typer.Option(None, "--system", help="System prompt"),
    model: Optional[str] = typer.Option(None, help="Model name"),
    stream: Optional[bool] = typer.Option(None, "--stream/--no-stream", help="Stream replies"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    config: Optional[Path] = typer.Option(None, "--config", help="Config file path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Start an interactive chat session."""
    from chatstream.cli.chat import ChatHandler

    _setup_logging(verbose)
    cfg = _load(config, profile, model, stream)

    async def _run():
        handler = ChatHandler(cfg, console, system_prompt=system or "")
        await handler.run_loop()

    asyncio.run(_run())


@config_app.command("show")
def config_show(
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    config: Optional[Path] = typer.Option(None, "--config", help="Config file path"),
):
    """Show effective config."""
    from chatstream.cli.output import OutputFormatter

    cfg = _load(config, profile)
    formatter = OutputFormatter(console)
    formatter.format_config(cfg.to_dict())


@config_app.command("validate")
def config_validate(
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    config: Optional[Path] = typer.Option(None, "--config", help="Config file path"),
):
    """Validate config and show any type issues."""
    from chatstream.llm.models import ModelCatalog

    config_path = config or _get_config_path()
    try:
        cfg = load_config(config_path, profile=profile)
        console.print("[green]Config is valid.[/green]")
        if config_path:
            console.print(f"  Loaded from: {config_path}")
        else:
            console.print("  [dim]No config file found, using defaults.[/dim]")
        catalog = ModelCatalog(cfg.routes)
        route = catalog.endpoint_for_model(
            cfg.chat.model, cfg.common.azure, cfg.common.azure_api_version
        )
        console.print(f"  Endpoint: {cfg.common.endpoint.rstrip('/')}/{route}")
        console.print(f"  Model: {cfg.chat.model} (stream={cfg.chat.stream})")
        if not cfg.common.resolve_api_key():
            console.print(
                f"  [yellow]No API key set[/yellow] (api_key or ${cfg.common.api_key_env})"
            )
    except Exception as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)


@app.command()
def version():
    """Show version."""
    console.print("chatstream-core v0.1.0")


def main():
    app()


if __name__ == "__main__":
    main()
