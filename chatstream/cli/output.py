"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from chatstream.llm.types import ChatResponse, Message
from chatstream.tasks.events import TaskEvent

ROLE_COLORS = {
    "system": "magenta",
    "user": "blue",
    "assistant": "green",
}


class StreamPrinter:
    """
    Prints the first choice's content as it grows.

    Streamed snapshots carry the whole content so far; only the part not yet
    printed is written.
    """

    def __init__(self, console: Console) -> None:
        self.console = console
        self._printed = 0

    def update(self, response: ChatResponse) -> None:
        content = response.content
        if len(content) > self._printed:
            self.console.print(content[self._printed:], end="", markup=False, highlight=False)
            self._printed = len(content)

    def finish(self, response: ChatResponse) -> None:
        self.update(response)
        self.console.print()
        self._printed = 0


class OutputFormatter:
    """Rich-based output formatting for the chatstream CLI."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def format_response(self, response: ChatResponse) -> None:
        for choice in response.choices:
            title = f"choice {choice.index}"
            if choice.finish_reason:
                title += f" ({choice.finish_reason})"
            body = choice.message.content or "[dim](no content)[/dim]"
            fc = choice.message.function_call
            if fc is not None and fc.name:
                body += f"\n\n[bold]function_call:[/bold] {fc.name}({fc.arguments})"
            self.console.print(Panel(body, title=title))

    def format_usage(self, response: ChatResponse) -> None:
        usage = response.usage
        if not usage.total_tokens:
            return
        self.console.print(
            f"[dim]tokens: prompt={usage.prompt_tokens} "
            f"completion={usage.completion_tokens} total={usage.total_tokens}[/dim]"
        )

    def format_error(self, event: TaskEvent) -> None:
        if event.error_code:
            self.console.print(
                f"[red]Request failed[/red] [dim]({event.error_code})[/dim]: {event.reason}"
            )
            return
        err = event.response.error
        self.console.print(Panel(
            f"[bold]{err.message}[/bold]\n\n"
            f"[dim]code:[/dim] {err.code or '-'}\n"
            f"[dim]type:[/dim] {err.type or '-'}",
            title="[red]API error[/red]",
        ))

    def format_event_json(self, event: TaskEvent) -> None:
        self.console.print_json(json.dumps(event.to_dict(), default=str))

    def format_history(self, messages: list[Message]) -> None:
        if not messages:
            self.console.print("[dim]No messages.[/dim]")
            return

        table = Table(title="History", show_lines=True)
        table.add_column("#", no_wrap=True)
        table.add_column("Role", no_wrap=True)
        table.add_column("Content")
        for i, msg in enumerate(messages, 1):
            color = ROLE_COLORS.get(msg.role.value, "white")
            table.add_row(str(i), f"[{color}]{msg.role.value}[/{color}]", msg.content[:200])
        self.console.print(table)

    def format_config(self, config: dict) -> None:
        config_json = json.dumps(config, indent=2, default=str)
        self.console.print(Syntax(config_json, "json", theme="monokai"))
