"""Interactive chat session handler."""

from __future__ import annotations

import asyncio
from typing import Callable

from rich.console import Console

from chatstream.cli.output import OutputFormatter, StreamPrinter
from chatstream.config import ChatStreamConfig
from chatstream.llm.types import ChatResponse, Message, Role
from chatstream.tasks.chat_request import ChatRequest
from chatstream.tasks.dispatch import AsyncioDispatcher
from chatstream.tasks.events import (
    EVENT_ERROR_RECEIVED,
    EVENT_PROCESS_COMPLETED,
    EVENT_PROGRESS_STARTED,
    EVENT_PROGRESS_UPDATED,
    EVENT_REQUEST_FAILED,
    TaskEvent,
)
from chatstream.transport.base import Transport


class ChatHandler:
    """
    Manages the interactive chat loop.

    Keeps the conversation history, sends one ``ChatRequest`` per user turn
    and prints the reply as it streams in.  Events are delivered on the
    running event loop through an ``AsyncioDispatcher``.
    """

    def __init__(
        self,
        config: ChatStreamConfig,
        console: Console | None = None,
        system_prompt: str = "",
        transport_factory: Callable[[], Transport] | None = None,
    ) -> None:
        self.config = config
        self.console = console or Console()
        self.formatter = OutputFormatter(self.console)
        self.system_prompt = system_prompt
        self.transport_factory = transport_factory
        self.history: list[Message] = []
        self._running = True
        self.reset()

    def reset(self) -> None:
        self.history = []
        if self.system_prompt:
            self.history.append(Message(Role.SYSTEM, self.system_prompt))

    def handle_command(self, command: str) -> bool:
        """
        Handle inline commands. Returns True if the command was handled.
        """
        parts = command.strip().split(None, 1)
        cmd = parts[0].lower()
        arg = parts[1] if len(parts) > 1 else ""

        if cmd == "/quit":
            self._running = False
            self.console.print("[dim]Goodbye.[/dim]")
            return True

        if cmd == "/history":
            self.formatter.format_history(self.history)
            return True

        if cmd == "/reset":
            self.reset()
            self.console.print("  [dim]History cleared.[/dim]")
            return True

        if cmd == "/model":
            if arg:
                self.config.chat.model = arg
            self.console.print(f"  Model: [bold]{self.config.chat.model}[/bold]")
            return True

        if cmd == "/help":
            self.console.print(
                "  [bold]Commands:[/bold]\n"
                "  /quit     - Exit the chat\n"
                "  /history  - Show the conversation so far\n"
                "  /reset    - Clear the conversation\n"
                "  /model    - Show or switch the model\n"
                "  /help     - Show this help\n"
            )
            return True

        return False

    async def handle_input(self, user_input: str) -> ChatResponse | None:
        """Send the conversation plus *user_input* and stream the reply."""
        self.history.append(Message(Role.USER, user_input))

        finished = asyncio.Event()
        printer = StreamPrinter(self.console)
        result: list[ChatResponse] = []

        def on_progress(event: TaskEvent) -> None:
            printer.update(event.response)

        def on_completed(event: TaskEvent) -> None:
            printer.finish(event.response)
            result.append(event.response)
            finished.set()

        def on_failed(event: TaskEvent) -> None:
            self.console.print()
            self.formatter.format_error(event)
            finished.set()

        transport = self.transport_factory() if self.transport_factory else None
        task = ChatRequest.from_config(
            self.config,
            self.history,
            transport=transport,
            dispatcher=AsyncioDispatcher(asyncio.get_running_loop()),
        )
        task.subscribe(EVENT_PROGRESS_STARTED, on_progress)
        task.subscribe(EVENT_PROGRESS_UPDATED, on_progress)
        task.subscribe(EVENT_PROCESS_COMPLETED, on_completed)
        task.subscribe(EVENT_ERROR_RECEIVED, on_failed)
        task.subscribe(EVENT_REQUEST_FAILED, on_failed)
        task.activate()

        try:
            await finished.wait()
        except asyncio.CancelledError:
            task.stop()
            raise

        if not result:
            # Unanswered turns are not kept in the history.
            self.history.pop()
            return None

        response = result[0]
        function_call = None
        if response.choices and response.choices[0].message.function_call.name:
            function_call = response.choices[0].message.function_call
        self.history.append(Message(Role.ASSISTANT, response.content, function_call))
        self.formatter.format_usage(response)
        return response

    async def run_loop(self) -> None:
        """Main interactive loop."""
        self.console.print(
            "[bold]chatstream[/bold] - streaming chat client\n"
            f"[dim]Model {self.config.chat.model}. "
            "Type /help for commands, /quit to exit.[/dim]\n"
        )

        while self._running:
            try:
                user_input = await asyncio.get_running_loop().run_in_executor(
                    None, lambda: input("you> ").strip()
                )
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/dim]")
                break

            if not user_input:
                continue

            if user_input.startswith("/"):
                if self.handle_command(user_input):
                    continue

            self.console.print("[dim]assistant>[/dim] ", end="")
            await self.handle_input(user_input)
