"""Interactive chat session handler."""

from __future__ import annotations

import asyncio

from rich.console import Console

from chatbridge.cli.output import OutputFormatter
from chatbridge.errors import ChatBridgeError
from chatbridge.llm.router import ModelRouter
from chatbridge.llm.types import (
    ChatOptions,
    DataPart,
    Message,
    Role,
    TextPart,
)


class ChatHandler:
    """
    Manages the interactive chat loop.

    Keeps the running conversation, including the continuation markers the
    model hands back, so stateful models only receive the new messages.
    """

    def __init__(
        self,
        router: ModelRouter,
        console: Console | None = None,
        options: ChatOptions | None = None,
        show_thinking: bool = True,
    ) -> None:
        self.router = router
        self.console = console or Console()
        self.formatter = OutputFormatter(self.console)
        self.options = options or ChatOptions()
        self.show_thinking = show_thinking
        self.history: list[Message] = []
        self._warned: set[str] = set()
        self._running = True

    def warn_once(self, model_id: str, message: str) -> None:
        """Show a fallback warning at most once per model per session."""
        if model_id in self._warned:
            return
        self._warned.add(model_id)
        self.formatter.format_warning(message)

    async def handle_command(self, command: str) -> bool:
        """
        Handle inline commands. Returns True if the command was handled.
        """
        parts = command.strip().split(None, 1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""

        if cmd == "/quit":
            self._running = False
            self.console.print("[dim]Goodbye.[/dim]")
            return True

        if cmd == "/models":
            self.formatter.format_model_list(self.router.models, self.router.active_id)
            return True

        if cmd == "/switch":
            if not arg:
                names = [m.id for m in self.router.models]
                self.console.print(f"  Available models: {', '.join(names)}")
                self.console.print(f"  Active: {self.router.active_id}")
            else:
                try:
                    self.router.set_active(arg)
                    self.console.print(f"  Switched to model: [bold]{arg}[/bold]")
                except KeyError as e:
                    self.console.print(f"  [red]Error:[/red] {e}")
            return True

        if cmd == "/reset":
            self.history.clear()
            self.console.print("  [dim]Conversation cleared.[/dim]")
            return True

        if cmd == "/help":
            self.console.print(
                "  [bold]Commands:[/bold]\n"
                "  /quit     - Exit the chat\n"
                "  /models   - List configured models\n"
                "  /switch   - Switch model\n"
                "  /reset    - Start a new conversation\n"
                "  /help     - Show this help\n"
            )
            return True

        return False

    async def handle_input(self, user_input: str) -> None:
        """Send user input to the active model and stream the response."""
        model_id = self.router.active_model.id
        turn = [*self.history, Message.user(user_input)]
        reply: list = []
        text = ""

        try:
            async for part in self.router.respond(
                turn,
                self.options,
                supports_thinking=self.show_thinking,
                on_warning=lambda msg: self.warn_once(model_id, msg),
            ):
                self.formatter.format_part(part)
                if isinstance(part, TextPart):
                    text += part.value
                elif isinstance(part, DataPart):
                    reply.append(part)
        except ChatBridgeError as e:
            self.formatter.format_error(str(e))
            return

        self.console.print()
        content = [TextPart(text.strip())] if text.strip() else []
        self.history = [*turn, Message(role=Role.ASSISTANT, content=content + reply)]

    async def run_loop(self) -> None:
        """Main interactive loop."""
        self.console.print(
            f"[bold]chatbridge[/bold] - {self.router.active_model.display_name}\n"
            "[dim]Type /help for commands, /quit to exit.[/dim]\n"
        )

        while self._running:
            try:
                user_input = await asyncio.get_event_loop().run_in_executor(
                    None, lambda: input("you> ").strip()
                )
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/dim]")
                break

            if not user_input:
                continue

            if user_input.startswith("/"):
                handled = await self.handle_command(user_input)
                if handled:
                    continue

            self.console.print("[dim]assistant>[/dim] ", end="")
            await self.handle_input(user_input)
