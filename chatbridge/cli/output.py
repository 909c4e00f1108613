"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from chatbridge.config import API_MODE_RESPONSES, ModelConfig
from chatbridge.llm.types import (
    DataPart,
    ResponsePart,
    TextPart,
    ThinkingPart,
    ToolCallPart,
    decode_continuation_marker,
)

MODE_COLORS = {
    "chat_completions": "green",
    API_MODE_RESPONSES: "cyan",
}


class OutputFormatter:
    """Rich-based output formatting for the chatbridge CLI."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def format_model_list(self, models: list[ModelConfig], active: str | None = None) -> None:
        if not models:
            self.console.print("[dim]No models configured.[/dim]")
            return

        table = Table(title="Configured Models", show_lines=True)
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Model", no_wrap=True)
        table.add_column("API mode", no_wrap=True)
        table.add_column("Input/Output", no_wrap=True)
        table.add_column("Endpoint")

        for m in models:
            label = f"{m.id} *" if m.id == active else m.id
            mode = Text(m.api_mode, style=MODE_COLORS.get(m.api_mode, "white"))
            if m.api_mode == API_MODE_RESPONSES and m.fallback_to_chat_completions:
                mode.append(" (fallback)", style="dim")
            table.add_row(
                label,
                m.model_name,
                mode,
                f"{m.max_input_tokens}/{m.max_output_tokens}",
                m.base_url,
            )

        self.console.print(table)

    def format_config(self, config: dict) -> None:
        json_str = json.dumps(config, indent=2, default=str)
        self.console.print(Syntax(json_str, "json", theme="monokai"))

    def format_warning(self, message: str) -> None:
        self.console.print(f"\n[yellow]Warning:[/yellow] {message}")

    def format_error(self, message: str) -> None:
        self.console.print(f"\n[red]Error:[/red] {message}")

    def format_part(self, part: ResponsePart) -> None:
        """Render one streamed response part."""
        if isinstance(part, TextPart):
            self.console.print(part.value, end="", markup=False, highlight=False)
        elif isinstance(part, ThinkingPart):
            self.console.print(Text(part.text, style="dim italic"), end="")
        elif isinstance(part, ToolCallPart):
            self.console.print()
            self.console.print(Panel(
                Syntax(json.dumps(part.input, indent=2), "json", theme="monokai"),
                title=f"Tool call: {part.name}",
                subtitle=part.call_id,
            ))
        elif isinstance(part, DataPart):
            marker = decode_continuation_marker(part)
            if marker is None:
                self.console.print(f"[dim]<{part.mime_type}, {len(part.data)} bytes>[/dim]")
