"""
Prompt-size estimation.

A character-based heuristic (~4 characters per token) is used for the
pre-flight budget check; it only needs to be good enough to reject requests
that clearly cannot fit the model's input window.
"""

from __future__ import annotations

import json
import math
from typing import Any

from chatbridge.llm.types import Message, TextPart


class TokenCounter:
    """Estimate token counts for text, conversations and tool declarations."""

    CHARS_PER_TOKEN = 4

    def count_text(self, text: str) -> int:
        """Return the estimated token count for a plain string."""
        if not text:
            return 0
        return math.ceil(len(text) / self.CHARS_PER_TOKEN)

    def count_messages(self, messages: list[Message]) -> int:
        """Estimate tokens for the text parts of a conversation."""
        total = 0
        for msg in messages:
            for part in msg.content:
                if isinstance(part, TextPart):
                    total += self.count_text(part.value)
        return total

    def count_tools(self, tools: list[dict[str, Any]] | None) -> int:
        """Estimate tokens for wire-format tool declarations by JSON size."""
        if not tools:
            return 0
        return self.count_text(json.dumps(tools))
