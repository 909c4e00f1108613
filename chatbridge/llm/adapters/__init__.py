"""Wire-protocol adapters."""

from __future__ import annotations

from chatbridge.config import API_MODE_RESPONSES, ModelConfig
from chatbridge.llm.adapters.base import ProtocolAdapter, resolve_endpoint
from chatbridge.llm.adapters.chat_completions import ChatCompletionsAdapter
from chatbridge.llm.adapters.responses import ResponsesAdapter, find_continuation


def create_adapter(config: ModelConfig) -> ProtocolAdapter:
    """Return a fresh adapter for the model's configured wire protocol."""
    if config.api_mode == API_MODE_RESPONSES:
        return ResponsesAdapter()
    return ChatCompletionsAdapter()


__all__ = [
    "ChatCompletionsAdapter",
    "ProtocolAdapter",
    "ResponsesAdapter",
    "create_adapter",
    "find_continuation",
    "resolve_endpoint",
]
