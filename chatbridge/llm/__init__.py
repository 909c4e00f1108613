"""LLM subsystem -- wire types, protocol adapters and streaming tool-call assembly."""

from chatbridge.llm.types import (
    ChatOptions,
    DataPart,
    Message,
    Role,
    StreamEvent,
    TextPart,
    ThinkingPart,
    ToolCallDelta,
    ToolCallPart,
    ToolDefinition,
    ToolMode,
    ToolResultPart,
)
from chatbridge.llm.tool_call_assembler import ToolCallAssembler
from chatbridge.llm.inline_tool_calls import InlineToolCallParser
from chatbridge.llm.token_counter import TokenCounter

__all__ = [
    "ChatOptions",
    "DataPart",
    "InlineToolCallParser",
    "Message",
    "Role",
    "StreamEvent",
    "TextPart",
    "ThinkingPart",
    "TokenCounter",
    "ToolCallAssembler",
    "ToolCallDelta",
    "ToolCallPart",
    "ToolDefinition",
    "ToolMode",
    "ToolResultPart",
]
