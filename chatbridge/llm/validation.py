"""Pre-flight request checks.  Everything here raises ``InvalidRequestError``."""

from __future__ import annotations

import logging
import re

import jsonschema
from jsonschema.validators import validator_for

from chatbridge.errors import InvalidRequestError
from chatbridge.llm.token_counter import TokenCounter
from chatbridge.llm.types import Message, Role, ToolCallPart, ToolDefinition, ToolResultPart

logger = logging.getLogger(__name__)

MAX_TOOLS = 128
_TOOL_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def validate_messages(messages: list[Message]) -> None:
    """
    Reject empty conversations and tool calls left without results.

    Every assistant message that requests tools must be followed by a message
    holding a ``ToolResultPart`` for each requested call id.  The last message
    is exempt: a conversation may end on a pending tool call.
    """
    if not messages:
        raise InvalidRequestError("Conversation must contain at least one message.")

    for i, msg in enumerate(messages[:-1]):
        if msg.role != Role.ASSISTANT:
            continue
        call_ids = {p.call_id for p in msg.parts_of(ToolCallPart)}
        if not call_ids:
            continue
        nxt = messages[i + 1]
        if nxt.role not in (Role.USER, Role.TOOL):
            raise InvalidRequestError(
                "Tool calls must be followed by a user message with tool results."
            )
        answered = {p.call_id for p in nxt.parts_of(ToolResultPart)}
        missing = call_ids - answered
        if missing:
            raise InvalidRequestError(
                f"Missing tool results for call ids: {sorted(missing)}"
            )


def validate_tools(tools: list[ToolDefinition]) -> None:
    if len(tools) > MAX_TOOLS:
        raise InvalidRequestError(f"Cannot have more than {MAX_TOOLS} tools per request.")
    seen: set[str] = set()
    for tool in tools:
        if not _TOOL_NAME_RE.match(tool.name or ""):
            raise InvalidRequestError(f"Invalid tool name: {tool.name!r}")
        if tool.name in seen:
            raise InvalidRequestError(f"Duplicate tool name: {tool.name!r}")
        seen.add(tool.name)
        if tool.input_schema:
            try:
                validator_for(tool.input_schema).check_schema(tool.input_schema)
            except jsonschema.SchemaError as e:
                raise InvalidRequestError(
                    f"Tool {tool.name!r} has an invalid input schema: {e.message}"
                ) from e


def check_token_budget(
    messages: list[Message],
    wire_tools: list[dict] | None,
    max_input_tokens: int,
    counter: TokenCounter | None = None,
) -> int:
    """Return the estimated prompt size; raise if it exceeds *max_input_tokens*."""
    counter = counter or TokenCounter()
    estimated = counter.count_messages(messages) + counter.count_tools(wire_tools)
    if estimated > max_input_tokens:
        logger.error(
            "Message exceeds token limit: estimated=%d max_input_tokens=%d",
            estimated,
            max_input_tokens,
        )
        raise InvalidRequestError("Message exceeds token limit.")
    return estimated
