"""Abstract base class for wire-protocol adapters, plus shared helpers."""

from __future__ import annotations

import base64
import json
import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Any

from chatbridge.config import ModelConfig
from chatbridge.llm.types import (
    SKIP,
    ChatOptions,
    DataPart,
    Message,
    StreamEvent,
    TextPart,
    ToolDefinition,
    WireRequest,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096
DEFAULT_TEMPERATURE = 0.7
SYSTEM_PREFIX = "[System]:"

_EMPTY_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


class ProtocolAdapter(ABC):
    """
    Translates between protocol-neutral requests/events and one wire protocol.

    An adapter instance carries per-turn parsing state and must not be shared
    between turns or concurrent requests; the orchestrator builds a fresh one
    for every attempt.

    ``parse_stream_event`` returns at most one event per line.  When a single
    SSE frame carries several pieces of information (thinking and text, or
    several tool calls) the extra events are queued and handed out by
    ``pending_events``, which the caller drains after every line.
    """

    #: Resource path appended to the configured base URL.
    resource: str = ""

    def __init__(self) -> None:
        self._queue: deque[StreamEvent] = deque()

    @abstractmethod
    def build_request(
        self,
        messages: list[Message],
        options: ChatOptions,
        config: ModelConfig,
    ) -> WireRequest:
        """Build the endpoint and JSON body for one streaming request."""
        ...

    @abstractmethod
    def parse_stream_event(self, line: str) -> StreamEvent:
        """Decode one line of the SSE stream.  Never raises."""
        ...

    def pending_events(self) -> list[StreamEvent]:
        """Events queued by the last ``parse_stream_event`` call, in order."""
        events = list(self._queue)
        self._queue.clear()
        return events

    def is_unsupported_error(self, status_code: int, body: str) -> bool:
        """Whether a failed response means the server does not speak this protocol."""
        return False

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _first_and_queue(self, events: list[StreamEvent]) -> StreamEvent:
        if not events:
            return SKIP
        self._queue.extend(events[1:])
        return events[0]


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def resolve_endpoint(base_url: str, resource: str) -> str:
    """
    Normalise *base_url* so it ends with ``/<resource>``.

    ``https://host``, ``https://host/v1`` and ``https://host/v1/<resource>``
    all resolve to ``https://host/v1/<resource>``.  A base URL that already
    contains a ``/v1`` segment elsewhere (``https://host/openai/v1/deploy``)
    gets the resource appended without a second version prefix.
    """
    suffix = f"/{resource}"
    endpoint = base_url.strip()
    if endpoint.rstrip("/").endswith(suffix):
        return endpoint.rstrip("/")
    endpoint = endpoint.rstrip("/")
    if endpoint.endswith("/v1"):
        return f"{endpoint}{suffix}"
    if "/v1" not in endpoint:
        return f"{endpoint}/v1{suffix}"
    return f"{endpoint}{suffix}"


def sse_data(line: str) -> str | None:
    """Payload of an SSE ``data:`` line, or ``None`` for any other line."""
    if not line.startswith("data:"):
        return None
    return line[len("data:"):].strip()


def load_json(data: str) -> Any:
    """``json.loads`` that returns ``None`` instead of raising."""
    try:
        return json.loads(data)
    except (json.JSONDecodeError, ValueError):
        logger.debug("Skipping unparseable SSE data: %s", data[:200])
        return None


def image_data_url(part: DataPart) -> str | None:
    if not part.is_image:
        return None
    encoded = base64.b64encode(part.data).decode("ascii")
    return f"data:{part.mime_type};base64,{encoded}"


def tool_result_content(content: list[Any]) -> tuple[str, list[str]]:
    """Split a tool result into its concatenated text and image data URLs."""
    text = ""
    images: list[str] = []
    for item in content:
        if isinstance(item, TextPart):
            text += item.value
        elif isinstance(item, DataPart):
            url = image_data_url(item)
            if url:
                images.append(url)
        elif isinstance(item, str):
            text += item
        else:
            try:
                text += json.dumps(item)
            except (TypeError, ValueError):
                logger.debug("Dropping unserialisable tool result item %r", item)
    return text, images


def dump_arguments(value: Any) -> str:
    try:
        return json.dumps(value if value is not None else {})
    except (TypeError, ValueError):
        return "{}"


def tool_parameters(tool: ToolDefinition) -> dict[str, Any]:
    return tool.input_schema or dict(_EMPTY_SCHEMA)


def max_output_tokens(options: ChatOptions, config: ModelConfig) -> int:
    return min(options.max_tokens or DEFAULT_MAX_TOKENS, config.max_output_tokens)


def temperature(options: ChatOptions) -> float:
    return options.temperature if options.temperature is not None else DEFAULT_TEMPERATURE


def sampling_params(options: ChatOptions) -> dict[str, Any]:
    """Stop sequences and penalties, from typed fields or the generic channel."""
    mo = options.model_options
    params: dict[str, Any] = {}

    stop = options.stop if options.stop is not None else mo.get("stop")
    if isinstance(stop, (str, list)):
        params["stop"] = stop

    for key in ("frequency_penalty", "presence_penalty"):
        value = getattr(options, key)
        if value is None:
            value = mo.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            params[key] = value
    return params
