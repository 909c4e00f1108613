"""Core types for the LLM subsystem."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Union

# Mime type of the opaque data part that carries a continuation marker.
CONTINUATION_MIME_TYPE = "stateful_marker"
_MARKER_SEPARATOR = "\\"


class Role(str, enum.Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


# ---------------------------------------------------------------------------
# Message parts
# ---------------------------------------------------------------------------

@dataclass
class TextPart:
    value: str


@dataclass
class DataPart:
    """Binary data with a mime type (images, continuation markers)."""

    data: bytes
    mime_type: str

    @classmethod
    def from_text(cls, value: str, mime_type: str) -> DataPart:
        return cls(data=value.encode("utf-8"), mime_type=mime_type)

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


@dataclass
class ToolCallPart:
    """A tool invocation: requested by the model, or replayed from history."""

    call_id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResultPart:
    """The result of a tool call; content holds text and/or data parts."""

    call_id: str
    content: list[Any] = field(default_factory=list)


@dataclass
class ThinkingPart:
    text: str
    id: str | None = None
    metadata: Any = None


Part = Union[TextPart, DataPart, ToolCallPart, ToolResultPart]
ResponsePart = Union[TextPart, DataPart, ToolCallPart, ThinkingPart]


@dataclass
class Message:
    """A single message in a conversation."""

    role: Role
    content: list[Part] = field(default_factory=list)
    name: str | None = None

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role=Role.USER, content=[TextPart(text)])

    @classmethod
    def assistant(cls, text: str) -> Message:
        return cls(role=Role.ASSISTANT, content=[TextPart(text)])

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(role=Role.SYSTEM, content=[TextPart(text)])

    @property
    def text(self) -> str:
        """Concatenation of all text parts."""
        return "".join(p.value for p in self.content if isinstance(p, TextPart))

    def parts_of(self, kind: type) -> list:
        return [p for p in self.content if isinstance(p, kind)]


# ---------------------------------------------------------------------------
# Continuation markers
# ---------------------------------------------------------------------------

def encode_continuation_marker(model_id: str, response_id: str) -> DataPart:
    """Build the data part a host persists to resume an upstream conversation."""
    return DataPart.from_text(
        f"{model_id}{_MARKER_SEPARATOR}{response_id}", CONTINUATION_MIME_TYPE
    )


def decode_continuation_marker(part: Any) -> tuple[str, str] | None:
    """
    Return ``(model_id, response_id)`` for a continuation marker part, or
    ``None`` if *part* is not a well-formed marker.
    """
    if not isinstance(part, DataPart) or part.mime_type != CONTINUATION_MIME_TYPE:
        return None
    try:
        raw = part.data.decode("utf-8")
    except UnicodeDecodeError:
        return None
    sep = raw.find(_MARKER_SEPARATOR)
    if sep <= 0:
        return None
    model_id, response_id = raw[:sep], raw[sep + 1:]
    if not response_id:
        return None
    return model_id, response_id


# ---------------------------------------------------------------------------
# Request options
# ---------------------------------------------------------------------------

class ToolMode(str, enum.Enum):
    AUTO = "auto"
    REQUIRED = "required"
    NONE = "none"


@dataclass
class ToolDefinition:
    """A caller-supplied function the model may invoke."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] | None = None


@dataclass
class ChatOptions:
    """
    Generation options for a single request.

    *model_options* is the generic pass-through channel: protocol-specific
    fields placed there (``truncation``, ``verbosity``, ``text``,
    ``reasoning``) override the static model configuration for this request.
    """

    max_tokens: int | None = None
    temperature: float | None = None
    stop: str | list[str] | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    tools: list[ToolDefinition] = field(default_factory=list)
    tool_mode: ToolMode = ToolMode.AUTO
    logprobs: bool | int | None = None
    top_logprobs: int | None = None
    model_options: dict[str, Any] = field(default_factory=dict)


@dataclass
class WireRequest:
    endpoint: str
    body: dict[str, Any]


# ---------------------------------------------------------------------------
# Stream events (protocol-neutral)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TextEvent:
    content: str


@dataclass(frozen=True)
class ToolCallDelta:
    """
    An incremental fragment of a streamed tool call.

    *index* is the stream-assigned identity of the call; *args* is a fragment
    of the JSON argument string to be appended to earlier fragments.
    """

    index: int
    id: str | None = None
    name: str | None = None
    args: str | None = None


@dataclass(frozen=True)
class ThinkingEvent:
    text: str
    id: str | None = None
    metadata: Any = None


@dataclass(frozen=True)
class ContinuationMarkerEvent:
    response_id: str


@dataclass(frozen=True)
class FinishEvent:
    reason: str


@dataclass(frozen=True)
class DoneEvent:
    pass


@dataclass(frozen=True)
class SkipEvent:
    pass


DONE = DoneEvent()
SKIP = SkipEvent()

StreamEvent = Union[
    TextEvent,
    ToolCallDelta,
    ThinkingEvent,
    ContinuationMarkerEvent,
    FinishEvent,
    DoneEvent,
    SkipEvent,
]
