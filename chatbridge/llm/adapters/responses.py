"""
Adapter for the OpenAI ``/v1/responses`` (item-based) wire protocol.

Requests are an ordered list of items -- ``message``, ``function_call`` and
``function_call_output`` -- instead of a flat messages array.  When the model
supports stateful continuation, history up to the most recent continuation
marker for this model is replaced by ``previous_response_id``.

The stream is a sequence of typed events.  The type comes from the SSE
``event:`` line when present (and not the generic ``message``), otherwise
from the JSON payload's own ``type`` field.  Servers vary a lot here, so
several spellings and a non-streaming ``output`` array are accepted.
"""

from __future__ import annotations

import logging
from typing import Any

from chatbridge.config import ModelConfig
from chatbridge.llm.adapters.base import (
    SYSTEM_PREFIX,
    ProtocolAdapter,
    dump_arguments,
    image_data_url,
    load_json,
    max_output_tokens,
    resolve_endpoint,
    sampling_params,
    sse_data,
    temperature,
    tool_parameters,
    tool_result_content,
)
from chatbridge.llm.tool_call_assembler import new_call_id
from chatbridge.llm.types import (
    DONE,
    SKIP,
    ChatOptions,
    ContinuationMarkerEvent,
    DataPart,
    Message,
    Role,
    StreamEvent,
    TextEvent,
    TextPart,
    ThinkingEvent,
    ToolCallDelta,
    ToolCallPart,
    ToolMode,
    ToolResultPart,
    WireRequest,
    decode_continuation_marker,
)

logger = logging.getLogger(__name__)

TOOL_IMAGE_NOTE = "Image associated with tool output."
DEFAULT_TOP_LOGPROBS = 3

_UNSUPPORTED_STATUS = (404, 405, 501)
_UNSUPPORTED_PHRASES = ("not found", "not supported", "not implemented", "unknown endpoint")

_REASONING_DELTAS = (
    "response.reasoning.delta",
    "response.reasoning_summary.delta",
    "response.reasoning_text.delta",
    "response.reasoning_summary_text.delta",
)
_REASONING_DONES = (
    "response.reasoning.done",
    "response.reasoning_summary.done",
    "response.reasoning_text.done",
    "response.reasoning_summary_text.done",
)
_FUNCTION_CALL_DELTAS = (
    "response.function_call.delta",
    "response.function_call_arguments.delta",
)
_OUTPUT_ITEM_EVENTS = ("response.output_item.added", "response.output_item.done")


def find_continuation(messages: list[Message], model_id: str) -> tuple[str, int] | None:
    """
    Locate the most recent continuation marker written for *model_id*.

    Returns ``(response_id, resend_from)`` where ``resend_from`` is the index
    of the first message after the marker, or ``None``.
    """
    found: tuple[str, int] | None = None
    for i, msg in enumerate(messages):
        for part in msg.content:
            decoded = decode_continuation_marker(part)
            if decoded is None:
                continue
            marker_model, response_id = decoded
            if marker_model == model_id:
                found = (response_id, i + 1)
    return found


class _StreamedSegments:
    """
    Output segments (keyed by ``item_id``) that already streamed as deltas.

    A ``.done`` event repeats what its deltas carried and is dropped only for
    those segments.  Deltas without an ``item_id`` cover the whole turn.
    """

    def __init__(self) -> None:
        self.items: set[str] = set()
        self.anonymous = False

    def mark(self, item_id: str | None) -> None:
        if item_id:
            self.items.add(item_id)
        else:
            self.anonymous = True

    @property
    def any(self) -> bool:
        return self.anonymous or bool(self.items)

    def seen(self, item_id: str | None) -> bool:
        if item_id is None:
            return self.any
        return self.anonymous or item_id in self.items


class ResponsesAdapter(ProtocolAdapter):
    """Responses request builder and SSE parser."""

    resource = "responses"

    def __init__(self) -> None:
        super().__init__()
        self._tool_index_by_key: dict[str, int] = {}
        self._next_tool_index = 0
        self._text_seen = _StreamedSegments()
        self._reasoning_seen = _StreamedSegments()
        self._sse_event_type: str | None = None
        self._emitted_item_keys: set[str] = set()

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def build_request(
        self,
        messages: list[Message],
        options: ChatOptions,
        config: ModelConfig,
    ) -> WireRequest:
        continuation = None
        if config.supports_continuation:
            continuation = find_continuation(messages, config.id)
        if continuation is not None:
            messages = messages[continuation[1]:]
            logger.debug(
                "Continuing response %s; resending %d message(s)",
                continuation[0],
                len(messages),
            )

        body: dict[str, Any] = {
            "model": config.model_name,
            "input": self._items(messages, config),
            "stream": True,
            "max_output_tokens": max_output_tokens(options, config),
            "temperature": temperature(options),
            "store": False,
            "include": ["reasoning.encrypted_content"],
        }
        if continuation is not None:
            body["previous_response_id"] = continuation[0]

        reasoning = {
            k: v
            for k, v in (
                ("effort", config.reasoning.effort),
                ("summary", config.reasoning.summary),
            )
            if v
        }
        if reasoning:
            body["reasoning"] = reasoning
        if config.truncation:
            body["truncation"] = config.truncation
        if config.text_verbosity:
            body["text"] = {"verbosity": config.text_verbosity}

        tools = [
            {
                "type": "function",
                "name": t.name,
                "description": t.description,
                "parameters": tool_parameters(t),
            }
            for t in options.tools
        ]
        if tools:
            body["tools"] = tools
        tool_choice = self._tool_choice(options, config, tools)
        if tool_choice is not None:
            body["tool_choice"] = tool_choice
        if config.parallel_tool_calls is not None:
            body["parallel_tool_calls"] = config.parallel_tool_calls

        self._apply_overrides(body, options)
        return WireRequest(
            endpoint=resolve_endpoint(config.base_url, self.resource), body=body
        )

    @staticmethod
    def _tool_choice(
        options: ChatOptions, config: ModelConfig, tools: list[dict]
    ) -> Any:
        mode = config.tool_choice
        if mode is None:
            if not tools:
                return None
            mode = options.tool_mode.value
        if mode == ToolMode.NONE.value:
            return "none"
        if mode == ToolMode.REQUIRED.value:
            if len(tools) == 1:
                return {"type": "function", "name": tools[0]["name"]}
            return "required"
        return "auto" if tools else None

    @staticmethod
    def _apply_overrides(body: dict[str, Any], options: ChatOptions) -> None:
        """Per-request settings from the generic options channel win over config."""
        mo = options.model_options

        logprobs = options.logprobs if options.logprobs is not None else mo.get("logprobs")
        if logprobs is True or (
            isinstance(logprobs, int) and not isinstance(logprobs, bool) and logprobs > 0
        ):
            top = options.top_logprobs
            if top is None:
                top = mo.get("top_logprobs")
            body["top_logprobs"] = top if isinstance(top, int) else DEFAULT_TOP_LOGPROBS

        truncation = mo.get("truncation")
        if truncation in ("auto", "disabled"):
            body["truncation"] = truncation

        text = mo.get("text")
        verbosity = text.get("verbosity") if isinstance(text, dict) else None
        if verbosity is None:
            verbosity = mo.get("verbosity")
        if verbosity in ("low", "medium", "high"):
            body["text"] = {"verbosity": verbosity}

        reasoning = mo.get("reasoning")
        summary = reasoning.get("summary") if isinstance(reasoning, dict) else None
        if summary in ("auto", "none"):
            body["reasoning"] = {**body.get("reasoning", {}), "summary": summary}

        body.update(sampling_params(options))

    def _items(self, messages: list[Message], config: ModelConfig) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        supports_system = config.supports_system_role

        instructions = config.instructions.strip()
        if instructions:
            items.append(
                {
                    "type": "message",
                    "role": "system" if supports_system else "user",
                    "content": [
                        {
                            "type": "input_text",
                            "text": instructions
                            if supports_system
                            else f"{SYSTEM_PREFIX} {instructions}",
                        }
                    ],
                }
            )

        for msg in messages:
            items.extend(self._message_items(msg, supports_system))
        return items

    def _message_items(self, msg: Message, supports_system: bool) -> list[dict[str, Any]]:
        role = {Role.ASSISTANT: "assistant", Role.SYSTEM: "system"}.get(msg.role, "user")
        needs_prefix = role == "system" and not supports_system
        if needs_prefix:
            role = "user"
        text_type = "output_text" if role == "assistant" else "input_text"

        content: list[dict[str, Any]] = []
        calls: list[dict[str, Any]] = []
        results: list[dict[str, Any]] = []
        pending = ""

        for part in msg.content:
            if isinstance(part, TextPart):
                pending += part.value
            elif isinstance(part, DataPart):
                url = image_data_url(part)
                # Continuation markers and non-images never travel; images
                # only ride on user/system messages.
                if url is None or msg.role == Role.ASSISTANT:
                    continue
                if pending:
                    content.append({"type": text_type, "text": pending})
                    pending = ""
                content.append({"type": "input_image", "image_url": url})
            elif isinstance(part, ToolCallPart):
                calls.append(
                    {
                        "type": "function_call",
                        "call_id": part.call_id or new_call_id(),
                        "name": part.name,
                        "arguments": dump_arguments(part.input),
                    }
                )
            elif isinstance(part, ToolResultPart):
                text, images = tool_result_content(part.content)
                results.append(
                    {"type": "function_call_output", "call_id": part.call_id, "output": text}
                )
                # function_call_output only carries text.
                for url in images:
                    results.append(
                        {
                            "type": "message",
                            "role": "user",
                            "content": [
                                {"type": "input_text", "text": TOOL_IMAGE_NOTE},
                                {"type": "input_image", "image_url": url},
                            ],
                        }
                    )

        if pending:
            content.append({"type": text_type, "text": pending})

        items: list[dict[str, Any]] = []
        if content:
            if needs_prefix:
                first = content[0]
                if first["type"] == "input_text":
                    first["text"] = f"{SYSTEM_PREFIX} {first['text']}"
                else:
                    content.insert(0, {"type": "input_text", "text": SYSTEM_PREFIX})
            items.append({"type": "message", "role": role, "content": content})
        items.extend(calls)
        items.extend(results)
        return items

    # ------------------------------------------------------------------
    # Stream parsing
    # ------------------------------------------------------------------

    def parse_stream_event(self, line: str) -> StreamEvent:
        if line.startswith("event:"):
            event_type = line[len("event:"):].strip()
            self._sse_event_type = event_type or None
            return SKIP

        data = sse_data(line)
        if data is None:
            return SKIP
        # The event: marker applies to this data line only.
        sse_type, self._sse_event_type = self._sse_event_type, None
        if data == "[DONE]":
            return DONE

        parsed = load_json(data)
        if not isinstance(parsed, dict):
            return SKIP

        json_type = parsed.get("type") if isinstance(parsed.get("type"), str) else None
        event_type = sse_type if sse_type and sse_type != "message" else json_type

        event = self._dispatch(event_type, parsed)
        if event is not None:
            return event
        return self._from_output_array(parsed)

    def is_unsupported_error(self, status_code: int, body: str) -> bool:
        if status_code in _UNSUPPORTED_STATUS:
            return True
        lowered = body.lower()
        return any(phrase in lowered for phrase in _UNSUPPORTED_PHRASES)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _dispatch(self, event_type: str | None, p: dict[str, Any]) -> StreamEvent | None:
        if event_type == "response.completed":
            resp = p.get("response")
            rid = resp.get("id") if isinstance(resp, dict) else None
            if not isinstance(rid, str) or not rid:
                rid = p.get("id") if isinstance(p.get("id"), str) else None
            return ContinuationMarkerEvent(rid) if rid else DONE

        if event_type == "response.done":
            return DONE

        if event_type == "response.output_text.delta":
            text = _text_of(p.get("delta"))
            if text:
                self._text_seen.mark(_str(p.get("item_id")))
                return TextEvent(text)
            return None

        if event_type == "response.output_text.done":
            item_id = _str(p.get("item_id"))
            if self._text_seen.seen(item_id):
                return SKIP
            text = _text_of(p.get("delta")) or _str(p.get("text"))
            if not text:
                return None
            if item_id:
                # The output_item snapshot of this segment is now a repeat.
                self._text_seen.mark(item_id)
            return TextEvent(text)

        if event_type in _REASONING_DELTAS or event_type in _REASONING_DONES:
            return self._reasoning(event_type, p)

        if event_type in _FUNCTION_CALL_DELTAS:
            delta = p.get("delta")
            d = delta if isinstance(delta, dict) else {}
            call_id = _str(d.get("call_id")) or _str(p.get("call_id"))
            item_id = _str(d.get("item_id")) or _str(p.get("item_id"))
            raw = d.get("arguments", d.get("delta")) if isinstance(delta, dict) else delta
            return ToolCallDelta(
                index=self._tool_index(call_id, item_id),
                id=call_id,
                name=_str(d.get("name")),
                args=_args_of(raw),
            )

        if event_type in _OUTPUT_ITEM_EVENTS:
            item = p.get("item", p.get("output_item"))
            if isinstance(item, dict):
                return self._output_item(item, p.get("output_index"))
        return None

    def _reasoning(self, event_type: str, p: dict[str, Any]) -> StreamEvent | None:
        is_delta = event_type in _REASONING_DELTAS
        item_id = _str(p.get("item_id"))
        if not is_delta and self._reasoning_seen.seen(item_id):
            return SKIP
        delta = p.get("delta")
        for key in ("reasoning_summary", "reasoning", "summary"):
            if delta is None:
                delta = p.get(key)
        d = delta if isinstance(delta, dict) else {}
        text = _str(d.get("text")) or (delta if isinstance(delta, str) else None) or _str(p.get("text"))
        if not text:
            return None
        if is_delta:
            self._reasoning_seen.mark(item_id)
        return ThinkingEvent(
            text=text, id=_str(d.get("id")) or item_id or _str(p.get("id"))
        )

    def _output_item(self, item: dict[str, Any], output_index: Any) -> StreamEvent | None:
        if item.get("type") == "function_call":
            call_id = _str(item.get("call_id"))
            return ToolCallDelta(
                index=self._tool_index(call_id, _str(item.get("id"))),
                id=call_id,
                name=_str(item.get("name")),
                args=_args_of(item.get("arguments")),
            )

        if self._text_seen.seen(_str(item.get("id"))):
            return None
        text = _item_text(item)
        if not text:
            return None
        key = _str(item.get("id"))
        if key is None and isinstance(output_index, int):
            key = f"output_index:{output_index}"
        if key is not None:
            if key in self._emitted_item_keys:
                return SKIP
            self._emitted_item_keys.add(key)
        return TextEvent(text)

    def _from_output_array(self, p: dict[str, Any]) -> StreamEvent:
        """Less conformant servers send a whole ``output`` array instead of events."""
        output = p.get("output")
        if not isinstance(output, list) or not output or not isinstance(output[-1], dict):
            return SKIP
        last = output[-1]
        if last.get("type") == "function_call":
            call_id = _str(last.get("call_id"))
            return ToolCallDelta(
                index=self._tool_index(call_id, _str(last.get("id"))),
                id=call_id,
                name=_str(last.get("name")),
                args=_args_of(last.get("arguments")),
            )
        if not self._text_seen.any:
            text = _item_text(last)
            if text:
                return TextEvent(text)
        return SKIP

    def _tool_index(self, *keys: str | None) -> int:
        """
        Map a call's identifiers to a stream-local index.

        A call may be referred to by its ``call_id`` in one event and by its
        item ``id`` in the next, so every known identifier is aliased to the
        same index.  Events with no identifier at all share index 0.
        """
        present = [k for k in keys if k]
        if not present:
            return 0
        idx = next(
            (self._tool_index_by_key[k] for k in present if k in self._tool_index_by_key),
            None,
        )
        if idx is None:
            idx = self._next_tool_index
            self._next_tool_index += 1
        for k in present:
            self._tool_index_by_key.setdefault(k, idx)
        return idx


def _str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _text_of(delta: Any) -> str | None:
    if isinstance(delta, dict):
        return _str(delta.get("text"))
    return _str(delta)


def _args_of(raw: Any) -> str | None:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, dict):
        return dump_arguments(raw)
    return None


def _item_text(item: dict[str, Any]) -> str | None:
    if item.get("type") == "output_text":
        return _str(item.get("text"))
    if item.get("type") == "message" and isinstance(item.get("content"), list):
        for c in item["content"]:
            if isinstance(c, dict) and c.get("type") == "output_text" and _str(c.get("text")):
                return c["text"]
    return None
