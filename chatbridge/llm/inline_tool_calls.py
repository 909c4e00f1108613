"""
Tool calls embedded in plain text as control tokens.

Some backends stream tool calls inside normal content instead of the
structured ``tool_calls`` channel::

    <|tool_call_begin|>name[:index]<|tool_call_argument_begin|>{json}<|tool_call_end|>

``InlineToolCallParser`` scans text deltas in a single pass, forwards every
byte that is not part of a control token as visible text, and reconstructs the
embedded calls.  It keeps its own state and dedup sets; it never shares them
with ``ToolCallAssembler``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from chatbridge.llm.tool_call_assembler import (
    canonical_json,
    new_call_id,
    parse_json_object,
)
from chatbridge.llm.types import TextPart, ToolCallPart

logger = logging.getLogger(__name__)

BEGIN = "<|tool_call_begin|>"
ARG_BEGIN = "<|tool_call_argument_begin|>"
END = "<|tool_call_end|>"

_HEADER_RE = re.compile(r"^([A-Za-z0-9_\-.]+)(?::(\d+))?")
_SECTION_TOKEN_RE = re.compile(r"<\|[a-zA-Z0-9_-]+_section_(?:begin|end)\|>")
_CALL_TOKEN_RE = re.compile(r"<\|tool_call_(?:argument_)?(?:begin|end)\|>")


def strip_control_tokens(text: str) -> str:
    """Remove section markers and stray call markers from visible text."""
    return _CALL_TOKEN_RE.sub("", _SECTION_TOKEN_RE.sub("", text))


def _partial_token_suffix(data: str, tokens: tuple[str, ...]) -> int:
    """Length of the longest suffix of *data* that is a strict prefix of one of *tokens*."""
    longest = max(len(t) for t in tokens) - 1
    for k in range(min(longest, len(data)), 0, -1):
        tail = data[-k:]
        if any(len(t) > k and t.startswith(tail) for t in tokens):
            return k
    return 0


@dataclass
class _ActiveCall:
    name: str | None
    index: int | None
    arg_buffer: str = ""
    emitted: bool = False


class InlineToolCallParser:
    """Stateful scanner; feed it every text delta of one turn, in order."""

    def __init__(self) -> None:
        self._pending = ""
        self._active: _ActiveCall | None = None
        self._emitted_keys: set[str] = set()
        self._emitted_ids: set[str] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def feed(self, chunk: str) -> list[TextPart | ToolCallPart]:
        """
        Consume one text delta.

        Returns visible text and completed calls in the order they appeared.
        """
        out: list[TextPart | ToolCallPart] = []
        visible: list[str] = []

        def _emit_call(call: ToolCallPart | None) -> None:
            if call is None:
                return
            if visible:
                out.append(TextPart("".join(visible)))
                visible.clear()
            out.append(call)

        data = self._pending + chunk
        self._pending = ""

        while data:
            if self._active is None:
                b = data.find(BEGIN)
                if b == -1:
                    # Stray ARG_BEGIN/END tokens may also be split across deltas.
                    hold = _partial_token_suffix(data, (BEGIN, ARG_BEGIN, END))
                    shown = data[: len(data) - hold] if hold else data
                    if shown:
                        visible.append(strip_control_tokens(shown))
                    self._pending = data[len(data) - hold:] if hold else ""
                    data = ""
                    break

                if b > 0:
                    visible.append(strip_control_tokens(data[:b]))
                rest = data[b + len(BEGIN):]

                a = rest.find(ARG_BEGIN)
                e = rest.find(END)
                if a != -1 and (e == -1 or a < e):
                    delim, delim_len, no_args = a, len(ARG_BEGIN), False
                elif e != -1:
                    delim, delim_len, no_args = e, len(END), True
                else:
                    # Header not complete yet; keep BEGIN so it is re-scanned.
                    self._pending = BEGIN + rest
                    data = ""
                    break

                m = _HEADER_RE.match(rest[:delim].strip())
                name = m.group(1) if m else None
                index = int(m.group(2)) if m and m.group(2) else None
                self._active = _ActiveCall(name=name, index=index)
                data = rest[delim + delim_len:]

                if no_args:
                    _emit_call(self._try_emit(self._active, "{}"))
                    self._active = None
                continue

            e2 = data.find(END)
            if e2 == -1:
                hold = _partial_token_suffix(data, (END,))
                if hold:
                    self._pending = data[len(data) - hold:]
                    data = data[: len(data) - hold]
                self._active.arg_buffer += data
                if not self._active.emitted:
                    call = self._try_emit(self._active, self._active.arg_buffer)
                    if call is not None:
                        self._active.emitted = True
                        _emit_call(call)
                data = ""
                break

            self._active.arg_buffer += data[:e2]
            data = data[e2 + len(END):]
            if not self._active.emitted:
                _emit_call(self._try_emit(self._active, self._active.arg_buffer))
            self._active = None

        text = "".join(visible)
        if text:
            out.append(TextPart(text))
        return out

    def flush(self) -> list[TextPart | ToolCallPart]:
        """
        End of turn.

        A held-back partial token turned out to be plain text and is released,
        or joins the arguments when a call is open.  The open call is emitted
        only if its buffer is already valid JSON, otherwise it is discarded.
        """
        out: list[TextPart | ToolCallPart] = []
        pending, self._pending = self._pending, ""
        active, self._active = self._active, None
        if active is not None:
            active.arg_buffer += pending
        elif pending and not pending.startswith(BEGIN):
            out.append(TextPart(pending))

        if active is None or active.emitted:
            return out
        call = self._try_emit(active, active.arg_buffer)
        if call is None:
            logger.warning("Discarding incomplete inline tool call %r", active.name)
            return out
        out.append(call)
        return out

    def reset(self) -> None:
        self._pending = ""
        self._active = None
        self._emitted_keys.clear()
        self._emitted_ids.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _try_emit(self, call: _ActiveCall, arg_text: str) -> ToolCallPart | None:
        args = parse_json_object(arg_text)
        if args is None:
            return None
        name = call.name or "unknown_tool"

        if call.index is not None:
            id_key = f"{name}:{call.index}"
            if id_key in self._emitted_ids:
                return None
            self._emitted_ids.add(id_key)
        else:
            key = f"{name}:{canonical_json(args)}"
            if key in self._emitted_keys:
                return None
            self._emitted_keys.add(key)

        return ToolCallPart(call_id=new_call_id("tct"), name=name, input=args)
