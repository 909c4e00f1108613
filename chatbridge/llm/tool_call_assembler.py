"""
Assembles streaming tool-call deltas into complete tool calls.

Design goals:
  - Accumulate ``ToolCallDelta`` fragments keyed by their stream index.
  - Emit a call the moment it has a name and its accumulated arguments parse
    as a JSON object, not only at stream end.
  - Once an index has been emitted, ignore any further deltas for it, so a
    server that repeats its "final" delta cannot produce a second call.
  - ``flush(strict=True)`` (finish boundary) raises on arguments that are still
    invalid; ``flush(strict=False)`` (end of turn) drops them.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from chatbridge.errors import ToolCallArgumentsError
from chatbridge.llm.types import ToolCallDelta, ToolCallPart

logger = logging.getLogger(__name__)


def parse_json_object(text: str) -> dict[str, Any] | None:
    """Return *text* parsed as a JSON object, or ``None``."""
    if not text or "{" not in text:
        return None
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def new_call_id(prefix: str = "call") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


@dataclass
class ToolCallBuffer:
    id: str | None = None
    name: str | None = None
    args: str = ""


class ToolCallAssembler:
    """Buffers tool-call deltas and emits finished ``ToolCallPart`` objects."""

    def __init__(self) -> None:
        self._buf: dict[int, ToolCallBuffer] = {}
        self._completed: set[int] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def feed(self, delta: ToolCallDelta) -> list[ToolCallPart]:
        """
        Feed a single ``ToolCallDelta``.

        Returns a (possibly empty) list holding the call for this index if it
        just became complete.
        """
        if delta.index in self._completed:
            return []

        buf = self._buf.setdefault(delta.index, ToolCallBuffer())
        if delta.id and not buf.id:
            buf.id = delta.id
        if delta.name and not buf.name:
            buf.name = delta.name
        if delta.args:
            buf.args += delta.args

        return self._try_emit(delta.index)

    def flush(self, *, strict: bool) -> list[ToolCallPart]:
        """
        Finalize all remaining buffers.

        With *strict* an entry whose arguments are not valid JSON raises
        ``ToolCallArgumentsError``; otherwise it is dropped.
        """
        calls: list[ToolCallPart] = []
        for idx in sorted(self._buf):
            buf = self._buf[idx]
            raw_args = buf.args or "{}"
            args = parse_json_object(raw_args)
            if args is None:
                if strict:
                    logger.error(
                        "Invalid JSON for tool call idx=%d: %s", idx, raw_args[:200]
                    )
                    raise ToolCallArgumentsError(idx, raw_args)
                logger.warning("Dropping incomplete tool call idx=%d", idx)
                continue
            calls.append(self._emit(idx, buf, args))

        self._buf.clear()
        return calls

    @property
    def pending(self) -> bool:
        return bool(self._buf)

    def reset(self) -> None:
        """Discard all accumulated state."""
        self._buf.clear()
        self._completed.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _try_emit(self, idx: int) -> list[ToolCallPart]:
        buf = self._buf[idx]
        if not buf.name:
            return []
        args = parse_json_object(buf.args)
        if args is None:
            return []
        call = self._emit(idx, buf, args)
        del self._buf[idx]
        return [call]

    def _emit(self, idx: int, buf: ToolCallBuffer, args: dict) -> ToolCallPart:
        self._completed.add(idx)
        return ToolCallPart(
            call_id=buf.id or new_call_id(),
            name=(buf.name or "unknown_tool").strip(),
            input=args,
        )
