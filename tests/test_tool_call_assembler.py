"""Tests for chatbridge.llm.tool_call_assembler.ToolCallAssembler."""

from __future__ import annotations

import json

import pytest

from chatbridge.errors import ToolCallArgumentsError
from chatbridge.llm.tool_call_assembler import ToolCallAssembler
from chatbridge.llm.types import ToolCallDelta, ToolCallPart


class TestSingleToolCall:
    """Assemble a single tool call from incremental deltas."""

    def test_basic_assembly(self):
        asm = ToolCallAssembler()

        # First delta: id + name.
        result = asm.feed(ToolCallDelta(index=0, id="call_1", name="read_file"))
        assert result == []

        # Partial args.
        result = asm.feed(ToolCallDelta(index=0, args='{"path": '))
        assert result == []

        # Rest of args: valid JSON, emitted immediately.
        result = asm.feed(ToolCallDelta(index=0, args='"/etc/hosts"}'))
        assert len(result) == 1

        tc = result[0]
        assert tc.call_id == "call_1"
        assert tc.name == "read_file"
        assert tc.input == {"path": "/etc/hosts"}

    def test_single_delta_with_everything(self):
        """A server may send all data in one delta."""
        asm = ToolCallAssembler()
        result = asm.feed(
            ToolCallDelta(index=0, id="call_x", name="ping", args='{"host": "localhost"}')
        )
        assert len(result) == 1
        assert result[0].name == "ping"
        assert result[0].input == {"host": "localhost"}
        assert not asm.pending

    def test_args_before_name_wait_for_name(self):
        asm = ToolCallAssembler()
        assert asm.feed(ToolCallDelta(index=0, args='{"a": 1}')) == []
        result = asm.feed(ToolCallDelta(index=0, id="c", name="late"))
        assert [c.name for c in result] == ["late"]

    def test_id_and_name_are_set_once(self):
        asm = ToolCallAssembler()
        asm.feed(ToolCallDelta(index=0, id="first", name="alpha"))
        result = asm.feed(ToolCallDelta(index=0, id="second", name="beta", args="{}"))
        assert result[0].call_id == "first"
        assert result[0].name == "alpha"


class TestEagerEmission:
    """A call is emitted on the earliest delta that completes its JSON."""

    def test_split_across_three_fragments(self):
        asm = ToolCallAssembler()
        assert asm.feed(ToolCallDelta(index=0, id="c1", name="f", args='{"a')) == []
        assert asm.feed(ToolCallDelta(index=0, args='":1')) == []
        result = asm.feed(ToolCallDelta(index=0, args="}"))
        assert len(result) == 1
        assert result[0].input == {"a": 1}
        assert asm.flush(strict=True) == []

    def test_json_scalar_is_not_an_object(self):
        asm = ToolCallAssembler()
        assert asm.feed(ToolCallDelta(index=0, name="f", args="1")) == []
        assert asm.pending


class TestIdempotence:
    """Repeated deltas for an emitted index never produce a second call."""

    def test_same_sequence_twice(self):
        asm = ToolCallAssembler()
        deltas = [
            ToolCallDelta(index=0, id="c1", name="lookup"),
            ToolCallDelta(index=0, args='{"q": '),
            ToolCallDelta(index=0, args='"x"}'),
        ]
        emitted: list[ToolCallPart] = []
        for _ in range(2):
            for d in deltas:
                emitted.extend(asm.feed(d))
        emitted.extend(asm.flush(strict=True))
        assert len(emitted) == 1

    def test_repeated_final_delta(self):
        asm = ToolCallAssembler()
        full = ToolCallDelta(index=3, id="c3", name="f", args='{"v": 1}')
        assert len(asm.feed(full)) == 1
        assert asm.feed(full) == []
        assert not asm.pending


class TestMultipleConcurrentToolCalls:
    """Two or more tool calls assembled in parallel (different index)."""

    def test_two_parallel_calls(self):
        asm = ToolCallAssembler()

        asm.feed(ToolCallDelta(index=0, id="c0", name="alpha"))
        asm.feed(ToolCallDelta(index=1, id="c1", name="beta"))

        r0 = asm.feed(ToolCallDelta(index=0, args='{"x": 1}'))
        assert [c.name for c in r0] == ["alpha"]
        assert r0[0].input == {"x": 1}

        r1 = asm.feed(ToolCallDelta(index=1, args='{"y": 2}'))
        assert [c.name for c in r1] == ["beta"]
        assert r1[0].input == {"y": 2}

    def test_three_interleaved_calls(self):
        asm = ToolCallAssembler()
        for idx in range(3):
            asm.feed(ToolCallDelta(index=idx, id=f"c{idx}", name=f"tool_{idx}"))

        all_calls: list[ToolCallPart] = []
        for idx in range(3):
            all_calls.extend(asm.feed(ToolCallDelta(index=idx, args=json.dumps({"idx": idx}))))

        assert len(all_calls) == 3
        assert {tc.name for tc in all_calls} == {"tool_0", "tool_1", "tool_2"}


class TestFlush:
    """flush() finalizes remaining buffers."""

    def test_strict_flush_raises_on_bad_json(self):
        asm = ToolCallAssembler()
        asm.feed(ToolCallDelta(index=0, id="bad", name="broken"))
        asm.feed(ToolCallDelta(index=0, args='{"key": "val'))

        with pytest.raises(ToolCallArgumentsError) as exc_info:
            asm.flush(strict=True)
        assert exc_info.value.index == 0
        assert "idx=0" in str(exc_info.value)

    def test_silent_flush_drops_bad_json(self):
        asm = ToolCallAssembler()
        asm.feed(ToolCallDelta(index=0, id="bad", name="broken"))
        asm.feed(ToolCallDelta(index=0, args="NOT VALID JSON {{{"))

        assert asm.flush(strict=False) == []
        assert not asm.pending

    def test_bad_call_does_not_block_valid_calls(self):
        asm = ToolCallAssembler()
        asm.feed(ToolCallDelta(index=0, id="bad", name="broken", args="{BAD"))
        asm.feed(ToolCallDelta(index=1, id="good", name="ok"))

        result = asm.flush(strict=False)
        assert [c.name for c in result] == ["ok"]
        assert result[0].input == {}

    def test_empty_args_become_empty_object(self):
        asm = ToolCallAssembler()
        asm.feed(ToolCallDelta(index=0, id="empty", name="tool", args=""))
        result = asm.flush(strict=True)
        assert len(result) == 1
        assert result[0].input == {}

    def test_flush_on_empty_assembler(self):
        asm = ToolCallAssembler()
        assert asm.flush(strict=True) == []

    def test_flush_marks_index_completed(self):
        asm = ToolCallAssembler()
        asm.feed(ToolCallDelta(index=0, id="a", name="alpha"))
        assert len(asm.flush(strict=True)) == 1
        assert asm.feed(ToolCallDelta(index=0, args='{"late": true}')) == []


class TestReset:
    """reset() clears buffers and the completed set."""

    def test_reset_allows_index_reuse(self):
        asm = ToolCallAssembler()
        asm.feed(ToolCallDelta(index=0, id="x", name="first", args="{}"))
        asm.feed(ToolCallDelta(index=1, id="y", name="left_over"))

        asm.reset()

        assert not asm.pending
        result = asm.feed(ToolCallDelta(index=0, id="z", name="second", args="{}"))
        assert [c.name for c in result] == ["second"]


class TestIdFallback:
    """When no id is provided, a synthetic id is generated."""

    def test_missing_id_generates_one(self):
        asm = ToolCallAssembler()
        result = asm.feed(ToolCallDelta(index=7, name="no_id", args="{}"))
        assert len(result) == 1
        assert result[0].call_id.startswith("call_")


class TestNameStripping:
    """Tool names are stripped of leading/trailing whitespace."""

    def test_whitespace_in_name(self):
        asm = ToolCallAssembler()
        result = asm.feed(ToolCallDelta(index=0, id="ws", name="  spaced ", args="{}"))
        assert result[0].name == "spaced"
