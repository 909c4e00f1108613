"""Tests for chatbridge.llm.inline_tool_calls.InlineToolCallParser."""

from __future__ import annotations

from chatbridge.llm.inline_tool_calls import (
    ARG_BEGIN,
    BEGIN,
    END,
    InlineToolCallParser,
    strip_control_tokens,
)
from chatbridge.llm.types import TextPart, ToolCallPart


def _text(parts) -> str:
    return "".join(p.value for p in parts if isinstance(p, TextPart))


def _calls(parts) -> list[ToolCallPart]:
    return [p for p in parts if isinstance(p, ToolCallPart)]


def _feed_all(parser: InlineToolCallParser, chunks: list[str]) -> list:
    out = []
    for c in chunks:
        out.extend(parser.feed(c))
    out.extend(parser.flush())
    return out


class TestPlainText:
    def test_text_passes_through(self):
        p = InlineToolCallParser()
        assert _text(p.feed("hello world")) == "hello world"

    def test_partial_begin_is_held_back(self):
        p = InlineToolCallParser()
        parts = p.feed("abc<|tool_ca")
        assert _text(parts) == "abc"

    def test_held_back_prefix_released_when_not_a_token(self):
        p = InlineToolCallParser()
        parts = _feed_all(p, ["abc<|tool_ca", "rd game"])
        assert _text(parts) == "abc<|tool_card game"

    def test_held_back_prefix_released_on_flush(self):
        p = InlineToolCallParser()
        parts = _feed_all(p, ["trailing <|"])
        assert _text(parts) == "trailing <|"

    def test_other_control_tokens_are_stripped(self):
        p = InlineToolCallParser()
        parts = p.feed("a<|tool_calls_section_begin|>b<|tool_calls_section_end|>c")
        assert _text(parts) == "abc"

    def test_strip_control_tokens(self):
        assert strip_control_tokens(f"x{END}y") == "xy"


class TestInlineCalls:
    def test_round_trip(self):
        p = InlineToolCallParser()
        parts = _feed_all(
            p,
            [f'before {BEGIN}foo{ARG_BEGIN}{{"x":1}}{END} after'],
        )
        assert _text(parts) == "before  after"
        calls = _calls(parts)
        assert len(calls) == 1
        assert calls[0].name == "foo"
        assert calls[0].input == {"x": 1}
        assert calls[0].call_id.startswith("tct_")

    def test_order_is_preserved(self):
        p = InlineToolCallParser()
        parts = p.feed(f'one {BEGIN}f{ARG_BEGIN}{{}}{END} two')
        kinds = [type(x).__name__ for x in parts]
        assert kinds == ["TextPart", "ToolCallPart", "TextPart"]

    def test_token_split_across_chunks(self):
        p = InlineToolCallParser()
        chunks = ["hi <|tool_", "call_begin|>get_weather", ARG_BEGIN, '{"city": ', '"Paris"}', END, "!"]
        parts = _feed_all(p, chunks)
        assert _text(parts) == "hi !"
        calls = _calls(parts)
        assert [c.name for c in calls] == ["get_weather"]
        assert calls[0].input == {"city": "Paris"}

    def test_eager_emission_before_end(self):
        p = InlineToolCallParser()
        p.feed(f"{BEGIN}f{ARG_BEGIN}")
        parts = p.feed('{"a": 1}')
        assert len(_calls(parts)) == 1
        # The END token must not produce a second call.
        assert _calls(p.feed(END)) == []

    def test_no_argument_call(self):
        p = InlineToolCallParser()
        parts = p.feed(f"{BEGIN}refresh{END}")
        calls = _calls(parts)
        assert len(calls) == 1
        assert calls[0].name == "refresh"
        assert calls[0].input == {}

    def test_incomplete_header_waits(self):
        p = InlineToolCallParser()
        assert p.feed(f"{BEGIN}functions.lookup:0") == []
        parts = p.feed(f'{ARG_BEGIN}{{"k": "v"}}{END}')
        calls = _calls(parts)
        assert [c.name for c in calls] == ["functions.lookup"]


class TestDeduplication:
    def test_indexed_identity(self):
        p = InlineToolCallParser()
        first = p.feed(f'{BEGIN}f:0{ARG_BEGIN}{{"a":1}}{END}')
        second = p.feed(f'{BEGIN}f:0{ARG_BEGIN}{{"a":2}}{END}')
        assert len(_calls(first)) == 1
        assert _calls(second) == []

    def test_different_index_is_a_new_call(self):
        p = InlineToolCallParser()
        parts = p.feed(f'{BEGIN}f:0{ARG_BEGIN}{{}}{END}{BEGIN}f:1{ARG_BEGIN}{{}}{END}')
        assert len(_calls(parts)) == 2

    def test_unindexed_identity_uses_canonical_json(self):
        p = InlineToolCallParser()
        first = p.feed(f'{BEGIN}f{ARG_BEGIN}{{"a": 1, "b": 2}}{END}')
        second = p.feed(f'{BEGIN}f{ARG_BEGIN}{{"b":2,"a":1}}{END}')
        third = p.feed(f'{BEGIN}f{ARG_BEGIN}{{"a": 3}}{END}')
        assert len(_calls(first)) == 1
        assert _calls(second) == []
        assert len(_calls(third)) == 1


class TestFlushAndReset:
    def test_open_call_already_emitted_is_not_repeated(self):
        p = InlineToolCallParser()
        parts = p.feed(f'{BEGIN}f{ARG_BEGIN}{{"a": 1}}')
        assert len(_calls(parts)) == 1
        assert p.flush() == []

    def test_open_call_with_invalid_json_is_discarded(self):
        p = InlineToolCallParser()
        p.feed(f'{BEGIN}f{ARG_BEGIN}{{"a": ')
        assert p.flush() == []

    def test_reset_clears_dedup_state(self):
        p = InlineToolCallParser()
        call = f'{BEGIN}f:0{ARG_BEGIN}{{}}{END}'
        assert len(_calls(p.feed(call))) == 1
        p.reset()
        assert len(_calls(p.feed(call))) == 1


class TestSplitStrayTokens:
    def test_stray_end_split_across_chunks_is_stripped(self):
        p = InlineToolCallParser()
        parts = _feed_all(p, ["a<|tool_ca", "ll_end|>b"])
        assert _text(parts) == "ab"

    def test_stray_argument_begin_split_across_chunks_is_stripped(self):
        p = InlineToolCallParser()
        parts = _feed_all(p, ["x<|tool_call_argu", "ment_begin|>y"])
        assert _text(parts) == "xy"

    def test_end_split_inside_an_open_call(self):
        p = InlineToolCallParser()
        parts = _feed_all(p, [f"{BEGIN}f{ARG_BEGIN}", '{"a": 1}<|tool_c', "all_end|> done"])
        assert _text(parts) == " done"
        assert [(c.name, c.input) for c in _calls(parts)] == [("f", {"a": 1})]

    def test_unfinished_end_at_flush_joins_the_arguments(self):
        p = InlineToolCallParser()
        parts = _feed_all(p, [f"{BEGIN}f{ARG_BEGIN}" + '{"a": "<|tool_c'])
        assert _text(parts) == ""
        assert _calls(parts) == []
