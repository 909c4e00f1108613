"""
Adapter for the OpenAI ``/v1/chat/completions`` wire protocol.

Works with any endpoint that speaks the flat messages-array protocol --
OpenAI itself, Azure OpenAI, vLLM, LM Studio, LocalAI, etc.
"""

from __future__ import annotations

import logging
from typing import Any

from chatbridge.config import ModelConfig
from chatbridge.errors import InvalidRequestError
from chatbridge.llm.adapters.base import (
    SYSTEM_PREFIX,
    ProtocolAdapter,
    dump_arguments,
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
    FinishEvent,
    Message,
    Role,
    StreamEvent,
    TextEvent,
    ThinkingEvent,
    ToolCallDelta,
    ToolCallPart,
    ToolMode,
    ToolResultPart,
    WireRequest,
)

logger = logging.getLogger(__name__)


class ChatCompletionsAdapter(ProtocolAdapter):
    """Chat Completions request builder and SSE parser."""

    resource = "chat/completions"

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def build_request(
        self,
        messages: list[Message],
        options: ChatOptions,
        config: ModelConfig,
    ) -> WireRequest:
        body: dict[str, Any] = {
            "model": config.model_name,
            "messages": self._wire_messages(messages, config),
            "stream": True,
            "max_tokens": max_output_tokens(options, config),
            "temperature": temperature(options),
        }
        body.update(sampling_params(options))

        if options.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": tool_parameters(t),
                    },
                }
                for t in options.tools
            ]
            body["tool_choice"] = self._tool_choice(options)

        return WireRequest(
            endpoint=resolve_endpoint(config.base_url, self.resource), body=body
        )

    @staticmethod
    def _tool_choice(options: ChatOptions) -> Any:
        if options.tool_mode == ToolMode.NONE:
            return "none"
        if options.tool_mode == ToolMode.REQUIRED:
            if len(options.tools) != 1:
                raise InvalidRequestError(
                    "Required tool mode needs exactly one declared tool."
                )
            return {"type": "function", "function": {"name": options.tools[0].name}}
        return "auto"

    def _wire_messages(
        self, messages: list[Message], config: ModelConfig
    ) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        instructions = config.instructions.strip()
        if instructions:
            out.append(self._system_record(instructions, config))

        for msg in messages:
            text = msg.text
            calls = msg.parts_of(ToolCallPart)
            results = msg.parts_of(ToolResultPart)

            # Tool results must directly follow the assistant turn that asked.
            for res in results:
                result_text, _images = tool_result_content(res.content)
                out.append(
                    {"role": "tool", "tool_call_id": res.call_id, "content": result_text}
                )

            if msg.role == Role.SYSTEM:
                if text:
                    out.append(self._system_record(text, config))
                continue

            if msg.role == Role.ASSISTANT:
                if not text and not calls:
                    continue
                record: dict[str, Any] = {"role": "assistant", "content": text or None}
                if calls:
                    record["tool_calls"] = [
                        {
                            "id": c.call_id or new_call_id(),
                            "type": "function",
                            "function": {
                                "name": c.name,
                                "arguments": dump_arguments(c.input),
                            },
                        }
                        for c in calls
                    ]
                out.append(record)
                continue

            if text:
                out.append({"role": "user", "content": text})
        return out

    @staticmethod
    def _system_record(text: str, config: ModelConfig) -> dict[str, Any]:
        if config.supports_system_role:
            return {"role": "system", "content": text}
        return {"role": "user", "content": f"{SYSTEM_PREFIX} {text}"}

    # ------------------------------------------------------------------
    # Stream parsing
    # ------------------------------------------------------------------

    def parse_stream_event(self, line: str) -> StreamEvent:
        data = sse_data(line)
        if data is None:
            return SKIP
        if data == "[DONE]":
            return DONE

        parsed = load_json(data)
        if not isinstance(parsed, dict):
            return SKIP
        choices = parsed.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return SKIP

        choice = choices[0]
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            delta = {}
        events: list[StreamEvent] = []

        thinking = choice.get("reasoning_content")
        if thinking is None:
            thinking = delta.get("reasoning_content")
        event = _thinking_event(thinking)
        if event is not None:
            events.append(event)

        content = delta.get("content")
        if content:
            events.append(TextEvent(str(content)))

        tool_calls = delta.get("tool_calls")
        if isinstance(tool_calls, list):
            for pos, tc in enumerate(tool_calls):
                if not isinstance(tc, dict):
                    continue
                func = tc.get("function")
                if not isinstance(func, dict):
                    func = {}
                idx = tc.get("index")
                events.append(
                    ToolCallDelta(
                        index=idx if isinstance(idx, int) else pos,
                        id=_str_or_none(tc.get("id")),
                        name=_str_or_none(func.get("name")),
                        args=_str_or_none(func.get("arguments")),
                    )
                )

        finish = choice.get("finish_reason")
        if finish:
            events.append(FinishEvent(str(finish)))

        return self._first_and_queue(events)


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _thinking_event(value: Any) -> ThinkingEvent | None:
    """Reasoning content arrives either as a plain string or as ``{text, id, metadata}``."""
    if isinstance(value, dict):
        text = value.get("text")
        if isinstance(text, str) and text:
            return ThinkingEvent(
                text=text, id=_str_or_none(value.get("id")), metadata=value.get("metadata")
            )
        return None
    if isinstance(value, str) and value:
        return ThinkingEvent(text=value)
    return None
