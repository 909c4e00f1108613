"""
Orchestrator core -- runs one streamed turn against a configured model.

The orchestrator:
1. Validates the request (tool pairing, tool limits, prompt budget)
2. Builds the wire request with the adapter for the model's protocol
3. Recovers from two specific upstream rejections with a single retry:
   a stateless retry when ``previous_response_id`` is refused, and a
   fallback to Chat Completions when the Responses endpoint is missing
4. Streams SSE lines through the adapter's parser
5. Routes the resulting events through the tool-call reconstructors and
   yields response parts in emission order
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

import httpx

from chatbridge import __version__
from chatbridge.config import API_MODE_CHAT, API_MODE_RESPONSES, HttpConfig, ModelConfig
from chatbridge.errors import TransportError, UpstreamError
from chatbridge.llm.adapters import ProtocolAdapter, create_adapter
from chatbridge.llm.inline_tool_calls import InlineToolCallParser
from chatbridge.llm.token_counter import TokenCounter
from chatbridge.llm.tool_call_assembler import ToolCallAssembler
from chatbridge.llm.types import (
    ChatOptions,
    ContinuationMarkerEvent,
    DoneEvent,
    FinishEvent,
    Message,
    ResponsePart,
    SkipEvent,
    StreamEvent,
    TextEvent,
    TextPart,
    ThinkingEvent,
    ThinkingPart,
    ToolCallDelta,
    WireRequest,
    encode_continuation_marker,
)
from chatbridge.llm.validation import check_token_budget, validate_messages, validate_tools

logger = logging.getLogger(__name__)

FALLBACK_WARNING = (
    "Responses API not supported by this service. Falling back to chat_completions."
)
TOOL_CALL_HINT = " "
_DEFINITIVE_FINISH = ("tool_calls", "stop")


def default_user_agent() -> str:
    return f"chatbridge/{__version__} httpx/{httpx.__version__}"


def is_continuation_rejection(status_code: int, body: str) -> bool:
    """The upstream refused ``previous_response_id`` as an unknown parameter."""
    lowered = body.lower()
    return (
        status_code == 400
        and "unsupported parameter" in lowered
        and "previous_response_id" in lowered
    )


@dataclass
class TurnState:
    """Everything that must not outlive a single turn."""

    assembler: ToolCallAssembler = field(default_factory=ToolCallAssembler)
    inline: InlineToolCallParser = field(default_factory=InlineToolCallParser)
    has_emitted_text: bool = False
    hint_emitted: bool = False

    def reset(self) -> None:
        self.assembler.reset()
        self.inline.reset()
        self.has_emitted_text = False
        self.hint_emitted = False


class Orchestrator:
    """
    Drives a single model turn.

    Parameters
    ----------
    config : ModelConfig
        The model to talk to.  Its continuation flag may be switched off if
        the upstream rejects ``previous_response_id``.
    http : HttpConfig
        Timeouts, proxy and user agent defaults.
    supports_thinking : bool
        Whether the caller can display thinking parts.  When false, thinking
        events are dropped.
    on_warning : callable
        Receives user-facing warnings (protocol fallback).
    transport : httpx.AsyncBaseTransport
        Optional transport override, used by tests.

    A multi-turn host should create one orchestrator per turn, or at least
    never run two turns through the same instance concurrently.
    """

    def __init__(
        self,
        config: ModelConfig,
        *,
        http: HttpConfig | None = None,
        supports_thinking: bool = True,
        on_warning: Callable[[str], None] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        counter: TokenCounter | None = None,
    ) -> None:
        self.config = config
        self.http = http or HttpConfig()
        self.supports_thinking = supports_thinking
        self.on_warning = on_warning
        self.transport = transport
        self.counter = counter or TokenCounter()
        self.state = TurnState()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def respond(
        self,
        messages: list[Message],
        options: ChatOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[ResponsePart]:
        """
        Send *messages* and yield response parts as they stream in.

        Raises ``InvalidRequestError`` before any network call,
        ``UpstreamError`` when the request fails for good, ``TransportError``
        when the endpoint cannot be reached or the stream breaks off, and
        ``ToolCallArgumentsError`` when a finished tool call carries invalid
        JSON.  Setting *cancel* stops the turn at once: nothing further is
        yielded and partial tool calls are not flushed.
        """
        options = options or ChatOptions()
        self.state = TurnState()
        try:
            self._preflight(messages, options)
            async with self._client() as client:
                adapter, config, response = await self._open_stream(
                    client, messages, options
                )
                try:
                    async for part in self._consume(response, adapter, config, cancel):
                        yield part
                finally:
                    await response.aclose()
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.error(
                "Transport failure: model=%s error=%s: %s",
                self.config.id,
                type(exc).__name__,
                exc,
            )
            raise TransportError(f"{type(exc).__name__}: {exc}") from exc
        except Exception as exc:
            logger.error(
                "Chat request failed: model=%s messages=%d error=%s",
                self.config.id,
                len(messages),
                exc,
            )
            raise
        finally:
            self.state.reset()

    # ------------------------------------------------------------------
    # Request phase
    # ------------------------------------------------------------------

    def _preflight(self, messages: list[Message], options: ChatOptions) -> None:
        validate_messages(messages)
        validate_tools(options.tools)
        declarations = [
            {"name": t.name, "description": t.description, "parameters": t.input_schema}
            for t in options.tools
        ]
        check_token_budget(
            messages,
            declarations,
            max(1, self.config.max_input_tokens),
            self.counter,
        )

    def _client(self) -> httpx.AsyncClient:
        kwargs: dict = {
            "timeout": httpx.Timeout(
                self.http.timeout_seconds, connect=self.http.connect_timeout_seconds
            ),
        }
        if self.transport is not None:
            kwargs["transport"] = self.transport
        else:
            proxy = self.config.proxy or self.http.proxy
            if proxy:
                kwargs["proxy"] = proxy
        return httpx.AsyncClient(**kwargs)

    def _headers(self, config: ModelConfig) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "User-Agent": config.user_agent or self.http.user_agent or default_user_agent(),
        }
        api_key = config.resolved_api_key()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    async def _post(
        self, client: httpx.AsyncClient, request: WireRequest, config: ModelConfig
    ) -> httpx.Response:
        logger.info(
            "Making request: model=%s api_mode=%s endpoint=%s tools=%d",
            config.id,
            config.api_mode,
            request.endpoint,
            len(request.body.get("tools") or []),
        )
        req = client.build_request(
            "POST",
            request.endpoint,
            content=json.dumps(request.body),
            headers=self._headers(config),
        )
        return await client.send(req, stream=True)

    async def _open_stream(
        self,
        client: httpx.AsyncClient,
        messages: list[Message],
        options: ChatOptions,
    ) -> tuple[ProtocolAdapter, ModelConfig, httpx.Response]:
        """
        Send the request, retrying at most once.

        Returns the adapter and effective config that produced the successful
        response, together with the still-open streaming response.
        """
        config = self.config
        retried = False
        while True:
            adapter = create_adapter(config)
            request = adapter.build_request(messages, options, config)
            response = await self._post(client, request, config)
            if response.is_success:
                return adapter, config, response

            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            status = response.status_code
            logger.error("API error response: %d %s", status, body[:2000])

            if not retried and config.api_mode == API_MODE_RESPONSES:
                if config.supports_continuation and is_continuation_rejection(status, body):
                    logger.warning(
                        "previous_response_id not supported by %s; "
                        "retrying without stateful responses",
                        config.id,
                    )
                    # Later turns skip continuation for this model entirely.
                    self.config.continuation.disable()
                    config = config.without_continuation()
                    retried = True
                    continue

                if config.fallback_to_chat_completions and adapter.is_unsupported_error(
                    status, body
                ):
                    logger.warning(
                        "Responses API not supported by %s; falling back to chat_completions",
                        config.id,
                    )
                    self._warn(FALLBACK_WARNING)
                    config = config.with_api_mode(API_MODE_CHAT)
                    retried = True
                    continue

            raise UpstreamError(status, response.reason_phrase, body)

    def _warn(self, message: str) -> None:
        if self.on_warning is not None:
            self.on_warning(message)

    # ------------------------------------------------------------------
    # Streaming phase
    # ------------------------------------------------------------------

    async def _consume(
        self,
        response: httpx.Response,
        adapter: ProtocolAdapter,
        config: ModelConfig,
        cancel: asyncio.Event | None,
    ) -> AsyncIterator[ResponsePart]:
        buffer = ""
        chunks = self._chunks(response, cancel)
        try:
            async for text in chunks:
                buffer += text
                while "\n" in buffer:
                    if _is_set(cancel):
                        logger.info("Turn cancelled for model=%s", config.id)
                        return
                    line, buffer = buffer.split("\n", 1)
                    finished = False
                    for part in self._feed_line(line.rstrip("\r"), adapter, config):
                        # A part is never handed out once the turn is cancelled.
                        if _is_set(cancel):
                            logger.info("Turn cancelled for model=%s", config.id)
                            return
                        if part is None:
                            finished = True
                            continue
                        yield part
                    if finished:
                        return
        finally:
            await chunks.aclose()

        if _is_set(cancel):
            return
        if buffer.strip():
            for part in self._feed_line(buffer.rstrip("\r"), adapter, config):
                if part is None or _is_set(cancel):
                    return
                yield part

        # Stream ended without an explicit terminator.
        for part in self._flush_silently():
            if _is_set(cancel):
                return
            yield part

    async def _chunks(
        self, response: httpx.Response, cancel: asyncio.Event | None
    ) -> AsyncIterator[str]:
        """
        Decoded body chunks.  With *cancel*, each read is raced against the
        event so a stalled upstream does not delay cancellation.
        """
        chunks = response.aiter_text()
        if cancel is None:
            async for text in chunks:
                yield text
            return

        cancelled = asyncio.ensure_future(cancel.wait())
        try:
            while not cancel.is_set():
                nxt = asyncio.ensure_future(chunks.__anext__())
                await asyncio.wait({nxt, cancelled}, return_when=asyncio.FIRST_COMPLETED)
                if not nxt.done():
                    nxt.cancel()
                    await asyncio.wait({nxt})
                    return
                try:
                    text = nxt.result()
                except StopAsyncIteration:
                    return
                yield text
        finally:
            cancelled.cancel()

    def _feed_line(
        self, line: str, adapter: ProtocolAdapter, config: ModelConfig
    ) -> list[ResponsePart | None]:
        """
        Route every event produced by one line.

        A ``None`` entry marks the end of the turn; parts before it are still
        delivered.
        """
        out: list[ResponsePart | None] = []
        events = [adapter.parse_stream_event(line), *adapter.pending_events()]
        for event in events:
            out.extend(self._route(event, config))
            if isinstance(event, DoneEvent):
                out.append(None)
                break
        return out

    def _route(self, event: StreamEvent, config: ModelConfig) -> list[ResponsePart]:
        state = self.state

        if isinstance(event, SkipEvent):
            return []

        if isinstance(event, TextEvent):
            return self._visible(state.inline.feed(event.content))

        if isinstance(event, ThinkingEvent):
            if not self.supports_thinking:
                return []
            return [ThinkingPart(text=event.text, id=event.id, metadata=event.metadata)]

        if isinstance(event, ToolCallDelta):
            out: list[ResponsePart] = []
            if state.has_emitted_text and not state.hint_emitted:
                # Nudges UIs that buffer markdown to flush before the call.
                out.append(TextPart(TOOL_CALL_HINT))
                state.hint_emitted = True
            out.extend(state.assembler.feed(event))
            return out

        if isinstance(event, ContinuationMarkerEvent):
            marker = encode_continuation_marker(config.id, event.response_id)
            return [marker, *self._flush_silently()]

        if isinstance(event, FinishEvent):
            if event.reason in _DEFINITIVE_FINISH:
                return list(state.assembler.flush(strict=True))
            return []

        if isinstance(event, DoneEvent):
            return self._flush_silently()

        logger.debug("Ignoring unknown stream event %r", event)
        return []

    def _visible(self, parts: list) -> list[ResponsePart]:
        for part in parts:
            if isinstance(part, TextPart) and part.value:
                self.state.has_emitted_text = True
        return [p for p in parts if not (isinstance(p, TextPart) and not p.value)]

    def _flush_silently(self) -> list[ResponsePart]:
        out: list[ResponsePart] = []
        out.extend(self.state.assembler.flush(strict=False))
        out.extend(self._visible(self.state.inline.flush()))
        return out


def _is_set(cancel: asyncio.Event | None) -> bool:
    return cancel is not None and cancel.is_set()
