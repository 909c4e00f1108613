"""Tests for the chatbridge CLI and interactive chat handler."""

from __future__ import annotations

import io

import httpx
import pytest
from rich.console import Console
from typer.testing import CliRunner

from chatbridge import __version__
from chatbridge.cli import app as cli_app
from chatbridge.cli.chat import ChatHandler
from chatbridge.llm.router import ModelRouter
from chatbridge.llm.types import DataPart, Role, TextPart, decode_continuation_marker
from tests.mock_server import MockUpstream, Reply, chat_chunk, make_model, sse

runner = CliRunner()

CONFIG = """\
default_model: beta
models:
  - id: alpha
    model_name: gpt-alpha
    base_url: https://alpha.example.com/v1
    api_key: sk-alpha
  - id: beta
    model_name: gpt-beta
    base_url: https://beta.example.com/v1
    api_key_env: CHATBRIDGE_TEST_MISSING_KEY
    api_mode: responses
    fallback_to_chat_completions: true
"""


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.delenv("CHATBRIDGE_TEST_MISSING_KEY", raising=False)
    monkeypatch.delenv("CHATBRIDGE_DEFAULT_MODEL", raising=False)
    p = tmp_path / "chatbridge.yaml"
    p.write_text(CONFIG)
    return p


def _console() -> Console:
    return Console(file=io.StringIO(), width=120)


def _output(console: Console) -> str:
    return console.file.getvalue()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

class TestCommands:
    def test_version(self):
        result = runner.invoke(cli_app.app, ["version"])
        assert result.exit_code == 0
        assert f"chatbridge v{__version__}" in result.output

    def test_config_validate(self, config_file):
        result = runner.invoke(cli_app.app, ["config", "validate", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "Config is valid." in result.output
        assert "Models: 2" in result.output
        assert "Default model: beta (responses)" in result.output
        assert "no API key for model beta" in result.output

    def test_config_validate_failure(self, tmp_path):
        p = tmp_path / "bad.yaml"
        p.write_text("models:\n  - {id: a}\n")
        result = runner.invoke(cli_app.app, ["config", "validate", "--config", str(p)])
        assert result.exit_code == 1
        assert "Config validation failed" in result.output

    def test_config_show_masks_keys(self, config_file):
        result = runner.invoke(cli_app.app, ["config", "show", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "sk-alpha" not in result.output
        assert "***" in result.output

    def test_models_list(self, config_file):
        result = runner.invoke(cli_app.app, ["models", "list", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "alpha" in result.output
        assert "beta *" in result.output
        assert "(fallback)" in result.output

    def test_missing_config_file(self, tmp_path):
        result = runner.invoke(
            cli_app.app, ["models", "list", "--config", str(tmp_path / "nope.yaml")]
        )
        assert result.exit_code == 1
        assert "Config error" in result.output

    def test_ask_streams_answer(self, config_file, monkeypatch):
        upstream = MockUpstream([Reply(body=sse(chat_chunk("Hello "), chat_chunk("there"), "[DONE]"))])

        def _router(cfg, model):
            router = ModelRouter.from_config(cfg, transport=upstream.transport)
            router.set_active(model or "alpha")
            return router

        monkeypatch.setattr(cli_app, "_setup_router", _router)
        result = runner.invoke(
            cli_app.app, ["ask", "hi", "--model", "alpha", "--config", str(config_file)]
        )
        assert result.exit_code == 0
        assert "Hello there" in result.output
        assert upstream.bodies[0]["messages"] == [{"role": "user", "content": "hi"}]

    def test_ask_reports_upstream_errors(self, config_file, monkeypatch):
        upstream = MockUpstream([Reply(status=500, body="boom")])
        monkeypatch.setattr(
            cli_app,
            "_setup_router",
            lambda cfg, model: ModelRouter.from_config(cfg, transport=upstream.transport),
        )
        result = runner.invoke(cli_app.app, ["ask", "hi", "--config", str(config_file)])
        assert result.exit_code == 1
        assert "Upstream API error: 500" in result.output

    def test_ask_reports_connection_errors(self, config_file, monkeypatch):
        monkeypatch.setattr(
            cli_app,
            "_setup_router",
            lambda cfg, model: ModelRouter.from_config(cfg, transport=_refusing_transport()),
        )
        result = runner.invoke(cli_app.app, ["ask", "hi", "--config", str(config_file)])
        assert result.exit_code == 1
        assert "connection refused" in result.output

    def test_ask_without_models(self, tmp_path):
        p = tmp_path / "empty.yaml"
        p.write_text("models: []\n")
        result = runner.invoke(cli_app.app, ["ask", "hi", "--config", str(p)])
        assert result.exit_code == 1
        assert "No models configured" in result.output


# ---------------------------------------------------------------------------
# Interactive handler
# ---------------------------------------------------------------------------

def _refusing_transport() -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    return httpx.MockTransport(handler)


def _handler(upstream: MockUpstream, **model_overrides) -> ChatHandler:
    router = ModelRouter(transport=upstream.transport)
    router.register_model(make_model(**model_overrides))
    router.register_model(make_model(id="other"))
    return ChatHandler(router, console=_console())


class TestChatHandler:
    async def test_history_keeps_text_and_markers(self):
        body = (
            'event: response.output_text.delta\ndata: {"delta": "Hi!"}\n\n'
            + sse({"type": "response.completed", "response": {"id": "resp_9"}})
        )
        upstream = MockUpstream([Reply(body=body)])
        handler = _handler(upstream, api_mode="responses")

        await handler.handle_input("hello")

        assert len(handler.history) == 2
        reply = handler.history[1]
        assert reply.role == Role.ASSISTANT
        assert reply.content[0] == TextPart("Hi!")
        marker = reply.content[1]
        assert isinstance(marker, DataPart)
        assert decode_continuation_marker(marker) == ("test-model", "resp_9")

    async def test_second_turn_resends_only_new_messages(self):
        first = (
            'event: response.output_text.delta\ndata: {"delta": "Hi!"}\n\n'
            + sse({"type": "response.completed", "response": {"id": "resp_9"}})
        )
        second = sse({"type": "response.completed", "response": {"id": "resp_10"}})
        upstream = MockUpstream([Reply(body=first), Reply(body=second)])
        handler = _handler(upstream, api_mode="responses")

        await handler.handle_input("hello")
        await handler.handle_input("again")

        body = upstream.bodies[1]
        assert body["previous_response_id"] == "resp_9"
        assert len(body["input"]) == 1

    async def test_errors_are_printed_and_history_kept(self):
        upstream = MockUpstream([Reply(status=500, body="boom")])
        handler = _handler(upstream)

        await handler.handle_input("hello")

        assert handler.history == []
        assert "Upstream API error: 500" in _output(handler.console)

    async def test_unreachable_endpoint_keeps_session_alive(self):
        router = ModelRouter(transport=_refusing_transport())
        router.register_model(make_model())
        handler = ChatHandler(router, console=_console())

        await handler.handle_input("hello")

        assert handler.history == []
        assert "connection refused" in _output(handler.console)

    async def test_fallback_warning_shown_once(self):
        upstream = MockUpstream([
            Reply(status=404, body="Not Found"),
            Reply(body=sse(chat_chunk("a"), "[DONE]")),
            Reply(status=404, body="Not Found"),
            Reply(body=sse(chat_chunk("b"), "[DONE]")),
        ])
        handler = _handler(upstream, api_mode="responses", fallback_to_chat_completions=True)

        await handler.handle_input("one")
        await handler.handle_input("two")

        assert _output(handler.console).count("Falling back to chat_completions") == 1

    async def test_commands(self):
        handler = _handler(MockUpstream())
        handler.history.append(object())

        assert await handler.handle_command("/switch other")
        assert handler.router.active_id == "other"
        assert await handler.handle_command("/switch nope")
        assert "Unknown model" in _output(handler.console)
        assert await handler.handle_command("/reset")
        assert handler.history == []
        assert await handler.handle_command("/models")
        assert not await handler.handle_command("/unknown")
        assert await handler.handle_command("/quit")
        assert handler._running is False
