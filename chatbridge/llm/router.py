"""
Model Router -- registry of configured models and entry point for turns.

The router is what the CLI (or any other host) talks to when it needs a
response.  It:

  1. Holds the configured ``ModelConfig`` objects and tracks the active one.
  2. Builds a fresh ``Orchestrator`` for every turn, so per-turn state never
     leaks between conversations.
  3. Keeps each model's continuation flag alive across turns: a model whose
     upstream rejected ``previous_response_id`` stays stateless.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable

import httpx

from chatbridge.config import BridgeConfig, HttpConfig, ModelConfig
from chatbridge.llm.types import ChatOptions, Message, ResponsePart
from chatbridge.orchestrator.core import Orchestrator

logger = logging.getLogger(__name__)


class ModelRouter:
    """
    Routes turns to a named model.
    """

    def __init__(
        self,
        http: HttpConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._models: dict[str, ModelConfig] = {}
        self._active: str | None = None
        self.http = http or HttpConfig()
        self.transport = transport

    @classmethod
    def from_config(
        cls,
        cfg: BridgeConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ModelRouter:
        router = cls(cfg.http, transport=transport)
        for model in cfg.models:
            router.register_model(model)
        default = cfg.default
        if default is not None:
            router.set_active(default.id)
        return router

    # ------------------------------------------------------------------
    # Model management
    # ------------------------------------------------------------------

    def register_model(self, config: ModelConfig) -> None:
        """Register *config* under its id.  Overwrites any existing entry."""
        self._models[config.id] = config
        if self._active is None:
            self._active = config.id

    def set_active(self, model_id: str) -> None:
        """
        Switch the active model.

        Raises ``KeyError`` if *model_id* has not been registered.
        """
        self._active = self.get(model_id).id

    def get(self, model_id: str) -> ModelConfig:
        if model_id not in self._models:
            raise KeyError(
                f"Unknown model {model_id!r}. "
                f"Registered: {list(self._models)}"
            )
        return self._models[model_id]

    @property
    def active_id(self) -> str | None:
        return self._active

    @property
    def active_model(self) -> ModelConfig:
        """
        Return the active ``ModelConfig``.

        Raises ``RuntimeError`` if no model is registered.
        """
        if self._active is None or self._active not in self._models:
            raise RuntimeError("No active model")
        return self._models[self._active]

    @property
    def models(self) -> list[ModelConfig]:
        return list(self._models.values())

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def orchestrator(
        self,
        model_id: str | None = None,
        *,
        supports_thinking: bool = True,
        on_warning: Callable[[str], None] | None = None,
    ) -> Orchestrator:
        config = self.get(model_id) if model_id else self.active_model
        return Orchestrator(
            config,
            http=self.http,
            supports_thinking=supports_thinking,
            on_warning=on_warning,
            transport=self.transport,
        )

    async def respond(
        self,
        messages: list[Message],
        options: ChatOptions | None = None,
        *,
        model_id: str | None = None,
        cancel: asyncio.Event | None = None,
        supports_thinking: bool = True,
        on_warning: Callable[[str], None] | None = None,
    ) -> AsyncIterator[ResponsePart]:
        """Run one turn on *model_id* (default: the active model)."""
        orch = self.orchestrator(
            model_id, supports_thinking=supports_thinking, on_warning=on_warning
        )
        async for part in orch.respond(messages, options, cancel=cancel):
            yield part
