"""
Typed configuration model with precedence-based loader.

Precedence (lowest to highest):
    defaults < config file (YAML or JSON) < env vars < CLI flags

A config file lists the models the bridge can talk to::

    default_model: gpt-4o
    http:
      timeout_seconds: 120
      proxy: http://127.0.0.1:8080
    models:
      - id: gpt-4o
        model_name: gpt-4o
        base_url: https://api.openai.com/v1
        api_key_env: OPENAI_API_KEY
        api_mode: responses
        fallback_to_chat_completions: true

Model entries may also use camelCase keys (``baseUrl``, ``apiMode``,
``supportsStatefulResponses`` ...) so existing JSON model files load as-is.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from chatbridge.errors import ConfigError

logger = logging.getLogger(__name__)

API_MODE_CHAT = "chat_completions"
API_MODE_RESPONSES = "responses"
API_MODES = (API_MODE_CHAT, API_MODE_RESPONSES)

_TOOL_CHOICES = ("auto", "none", "required")
_TRUNCATION_MODES = ("auto", "disabled")
_VERBOSITY_LEVELS = ("low", "medium", "high")


# ---------------------------------------------------------------------------
# Model configuration
# ---------------------------------------------------------------------------

class ContinuationFlag:
    """
    Whether a model accepts stateful continuation (``previous_response_id``).

    A one-way switch: it starts enabled (unless configured otherwise) and can
    only ever be turned off, after the upstream rejects the parameter.
    """

    def __init__(self, enabled: bool = True) -> None:
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return self._enabled

    def disable(self) -> bool:
        """Turn the flag off.  Returns ``True`` if this call changed it."""
        changed = self._enabled
        self._enabled = False
        return changed

    def __repr__(self) -> str:
        return f"ContinuationFlag(enabled={self._enabled})"


@dataclass(frozen=True)
class Capabilities:
    supports_tools: bool = True
    supports_image: bool = False


@dataclass(frozen=True)
class ReasoningConfig:
    effort: str | None = None
    summary: str | None = None


@dataclass(frozen=True)
class ModelConfig:
    """
    Everything needed to talk to one model.

    Immutable per request.  The only state that outlives a turn is
    ``continuation``, shared by every copy made with ``dataclasses.replace``
    unless a copy explicitly swaps in a fresh flag.
    """

    id: str
    model_name: str
    base_url: str
    api_key: str = ""
    api_key_env: str = ""
    display_name: str = ""
    family: str = ""
    tooltip: str = ""
    max_input_tokens: int = 128_000
    max_output_tokens: int = 4_096
    context_length: int = 0
    is_default: bool = False
    capabilities: Capabilities = field(default_factory=Capabilities)
    api_mode: str = API_MODE_CHAT
    instructions: str = ""
    reasoning: ReasoningConfig = field(default_factory=ReasoningConfig)
    truncation: str | None = None
    text_verbosity: str | None = None
    tool_choice: str | None = None
    parallel_tool_calls: bool | None = None
    supports_system_role: bool = True
    fallback_to_chat_completions: bool = False
    proxy: str | None = None
    user_agent: str | None = None
    continuation: ContinuationFlag = field(
        default_factory=ContinuationFlag, compare=False
    )

    @property
    def supports_continuation(self) -> bool:
        return self.continuation.enabled

    def resolved_api_key(self) -> str:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env, "")
        return ""

    def with_api_mode(self, api_mode: str) -> ModelConfig:
        return replace(self, api_mode=api_mode)

    def without_continuation(self) -> ModelConfig:
        """A copy whose continuation support is off, leaving this one untouched."""
        return replace(self, continuation=ContinuationFlag(False))

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "continuation":
                d["supports_stateful_responses"] = value.enabled
            elif isinstance(value, (Capabilities, ReasoningConfig)):
                d[f.name] = {sf.name: getattr(value, sf.name) for sf in fields(value)}
            elif f.name == "api_key":
                d[f.name] = "***" if value else ""
            else:
                d[f.name] = value
        return d


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class HttpConfig:
    timeout_seconds: float = 120.0
    connect_timeout_seconds: float = 30.0
    proxy: str | None = None
    user_agent: str | None = None


@dataclass
class BridgeConfig:
    models: list[ModelConfig] = field(default_factory=list)
    default_model: str | None = None
    http: HttpConfig = field(default_factory=HttpConfig)
    source: str | None = None

    def get_model(self, model_id: str) -> ModelConfig:
        for m in self.models:
            if m.id == model_id:
                return m
        raise KeyError(
            f"Unknown model {model_id!r}. Configured: {[m.id for m in self.models]}"
        )

    @property
    def default(self) -> ModelConfig | None:
        """The explicit default model, else the first ``is_default`` entry, else the first."""
        if self.default_model:
            return self.get_model(self.default_model)
        for m in self.models:
            if m.is_default:
                return m
        return self.models[0] if self.models else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "default_model": self.default_model,
            "http": {f.name: getattr(self.http, f.name) for f in fields(self.http)},
            "models": [m.to_dict() for m in self.models],
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


def _normalize_keys(raw: dict[str, Any]) -> dict[str, Any]:
    return {_snake(k): v for k, v in raw.items()}


def _apply_dotpath(obj: Any, dotpath: str, value: Any) -> None:
    """Walk obj via dotpath and set the final attribute."""
    parts = dotpath.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _coerce(value: str, target_type: type) -> Any:
    """Coerce a string env value to the target type."""
    if target_type is bool:
        return value.lower() in ("1", "true", "yes", "on")
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    return value


def _build_section(cls: type, raw: dict) -> Any:
    """Build a dataclass section from a raw dict, ignoring unknown keys."""
    valid_fields = {f.name for f in fields(cls)}
    filtered = {k: v for k, v in _normalize_keys(raw).items() if k in valid_fields}
    return cls(**filtered)


def _check_choice(model_id: str, name: str, value: Any, allowed: tuple) -> None:
    if value is not None and value not in allowed:
        raise ConfigError(
            f"Model {model_id!r}: {name} must be one of {allowed}, got {value!r}"
        )


def parse_model(raw: dict[str, Any]) -> ModelConfig:
    """Build a ``ModelConfig`` from one raw model entry."""
    if not isinstance(raw, dict):
        raise ConfigError(f"Model entry must be a mapping, got {type(raw).__name__}")
    data = _normalize_keys(raw)

    for required in ("id", "model_name", "base_url"):
        if not data.get(required):
            raise ConfigError(
                f"Model entry {data.get('id', '?')!r} is missing {required!r}"
            )
    model_id = data["id"]

    if "ua" in data and "user_agent" not in data:
        data["user_agent"] = data.pop("ua")

    text = data.pop("text", None)
    if isinstance(text, dict) and "text_verbosity" not in data:
        data["text_verbosity"] = text.get("verbosity")

    stateful = data.pop("supports_stateful_responses", True)
    data["continuation"] = ContinuationFlag(stateful is not False)

    caps = data.get("capabilities")
    data["capabilities"] = _build_section(Capabilities, caps or {})
    reasoning = data.get("reasoning")
    data["reasoning"] = _build_section(ReasoningConfig, reasoning or {})

    data.setdefault("display_name", model_id)
    data.setdefault("api_mode", API_MODE_CHAT)
    if data["api_mode"] is None:
        data["api_mode"] = API_MODE_CHAT

    _check_choice(model_id, "api_mode", data["api_mode"], API_MODES)
    _check_choice(model_id, "tool_choice", data.get("tool_choice"), _TOOL_CHOICES)
    _check_choice(model_id, "truncation", data.get("truncation"), _TRUNCATION_MODES)
    _check_choice(
        model_id, "text_verbosity", data.get("text_verbosity"), _VERBOSITY_LEVELS
    )

    valid_fields = {f.name for f in fields(ModelConfig)}
    unknown = sorted(k for k in data if k not in valid_fields)
    if unknown:
        logger.debug("Model %r: ignoring unknown keys %s", model_id, unknown)
    try:
        return ModelConfig(**{k: v for k, v in data.items() if k in valid_fields})
    except TypeError as exc:
        raise ConfigError(f"Model {model_id!r}: {exc}") from exc


# ---------------------------------------------------------------------------
# ENV var mapping
# ---------------------------------------------------------------------------

_ENV_MAP: dict[str, tuple[str, type]] = {
    "CHATBRIDGE_DEFAULT_MODEL": ("default_model", str),
    "CHATBRIDGE_PROXY":         ("http.proxy", str),
    "CHATBRIDGE_TIMEOUT":       ("http.timeout_seconds", float),
    "CHATBRIDGE_USER_AGENT":    ("http.user_agent", str),
}


def find_config_path() -> Path | None:
    """Find a config file in the standard locations."""
    env_path = os.environ.get("CHATBRIDGE_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    candidates = [
        Path.cwd() / "chatbridge.yaml",
        Path.cwd() / "chatbridge.yml",
        Path.home() / ".config" / "chatbridge" / "config.yaml",
        Path.home() / ".chatbridge" / "models.json",
    ]
    for p in candidates:
        if p.is_file():
            return p
    return None


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: dict[str, Any] | None = None,
) -> BridgeConfig:
    """
    Build a BridgeConfig by layering sources in precedence order:

        defaults  <  config file  <  env vars  <  CLI flags

    Parameters
    ----------
    config_path : path to a YAML/JSON config file (optional)
    cli_overrides : dict of dotpath -> value CLI flag overrides
    """
    raw: dict[str, Any] = {}
    source: str | None = None

    # --- 1. Config file ---
    if config_path is not None:
        p = Path(config_path).expanduser()
        if not p.is_file():
            raise ConfigError(f"Config file not found: {p}")
        try:
            with p.open("r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Cannot parse {p}: {exc}") from exc
        # A bare list is a models file.
        if isinstance(raw, list):
            raw = {"models": raw}
        if not isinstance(raw, dict):
            raise ConfigError(f"{p}: top level must be a mapping")
        source = str(p)
        logger.info("Loaded config from %s", p)

    # --- Build sections from raw ---
    models = [parse_model(m) for m in raw.get("models") or []]
    ids = [m.id for m in models]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate model ids: {duplicates}")

    raw_top = _normalize_keys(raw)
    cfg = BridgeConfig(
        models=models,
        default_model=raw_top.get("default_model"),
        http=_build_section(HttpConfig, raw_top.get("http") or {}),
        source=source,
    )

    # --- 2. Env var overrides ---
    for env_var, (dotpath, target_type) in _ENV_MAP.items():
        val = os.environ.get(env_var)
        if val is not None:
            _apply_dotpath(cfg, dotpath, _coerce(val, target_type))

    # --- 3. CLI flag overrides ---
    if cli_overrides:
        for dotpath, value in cli_overrides.items():
            _apply_dotpath(cfg, dotpath, value)

    if cfg.default_model and cfg.default_model not in ids:
        raise ConfigError(f"default_model {cfg.default_model!r} is not configured")

    return cfg
