from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from sitechat.orchestrator import OrchestratorSettings
from sitechat.tool_mediator import DEFAULT_SESSION_MUTATING_TOOLS

_API_KEY_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


@dataclass
class RuntimeEnv:
    provider_api_keys: dict[str, str]
    default_provider_env_var: str


@dataclass
class AppConfig:
    provider_name: str
    model: str
    max_tokens: int
    temperature: float
    max_tool_result_chars: int
    token_ceiling: int
    token_warning_threshold: int
    preserved_tail_messages: int
    max_segments: int
    stream_timeout_ms: int
    max_stream_retries: int
    stream_retry_base_delay_ms: int
    stream_retry_max_delay_ms: int
    max_steps: int
    session_mutating_tools: list[str]
    pending_injection_ttl_seconds: float
    persistence_enabled: bool
    memory_db_path: str
    context_max_files: int
    host: str
    port: int
    log_level: str
    log_consumers: list | None


def load_json_config(path: str | Path | None = None) -> dict:
    config_path = Path(path) if path is not None else Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def parse_app_config(config: dict) -> AppConfig:
    ceiling = int(config.get("TokenCeiling", 190_000))
    warning = int(config.get("TokenWarningThreshold", 150_000))
    if warning > ceiling:
        raise ValueError(f"TokenWarningThreshold ({warning}) must not exceed TokenCeiling ({ceiling})")

    return AppConfig(
        provider_name=config.get("Provider", "anthropic").strip().lower(),
        model=config.get("Model", "claude-sonnet-4-5-20250929"),
        max_tokens=int(config.get("MaxTokens", 8192)),
        temperature=float(config.get("Temperature", 1.0)),
        max_tool_result_chars=int(config.get("MaxToolResultChars", 40_000)),
        token_ceiling=ceiling,
        token_warning_threshold=warning,
        preserved_tail_messages=int(config.get("PreservedTailMessages", 3)),
        max_segments=int(config.get("MaxSegments", 4)),
        stream_timeout_ms=int(config.get("StreamTimeoutMs", 45_000)),
        max_stream_retries=int(config.get("MaxStreamRetries", 2)),
        stream_retry_base_delay_ms=int(config.get("StreamRetryBaseDelayMs", 1_000)),
        stream_retry_max_delay_ms=int(config.get("StreamRetryMaxDelayMs", 30_000)),
        max_steps=int(config.get("MaxSteps", 5)),
        session_mutating_tools=list(config.get("SessionMutatingTools", sorted(DEFAULT_SESSION_MUTATING_TOOLS))),
        pending_injection_ttl_seconds=float(config.get("PendingInjectionTtlSeconds", 600)),
        persistence_enabled=_to_bool(config.get("PersistenceEnabled", True), default=True),
        memory_db_path=str(config.get("MemoryDbPath", ".sitechat/sitechat.db")),
        context_max_files=int(config.get("ContextMaxFiles", 12)),
        host=str(config.get("Host", "127.0.0.1")),
        port=int(config.get("Port", 8000)),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def orchestrator_settings(app: AppConfig) -> OrchestratorSettings:
    return OrchestratorSettings(
        model=app.model,
        max_tokens=app.max_tokens,
        temperature=app.temperature,
        token_ceiling=app.token_ceiling,
        token_warning_threshold=app.token_warning_threshold,
        preserved_tail_messages=app.preserved_tail_messages,
        max_segments=app.max_segments,
        stream_timeout_ms=app.stream_timeout_ms,
        max_stream_retries=app.max_stream_retries,
        stream_retry_base_delay_ms=app.stream_retry_base_delay_ms,
        stream_retry_max_delay_ms=app.stream_retry_max_delay_ms,
        max_steps=app.max_steps,
        max_tool_result_chars=app.max_tool_result_chars,
        session_mutating_tools=frozenset(app.session_mutating_tools),
        pending_injection_ttl=app.pending_injection_ttl_seconds,
        context_max_files=app.context_max_files,
    )


def resolve_runtime_env(provider_name: str) -> RuntimeEnv:
    keys = {name: os.environ.get(var, "") for name, var in _API_KEY_VARS.items()}
    return RuntimeEnv(
        provider_api_keys={name: key for name, key in keys.items() if key},
        default_provider_env_var=_API_KEY_VARS.get(provider_name, "ANTHROPIC_API_KEY"),
    )
