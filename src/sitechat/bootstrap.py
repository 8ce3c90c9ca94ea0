from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from sitechat.app_config import AppConfig, RuntimeEnv, orchestrator_settings
from sitechat.logging_config import setup_logging
from sitechat.orchestrator import Orchestrator
from sitechat.persistence import (
    ConversationStore,
    InMemoryPendingInjectionStore,
    InMemorySessionStore,
    MemoryStore,
    PendingInjectionStore,
    SessionStore,
    SqlitePendingInjectionStore,
)
from sitechat.provider import LLMProvider, create_provider
from sitechat.tool import Tool
from sitechat.tool_registry import ToolRegistry


@dataclass
class AppRuntime:
    orchestrator: Orchestrator
    injection_store: PendingInjectionStore
    session_store: SessionStore
    memory_store: MemoryStore | None
    providers: dict[str, LLMProvider]
    tool_registry: ToolRegistry
    log_descriptions: list[str] = field(default_factory=list)

    def close(self) -> None:
        if self.memory_store is not None:
            self.memory_store.close()


def bootstrap_runtime(
    app: AppConfig,
    env: RuntimeEnv,
    *,
    tools: Iterable[Tool] = (),
    session_store: SessionStore | None = None,
    configure_logging: bool = True,
) -> AppRuntime:
    log_descriptions: list[str] = []
    if configure_logging:
        log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    if app.provider_name not in env.provider_api_keys:
        raise ValueError(f"{env.default_provider_env_var} environment variable is required.")
    providers = {name: create_provider(name, key) for name, key in env.provider_api_keys.items()}

    registry = ToolRegistry(tools)

    memory_store: MemoryStore | None = None
    conversation_store: ConversationStore | None = None
    injection_store: PendingInjectionStore
    if app.persistence_enabled:
        db_path = Path(app.memory_db_path)
        if not db_path.is_absolute():
            db_path = Path.cwd() / db_path
        memory_store = MemoryStore(str(db_path))
        conversation_store = ConversationStore(memory_store)
        injection_store = SqlitePendingInjectionStore(memory_store)
    else:
        injection_store = InMemoryPendingInjectionStore()

    session_store = session_store or InMemorySessionStore()

    orchestrator = Orchestrator(
        providers=providers,
        default_provider=app.provider_name,
        tool_registry=registry,
        injection_store=injection_store,
        session_store=session_store,
        conversation_store=conversation_store,
        settings=orchestrator_settings(app),
    )

    return AppRuntime(
        orchestrator=orchestrator,
        injection_store=injection_store,
        session_store=session_store,
        memory_store=memory_store,
        providers=providers,
        tool_registry=registry,
        log_descriptions=log_descriptions,
    )
