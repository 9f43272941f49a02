"""
Wiring: config → store, adapter, engine, sessions.

Shared by the CLI and the server so both build the same object graph from
the same config.yaml keys.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from loombox.backends import make_adapter
from loombox.config import ConfigError, build_model_options, get_client_config, get_config
from loombox.engine import CompletionEngine
from loombox.session import SessionManager
from loombox.storage import ConversationRepository, SaveStateStore, make_store
from loombox.wiretap import WireLog

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    client_name: str
    model_options: dict
    system_message: str | None
    repository: ConversationRepository
    engine: CompletionEngine
    save_states: SaveStateStore
    sessions: SessionManager
    wire: WireLog | None = None

    def close(self):
        if self.wire is not None:
            self.wire.close()


def default_client_name(cfg: dict) -> str:
    session_cfg = cfg.get("session") or {}
    name = session_cfg.get("client")
    if name:
        return name
    clients = cfg.get("clients") or {}
    if not clients:
        raise ConfigError("No clients configured")
    return next(iter(clients))


def read_system_message(session_cfg: dict) -> str | None:
    """Inline `system_message`, else the contents of `system_message_path`."""
    if session_cfg.get("system_message"):
        return session_cfg["system_message"]
    path = session_cfg.get("system_message_path")
    if path and Path(path).exists():
        return Path(path).read_text(encoding="utf-8")
    return None


def build_runtime(
    cfg: dict | None = None,
    client_name: str | None = None,
    model_alias: str | None = None,
    transport=None,
) -> Runtime:
    """Build every collaborator for one client. Raises ConfigError early."""
    cfg = cfg if cfg is not None else get_config()
    client_name = client_name or default_client_name(cfg)
    client_cfg = get_client_config(client_name, cfg)
    model_options = build_model_options(model_alias, client_cfg, cfg)

    session_cfg = cfg.get("session") or {}
    if session_cfg.get("n"):
        model_options.setdefault("n", session_cfg["n"])

    storage_cfg = cfg.get("storage") or {}
    kind = storage_cfg.get("backend", "file")
    store_kwargs = {"namespace": storage_cfg.get("namespace") or client_name}
    if kind != "memory":
        store_kwargs["path"] = storage_cfg.get("path", "./data/conversations.json")
    store = make_store(kind, **store_kwargs)
    repository = ConversationRepository(store)

    wire = None
    wire_cfg = cfg.get("wiretap") or {}
    if wire_cfg.get("enabled", True):
        wire = WireLog(wire_cfg.get("path", "./data/wire.jsonl"))

    adapter = make_adapter(client_cfg, model_options, transport=transport)
    engine = CompletionEngine(repository, adapter, wire=wire)
    save_states = SaveStateStore(storage_cfg.get("save_states_dir", "./data/saves"))
    system_message = read_system_message(session_cfg)
    sessions = SessionManager(
        engine,
        repository,
        save_states=save_states,
        system_message=system_message,
        model_options=model_options,
    )

    logger.info(
        "Client '%s' (%s) model=%s store=%s",
        client_name, client_cfg.get("provider", "openai"), model_options.get("model"), kind,
    )
    return Runtime(
        client_name=client_name,
        model_options=model_options,
        system_message=system_message,
        repository=repository,
        engine=engine,
        save_states=save_states,
        sessions=sessions,
        wire=wire,
    )
