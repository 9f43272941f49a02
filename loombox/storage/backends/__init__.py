"""
Conversation store factory.

Usage:
    from loombox.storage.backends import make_store
    store = make_store("sqlite", path="./data/loombox.db", namespace="openai")

Adding a new backend:
    1. Create loombox/storage/backends/<name>.py implementing KeyValueStore.
    2. Add an entry to _REGISTRY below.
    3. Set  storage.backend: <name>  in config.yaml.
"""

from .base import KeyValueStore

_REGISTRY: dict[str, type[KeyValueStore]] = {}


def _register():
    """Lazy-import backends so importing the package stays cheap."""
    if _REGISTRY:
        return
    from .json_file import JSONFileStore
    from .memory import MemoryStore
    from .sqlite import SQLiteStore
    _REGISTRY["memory"] = MemoryStore
    _REGISTRY["file"] = JSONFileStore
    _REGISTRY["sqlite"] = SQLiteStore


def make_store(kind: str, **kwargs) -> KeyValueStore:
    """
    Instantiate a store by name.

    Args:
        kind:     Registry key ("memory", "file", "sqlite").
        **kwargs: Passed directly to the store constructor.

    Raises:
        ValueError: If the store type is not registered.
    """
    _register()
    cls = _REGISTRY.get(kind)
    if cls is None:
        available = ", ".join(_REGISTRY.keys())
        raise ValueError(
            f"Unknown storage backend: '{kind}'. "
            f"Available: {available}"
        )
    return cls(**kwargs)


__all__ = ["KeyValueStore", "make_store"]
