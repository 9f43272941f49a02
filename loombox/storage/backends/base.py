"""
KeyValueStore: abstract base for conversation storage backends.

All backends implement four async primitives:
  get     value for a key, or None
  set     replace the value for a key (one atomic write)
  delete  drop a key if present
  keys    every key in this store's namespace

Values are JSON-serialisable dicts. Backends never interpret them: the
repository owns the conversation/cursor shapes.
"""

from abc import ABC, abstractmethod


class KeyValueStore(ABC):
    """Abstract async key/value store scoped to one namespace."""

    def __init__(self, namespace: str = "default"):
        self.namespace = namespace

    @abstractmethod
    async def get(self, key: str) -> dict | None:
        ...

    @abstractmethod
    async def set(self, key: str, value: dict) -> None:
        """Last writer wins. No partial value is ever observable."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def keys(self) -> list[str]:
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} namespace={self.namespace!r}>"
