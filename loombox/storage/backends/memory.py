"""In-process store. Used by tests and by `storage.backend: memory`."""

import copy

from .base import KeyValueStore


class MemoryStore(KeyValueStore):
    """Dict-backed store. Deep-copies on the way in and out."""

    def __init__(self, namespace: str = "default"):
        super().__init__(namespace)
        self._data: dict[str, dict] = {}

    async def get(self, key: str) -> dict | None:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def set(self, key: str, value: dict) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self) -> list[str]:
        return list(self._data)
