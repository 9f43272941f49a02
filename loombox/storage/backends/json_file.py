"""
Single-file JSON store.

The file holds one document, {namespace: {key: value}}, so several clients
can share it without clobbering each other's keys. Every set() rewrites the
whole document through a temp file and os.replace(). File I/O runs in a
worker thread so the event loop keeps streaming while it happens.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from uuid import uuid4

from .base import KeyValueStore

logger = logging.getLogger(__name__)


class JSONFileStore(KeyValueStore):
    """JSON document store with atomic rewrites."""

    def __init__(self, path: str, namespace: str = "default"):
        super().__init__(namespace)
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Could not read store %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _dump(self, data: dict) -> None:
        tmp = self.path.with_name(f"{self.path.name}.{uuid4().hex}.tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False)
            os.replace(tmp, self.path)
        finally:
            if tmp.exists():
                tmp.unlink()

    async def get(self, key: str) -> dict | None:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
        return data.get(self.namespace, {}).get(key)

    async def set(self, key: str, value: dict) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            data.setdefault(self.namespace, {})[key] = value
            await asyncio.to_thread(self._dump, data)
        logger.debug("Stored %s/%s in %s", self.namespace, key, self.path)

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            if data.get(self.namespace, {}).pop(key, None) is not None:
                await asyncio.to_thread(self._dump, data)

    async def keys(self) -> list[str]:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
        return list(data.get(self.namespace, {}))
