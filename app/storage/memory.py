"""In-process store with Redis-like WATCH semantics, for local runs and tests."""

import asyncio

from app.storage.base import StoreBackend, StoreConnection, WriteConflict


class MemoryStore(StoreBackend):
    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self._versions: dict[str, int] = {}

    def version(self, key: str) -> int:
        return self._versions.get(key, 0)

    def write(self, key: str, value: int | str) -> None:
        self.values[key] = str(value)
        self._versions[key] = self.version(key) + 1

    async def connect(self) -> "MemoryConnection":
        return MemoryConnection(self)

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        pass


class MemoryConnection(StoreConnection):
    # Every call yields to the loop once so concurrent tasks interleave the
    # way they would against a networked store.

    def __init__(self, store: MemoryStore) -> None:
        self._store = store
        self._watched: dict[str, int] = {}

    async def get(self, key: str) -> str | None:
        await asyncio.sleep(0)
        return self._store.values.get(key)

    async def set(self, key: str, value: int | str) -> None:
        await asyncio.sleep(0)
        self._store.write(key, value)

    async def watch(self, key: str) -> None:
        await asyncio.sleep(0)
        self._watched[key] = self._store.version(key)

    async def unwatch(self) -> None:
        self._watched.clear()

    async def commit_set(self, key: str, value: int | str) -> str | None:
        await asyncio.sleep(0)
        try:
            changed = [k for k, v in self._watched.items() if self._store.version(k) != v]
            if changed:
                raise WriteConflict(f"watched keys changed: {changed}")
            self._store.write(key, value)
            return self._store.values.get(key)
        finally:
            self._watched.clear()

    async def close(self) -> None:
        self._watched.clear()
