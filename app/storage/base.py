from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator

from app.core.config import get_settings


class WriteConflict(Exception):
    """A watched key changed before the transaction committed."""


class StoreConnection(ABC):
    """One client's exclusive view of the store for the length of an operation."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the stored value or None when the key is absent."""
        ...

    @abstractmethod
    async def set(self, key: str, value: int | str) -> None:
        ...

    @abstractmethod
    async def watch(self, key: str) -> None:
        """Start tracking `key`; a later commit aborts if it changes."""
        ...

    @abstractmethod
    async def unwatch(self) -> None:
        ...

    @abstractmethod
    async def commit_set(self, key: str, value: int | str) -> str | None:
        """
        Atomically SET then GET `key`, guarded by the current watch.
        Returns the value read back inside the transaction.
        Raises WriteConflict if a watched key was modified since watch().
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the connection and drop any watch."""
        ...


class StoreBackend(ABC):
    @abstractmethod
    async def connect(self) -> StoreConnection:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    @abstractmethod
    async def aclose(self) -> None:
        ...


@asynccontextmanager
async def connection(store: StoreBackend) -> AsyncIterator[StoreConnection]:
    """Acquire a connection and release it on every exit path."""
    conn = await store.connect()
    try:
        yield conn
    finally:
        await conn.close()


def get_store() -> StoreBackend:
    settings = get_settings()
    if settings.store_backend == "memory":
        from app.storage.memory import MemoryStore
        return MemoryStore()
    from app.storage.redis_store import RedisStore
    return RedisStore(
        settings.store_url,
        connect_timeout=settings.redis_connect_timeout,
        retry_attempts=settings.redis_retry_attempts,
    )
