from contextlib import contextmanager
from typing import Iterator

import redis.asyncio as aioredis
from redis import exceptions as redis_exc
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff

from app.core.exceptions import StoreError, StoreUnavailableError
from app.storage.base import StoreBackend, StoreConnection, WriteConflict


_UNREACHABLE = (redis_exc.ConnectionError, redis_exc.TimeoutError)


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except redis_exc.WatchError as e:
        # redis-py also raises WatchError when the socket drops mid-watch; the
        # EXEC may already have been applied, so that must not be retried.
        if isinstance(e.__cause__ or e.__context__, _UNREACHABLE):
            raise StoreUnavailableError(f"Redis unreachable: {e}") from e
        raise WriteConflict(str(e)) from e
    except _UNREACHABLE as e:
        raise StoreUnavailableError(f"Redis unreachable: {e}") from e
    except redis_exc.RedisError as e:
        raise StoreError(f"Redis error: {e}") from e


class RedisConnection(StoreConnection):
    """
    Wraps a transactional pipeline. Plain GET/SET go through the pool; once a
    key is watched the pipeline pins one connection until commit or close.
    """

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client
        self._pipe = client.pipeline(transaction=True)
        self._watching = False

    async def get(self, key: str) -> str | None:
        with _translate_errors():
            if self._watching:
                return await self._pipe.get(key)
            return await self._client.get(key)

    async def set(self, key: str, value: int | str) -> None:
        with _translate_errors():
            await self._client.set(key, value)

    async def watch(self, key: str) -> None:
        with _translate_errors():
            await self._pipe.watch(key)
        self._watching = True

    async def unwatch(self) -> None:
        if not self._watching:
            return
        self._watching = False
        with _translate_errors():
            await self._pipe.unwatch()

    async def commit_set(self, key: str, value: int | str) -> str | None:
        try:
            with _translate_errors():
                self._pipe.multi()
                self._pipe.set(key, value)
                self._pipe.get(key)
                _, confirmed = await self._pipe.execute()
        finally:
            # execute() resets the pipeline whether or not EXEC went through
            self._watching = False
        return confirmed

    async def close(self) -> None:
        self._watching = False
        with _translate_errors():
            await self._pipe.reset()


class RedisStore(StoreBackend):
    def __init__(self, url: str, connect_timeout: float | None = 5.0, retry_attempts: int = 3) -> None:
        self.url = url
        self._client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout,
            retry=Retry(ExponentialBackoff(), retry_attempts),
        )

    async def connect(self) -> RedisConnection:
        return RedisConnection(self._client)

    async def ping(self) -> bool:
        with _translate_errors():
            return bool(await self._client.ping())

    async def aclose(self) -> None:
        await self._client.aclose()
