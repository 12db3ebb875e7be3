"""
Key-value stores the mapping registry runs on.

The registry only needs get/put/delete on string keys; there is no
enumeration and no conditional write, so listing is done through
explicit index records (see index.py).
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable

from fastapi.concurrency import run_in_threadpool
from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from redirector.config import Settings
from redirector.db import Base, make_engine, make_session_factory
from redirector.errors import ConfigurationError, StoreUnavailable
from redirector.models import KvEntry


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KeyValueStore(ABC):
    name = "abstract"

    async def open(self) -> None:
        """Called once at application startup."""

    async def close(self) -> None:
        """Called once at application shutdown."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        pass

    @abstractmethod
    async def put(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass


class InMemoryKeyValueStore(KeyValueStore):
    name = "memory"

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def put(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class RedisKeyValueStore(KeyValueStore):
    name = "redis"

    def __init__(self, client: Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        return cls(Redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> str | None:
        try:
            return await self._client.get(key)
        except RedisError as e:
            raise _unavailable("get", key, e) from e

    async def put(self, key: str, value: str) -> None:
        try:
            await self._client.set(key, value)
        except RedisError as e:
            raise _unavailable("put", key, e) from e

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as e:
            raise _unavailable("delete", key, e) from e

    async def close(self) -> None:
        await self._client.aclose()


class SqlKeyValueStore(KeyValueStore):
    """
    One row per key in kv_entry. SQLAlchemy sessions are synchronous,
    so every call is pushed to the threadpool.
    """

    name = "sql"

    def __init__(self, engine: Engine, max_attempts: int = 30, sleep_seconds: float = 1) -> None:
        self._engine = engine
        self._sessions = make_session_factory(engine)
        self._max_attempts = max_attempts
        self._sleep_seconds = sleep_seconds

    async def open(self) -> None:
        """
        Wait for the database to be reachable before creating tables.
        This avoids 'connection refused' when containers start in parallel.
        """
        last_err: Exception | None = None
        for _ in range(self._max_attempts):
            try:
                await run_in_threadpool(self._ping)
                last_err = None
                break
            except SQLAlchemyError as e:
                last_err = e
                await asyncio.sleep(self._sleep_seconds)

        if last_err is not None:
            raise StoreUnavailable(
                f"Database not reachable after {self._max_attempts} attempts"
            ) from last_err

        await self._call("create_all", "*", Base.metadata.create_all, self._engine)

    async def close(self) -> None:
        await run_in_threadpool(self._engine.dispose)

    async def get(self, key: str) -> str | None:
        return await self._call("get", key, self._get, key)

    async def put(self, key: str, value: str) -> None:
        await self._call("put", key, self._put, key, value)

    async def delete(self, key: str) -> None:
        await self._call("delete", key, self._delete, key)

    async def _call(self, op: str, key: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await run_in_threadpool(fn, *args)
        except SQLAlchemyError as e:
            raise _unavailable(op, key, e) from e

    def _ping(self) -> None:
        with self._engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def _get(self, key: str) -> str | None:
        with self._sessions() as db:
            row = db.get(KvEntry, key)
            return row.value if row is not None else None

    def _put(self, key: str, value: str) -> None:
        with self._sessions() as db:
            db.merge(KvEntry(key=key, value=value, updated_at=utcnow()))
            db.commit()

    def _delete(self, key: str) -> None:
        with self._sessions() as db:
            row = db.get(KvEntry, key)
            if row is not None:
                db.delete(row)
                db.commit()


def _unavailable(op: str, key: str, err: Exception) -> StoreUnavailable:
    logger.error("Store {} failed for {}: {}", op, key, err)
    return StoreUnavailable(f"Mapping store unavailable: {err}")


def build_store(settings: Settings) -> KeyValueStore:
    backend = settings.store_backend.lower()

    if backend == "memory":
        return InMemoryKeyValueStore()

    if backend == "redis":
        if not settings.redis_url:
            raise ConfigurationError(
                "Mapping store not configured. Please set REDIS_URL in your environment."
            )
        return RedisKeyValueStore.from_url(settings.redis_url)

    if backend == "sql":
        if not settings.database_url:
            raise ConfigurationError(
                "Mapping store not configured. Please set DATABASE_URL in your environment."
            )
        return SqlKeyValueStore(make_engine(settings.database_url))

    raise ConfigurationError(
        f"Unknown STORE_BACKEND {settings.store_backend!r}. Use memory, redis or sql."
    )
