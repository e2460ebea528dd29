from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Protocol

import asyncpg  # type: ignore[import-untyped]

from intake_ledger.core.config import get_settings

logger = logging.getLogger(__name__)

TABLE_NAME_RE = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")


class StoreError(Exception):
    """Base key-value store error."""


class StoreUnavailableError(StoreError):
    """Raised when the backing store is unavailable or not configured."""


class MoveOutcome(str, Enum):
    MOVED = "moved"
    SOURCE_MISSING = "source_missing"
    SOURCE_CHANGED = "source_changed"


@dataclass(slots=True)
class KeyPage:
    keys: list[str] = field(default_factory=list)
    next_cursor: str | None = None


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str) -> None: ...

    async def put_unless_exists(self, key: str, value: str, *, guards: Sequence[str]) -> bool: ...

    async def delete(self, key: str) -> bool: ...

    async def list_keys(self, prefix: str, *, cursor: str | None = None, limit: int = 100) -> KeyPage: ...

    async def move(self, source: str, target: str, value: str, *, expected: str | None = None) -> MoveOutcome: ...

    async def close(self) -> None: ...


class InMemoryKeyValueStore:
    """Process-local store for tests and single-node development.

    Every operation yields to the event loop once before touching state, so
    concurrent callers interleave the way they would against a remote store.
    ``move`` and ``put_unless_exists`` perform their checks and writes without
    yielding, which makes them atomic with respect to other coroutines.
    """

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.entries: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        await asyncio.sleep(0)
        return self.entries.get(key)

    async def put(self, key: str, value: str) -> None:
        await asyncio.sleep(0)
        self.entries[key] = value

    async def put_unless_exists(self, key: str, value: str, *, guards: Sequence[str]) -> bool:
        await asyncio.sleep(0)
        if any(guard in self.entries for guard in guards):
            return False
        self.entries[key] = value
        return True

    async def delete(self, key: str) -> bool:
        await asyncio.sleep(0)
        return self.entries.pop(key, None) is not None

    async def list_keys(self, prefix: str, *, cursor: str | None = None, limit: int = 100) -> KeyPage:
        await asyncio.sleep(0)
        matching = sorted(key for key in self.entries if key.startswith(prefix) and (cursor is None or key > cursor))
        page = matching[:limit]
        next_cursor = page[-1] if len(matching) > limit else None
        return KeyPage(keys=page, next_cursor=next_cursor)

    async def move(self, source: str, target: str, value: str, *, expected: str | None = None) -> MoveOutcome:
        await asyncio.sleep(0)
        current = self.entries.get(source)
        if current is None:
            return MoveOutcome.SOURCE_MISSING
        if expected is not None and current != expected:
            return MoveOutcome.SOURCE_CHANGED
        self.entries[target] = value
        del self.entries[source]
        return MoveOutcome.MOVED

    async def close(self) -> None:
        return None


class PostgresKeyValueStore:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        table: str = "kv_entries",
    ) -> None:
        if not TABLE_NAME_RE.match(table):
            raise ValueError(f"invalid kv table name: {table!r}")
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.table = table
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get(self, key: str) -> str | None:
        pool = await self._get_pool()
        return await pool.fetchval(f"select value from {self.table} where key = $1", key)

    async def put(self, key: str, value: str) -> None:
        pool = await self._get_pool()
        await pool.execute(self._upsert_sql(), key, value)

    async def delete(self, key: str) -> bool:
        pool = await self._get_pool()
        status = await pool.execute(f"delete from {self.table} where key = $1", key)
        return status.endswith(" 1")

    async def list_keys(self, prefix: str, *, cursor: str | None = None, limit: int = 100) -> KeyPage:
        pool = await self._get_pool()
        bounded_limit = max(1, limit)
        rows = await pool.fetch(
            f"""
            select key
            from {self.table}
            where starts_with(key, $1)
              and ($2::text is null or key > $2::text)
            order by key
            limit $3
            """,
            prefix,
            cursor,
            bounded_limit + 1,
        )
        keys = [row["key"] for row in rows]
        page = keys[:bounded_limit]
        next_cursor = page[-1] if len(keys) > bounded_limit else None
        return KeyPage(keys=page, next_cursor=next_cursor)

    async def put_unless_exists(self, key: str, value: str, *, guards: Sequence[str]) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                # Same lock move() takes on its source, so a move out of ``key``
                # commits before the guards are read.
                await conn.execute("select pg_advisory_xact_lock(hashtextextended($1, 0))", key)
                blocked = await conn.fetchval(
                    f"select exists(select 1 from {self.table} where key = any($1::text[]))",
                    list(guards),
                )
                if blocked:
                    return False
                await conn.execute(self._upsert_sql(), key, value)
        return True

    async def move(self, source: str, target: str, value: str, *, expected: str | None = None) -> MoveOutcome:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("select pg_advisory_xact_lock(hashtextextended($1, 0))", source)
                current = await conn.fetchval(
                    f"select value from {self.table} where key = $1 for update",
                    source,
                )
                if current is None:
                    return MoveOutcome.SOURCE_MISSING
                if expected is not None and current != expected:
                    return MoveOutcome.SOURCE_CHANGED
                await conn.execute(self._upsert_sql(), target, value)
                await conn.execute(f"delete from {self.table} where key = $1", source)
        return MoveOutcome.MOVED

    async def ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            f"""
            create table if not exists {self.table} (
              key text primary key,
              value text not null,
              updated_at timestamptz not null default now()
            )
            """
        )

    def _upsert_sql(self) -> str:
        return f"""
            insert into {self.table} (key, value, updated_at)
            values ($1, $2, now())
            on conflict (key) do update
            set value = excluded.value,
                updated_at = excluded.updated_at
            """

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise StoreUnavailableError("IL_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            async with pool.acquire() as conn:
                await self.ensure_schema(conn)
        except Exception as exc:  # pragma: no cover - depends on environment
            raise StoreUnavailableError("key-value store unavailable") from exc

        self._pool = pool
        logger.info("kv store pool ready table=%s", self.table)
        return self._pool


@lru_cache
def get_store() -> KeyValueStore:
    settings = get_settings()
    if settings.store_backend == "memory":
        return InMemoryKeyValueStore()
    return PostgresKeyValueStore(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        table=settings.kv_table,
    )
