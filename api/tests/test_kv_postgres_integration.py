from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Coroutine
from typing import Any, TypeVar

import pytest

from intake_ledger.services.kv import MoveOutcome, PostgresKeyValueStore

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("IL_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require IL_DATABASE_URL or DATABASE_URL")
    return url


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


def _table() -> str:
    return f"kv_test_{uuid.uuid4().hex[:12]}"


async def _drop(store: PostgresKeyValueStore) -> None:
    pool = await store._get_pool()
    await pool.execute(f"drop table if exists {store.table}")
    await store.close()


def test_put_get_delete_roundtrip(database_url: str) -> None:
    async def run() -> None:
        store = PostgresKeyValueStore(database_url, 1, 2, table=_table())
        try:
            await store.put("pending:1001", "[1]")
            await store.put("pending:1001", "[2]")
            assert await store.get("pending:1001") == "[2]"
            assert await store.delete("pending:1001") is True
            assert await store.delete("pending:1001") is False
            assert await store.get("pending:1001") is None
        finally:
            await _drop(store)

    _run(run())


def test_list_keys_pages_with_cursor(database_url: str) -> None:
    async def run() -> list[str]:
        store = PostgresKeyValueStore(database_url, 1, 2, table=_table())
        try:
            for index in range(5):
                await store.put(f"pending:{index}", "[]")
            await store.put("approved:9", "[]")

            seen: list[str] = []
            cursor: str | None = None
            while True:
                page = await store.list_keys("pending:", cursor=cursor, limit=2)
                seen.extend(page.keys)
                if page.next_cursor is None:
                    return seen
                cursor = page.next_cursor
        finally:
            await _drop(store)

    assert _run(run()) == [f"pending:{index}" for index in range(5)]


def test_concurrent_moves_have_single_winner(database_url: str) -> None:
    async def run() -> list[MoveOutcome]:
        store = PostgresKeyValueStore(database_url, 2, 4, table=_table())
        try:
            await store.put("pending:1001", "[0]")
            outcomes = await asyncio.gather(
                store.move("pending:1001", "approved:1001", "[1]", expected="[0]"),
                store.move("pending:1001", "approved:1001", "[2]", expected="[0]"),
            )
            assert await store.get("pending:1001") is None
            assert await store.get("approved:1001") in {"[1]", "[2]"}
            return list(outcomes)
        finally:
            await _drop(store)

    outcomes = _run(run())
    assert sorted(outcome.value for outcome in outcomes) == ["moved", "source_missing"]


def test_put_unless_exists_racing_move_keeps_one_key(database_url: str) -> None:
    async def run() -> tuple[list[Any], list[str]]:
        store = PostgresKeyValueStore(database_url, 2, 4, table=_table())
        try:
            await store.put("pending:1001", "[0]")
            guards = ["approved:1001", "approved:pickup:1001"]
            results = await asyncio.gather(
                store.move("pending:1001", "approved:1001", "[1]", expected="[0]"),
                store.put_unless_exists("pending:1001", "[2]", guards=guards),
            )
            assert await store.put_unless_exists("pending:2002", "[3]", guards=["approved:2002"]) is True
            page = await store.list_keys("", limit=10)
            return list(results), page.keys
        finally:
            await _drop(store)

    (moved, written), keys = _run(run())
    if moved is MoveOutcome.MOVED:
        assert written is False
        assert keys == ["approved:1001", "pending:2002"]
    else:
        assert moved is MoveOutcome.SOURCE_CHANGED
        assert written is True
        assert keys == ["pending:1001", "pending:2002"]
