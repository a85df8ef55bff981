"""Tests for mileage_guard.locks."""

from __future__ import annotations

import asyncio
from typing import List

import pytest

from mileage_guard.errors import ConcurrencyConflictError
from mileage_guard.locks import KeyedLocks, retry_on_conflict


@pytest.mark.asyncio
async def test_hold_serialises_same_key() -> None:
    locks = KeyedLocks()
    order: List[str] = []

    async def worker(name: str) -> None:
        async with locks.hold("device-1"):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))
    assert order == ["a-in", "a-out", "b-in", "b-out"]


@pytest.mark.asyncio
async def test_different_keys_run_concurrently() -> None:
    locks = KeyedLocks()
    inside = asyncio.Event()
    release = asyncio.Event()

    async def holder() -> None:
        async with locks.hold("a"):
            inside.set()
            await release.wait()

    task = asyncio.create_task(holder())
    await inside.wait()
    async with locks.hold("b"):
        assert locks.is_locked("a")
        assert locks.is_locked("b")
    release.set()
    await task


@pytest.mark.asyncio
async def test_try_hold_skips_when_busy() -> None:
    locks = KeyedLocks()
    async with locks.hold("batch-1"):
        async with locks.try_hold("batch-1") as acquired:
            assert acquired is False
    async with locks.try_hold("batch-1") as acquired:
        assert acquired is True
        assert locks.is_locked("batch-1")


@pytest.mark.asyncio
async def test_table_shrinks_after_release() -> None:
    locks = KeyedLocks()
    async with locks.hold("x"):
        async with locks.try_hold("y"):
            assert len(locks) == 2
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_release_on_exception() -> None:
    locks = KeyedLocks()
    with pytest.raises(RuntimeError):
        async with locks.hold("x"):
            raise RuntimeError("boom")
    assert len(locks) == 0
    assert not locks.is_locked("x")


def test_retry_on_conflict_retries_then_succeeds() -> None:
    calls = {"n": 0}

    def op() -> str:
        calls["n"] += 1
        if calls["n"] < 3:
            raise ConcurrencyConflictError("lost race")
        return "ok"

    assert retry_on_conflict(op) == "ok"
    assert calls["n"] == 3


def test_retry_on_conflict_gives_up() -> None:
    calls = {"n": 0}

    def op() -> None:
        calls["n"] += 1
        raise ConcurrencyConflictError("lost race")

    with pytest.raises(ConcurrencyConflictError):
        retry_on_conflict(op, attempts=4)
    assert calls["n"] == 4


def test_retry_on_conflict_passes_other_errors() -> None:
    def op() -> None:
        raise ValueError("not a conflict")

    with pytest.raises(ValueError):
        retry_on_conflict(op)
