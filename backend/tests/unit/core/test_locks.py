# backend/tests/unit/core/test_locks.py
import asyncio

import pytest

from authguard.core.locks import KeyedLock


@pytest.mark.asyncio
async def test_same_key_is_serialized():
    locks = KeyedLock()
    active = 0
    peak = 0

    async def worker():
        nonlocal active, peak
        async with locks.acquire("10.0.0.1"):
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

    await asyncio.gather(*(worker() for _ in range(5)))
    assert peak == 1


@pytest.mark.asyncio
async def test_different_keys_do_not_block_each_other():
    locks = KeyedLock()
    entered = asyncio.Event()

    async def holder():
        async with locks.acquire("a"):
            await asyncio.wait_for(entered.wait(), timeout=1)

    async def other():
        async with locks.acquire("b"):
            entered.set()

    await asyncio.gather(holder(), other())


@pytest.mark.asyncio
async def test_locks_are_released_after_use():
    locks = KeyedLock()
    async with locks.acquire("k"):
        assert len(locks) == 1
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_lock_released_on_error():
    locks = KeyedLock()
    with pytest.raises(RuntimeError):
        async with locks.acquire("k"):
            raise RuntimeError("boom")
    assert len(locks) == 0
