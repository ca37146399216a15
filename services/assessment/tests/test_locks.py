import asyncio

import pytest

from packages.common.locks import KeyedLocks


@pytest.mark.asyncio
async def test_same_key_is_serialized_and_forgotten():
    locks = KeyedLocks()
    order = []

    async def worker(name):
        async with locks.hold("a1"):
            order.append(f"{name}-in")
            await asyncio.sleep(0)
            order.append(f"{name}-out")

    await asyncio.gather(worker("x"), worker("y"))
    assert order == ["x-in", "x-out", "y-in", "y-out"]
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_entry_dropped_after_error():
    locks = KeyedLocks()
    with pytest.raises(RuntimeError):
        async with locks.hold(("u1", "a1")):
            raise RuntimeError("boom")
    assert len(locks) == 0
