import asyncio

import pytest

from polycodex.core.cancellation import AbortedError, AbortSignal


@pytest.mark.asyncio
async def test_race_returns_result_when_work_wins() -> None:
    signal = AbortSignal()

    async def work() -> int:
        return 42

    assert await signal.race(work()) == 42
    assert not signal.aborted


@pytest.mark.asyncio
async def test_race_cancels_work_on_abort() -> None:
    signal = AbortSignal()
    cancelled = asyncio.Event()

    async def slow() -> None:
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    task = asyncio.create_task(signal.race(slow()))
    await asyncio.sleep(0.01)
    signal.abort("user")

    with pytest.raises(AbortedError):
        await task
    assert cancelled.is_set()
    assert signal.reason == "user"


@pytest.mark.asyncio
async def test_race_on_aborted_signal_raises_immediately() -> None:
    signal = AbortSignal()
    signal.abort()

    async def work() -> int:
        return 1

    with pytest.raises(AbortedError):
        await signal.race(work())


@pytest.mark.asyncio
async def test_work_errors_propagate() -> None:
    signal = AbortSignal()

    async def broken() -> None:
        raise KeyError("x")

    with pytest.raises(KeyError):
        await signal.race(broken())
