import asyncio

import pytest

from src.cache.inflight import InflightRequests


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_request():
    inflight = InflightRequests()
    gate = asyncio.Event()
    calls = 0

    async def fetch():
        nonlocal calls
        calls += 1
        await gate.wait()
        return "value"

    first = asyncio.create_task(inflight.run(("k",), fetch))
    second = asyncio.create_task(inflight.run(("k",), fetch))
    await asyncio.sleep(0)
    assert inflight.pending(("k",))

    gate.set()
    assert await asyncio.gather(first, second) == ["value", "value"]
    assert calls == 1
    assert not inflight.pending(("k",))


@pytest.mark.asyncio
async def test_failure_reaches_every_waiter_and_is_not_kept():
    inflight = InflightRequests()
    calls = 0

    async def fetch():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0)
        raise RuntimeError("boom")

    results = await asyncio.gather(
        inflight.run(("k",), fetch),
        inflight.run(("k",), fetch),
        return_exceptions=True,
    )
    assert calls == 1
    assert all(isinstance(result, RuntimeError) for result in results)

    with pytest.raises(RuntimeError):
        await inflight.run(("k",), fetch)
    assert calls == 2


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_shared_request():
    inflight = InflightRequests()
    gate = asyncio.Event()

    async def fetch():
        await gate.wait()
        return 42

    impatient = asyncio.create_task(inflight.run(("k",), fetch))
    patient = asyncio.create_task(inflight.run(("k",), fetch))
    await asyncio.sleep(0)

    impatient.cancel()
    await asyncio.sleep(0)
    gate.set()

    assert await patient == 42
    assert impatient.cancelled()


@pytest.mark.asyncio
async def test_different_keys_run_independently():
    inflight = InflightRequests()

    async def fetch(value):
        await asyncio.sleep(0)
        return value

    a, b = await asyncio.gather(
        inflight.run(("a",), lambda: fetch(1)),
        inflight.run(("b",), lambda: fetch(2)),
    )
    assert (a, b) == (1, 2)


@pytest.mark.asyncio
async def test_finished_request_awaiting_release_is_not_joined():
    inflight = InflightRequests()
    finished = asyncio.get_running_loop().create_future()
    finished.set_exception(RuntimeError("old failure"))
    finished.exception()
    # Done, but its release callback has not run yet.
    inflight._pending[("k",)] = finished

    async def fetch():
        return "fresh"

    assert await inflight.run(("k",), fetch) == "fresh"
    assert not inflight.pending(("k",))
