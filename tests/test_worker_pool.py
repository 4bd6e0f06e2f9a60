import asyncio

import pytest

from mirror_engine import WorkerPool


def test_results_keep_job_order():
    async def job(value):
        await asyncio.sleep(0.001 * (5 - value))
        return value * 10

    jobs = [lambda value=value: job(value) for value in range(5)]

    assert asyncio.run(WorkerPool(3).run("ordered", jobs)) == [0, 10, 20, 30, 40]


def test_in_flight_jobs_are_bounded():
    in_flight = 0
    peak = 0

    async def job():
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        in_flight -= 1

    asyncio.run(WorkerPool(2).run("bounded", [job] * 10))

    assert peak == 2


def test_empty_phase():
    assert asyncio.run(WorkerPool(4).run("empty", [])) == []


def test_failure_aborts_phase_and_cancels_remaining():
    started = []

    async def ok(index):
        started.append(index)
        await asyncio.sleep(0.01)

    async def boom():
        raise RuntimeError("sub-resource failed")

    jobs = [boom] + [lambda index=index: ok(index) for index in range(20)]

    with pytest.raises(RuntimeError, match="sub-resource failed"):
        asyncio.run(WorkerPool(2).run("failing", jobs))

    assert len(started) < 20
