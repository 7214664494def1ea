"""
Batch execution helpers: isolation, timeouts, single-flight, store retry.
"""
import asyncio

import pytest

from paddock.exceptions import PartialAggregationFailure, PersistenceError
from paddock.services.batch import BatchReport, SingleFlight, run_isolated, with_persistence_retry


class TestRunIsolated:

    @pytest.mark.asyncio
    async def test_failure_does_not_abort_batch(self):
        async def handler(item):
            if item == 2:
                raise RuntimeError("boom")
            return True

        report = await run_isolated("job", [1, 2, 3], key=lambda i: i, handler=handler)

        assert report.succeeded == [1, 3]
        assert report.failed == [2]
        assert report.partial is True

    @pytest.mark.asyncio
    async def test_slow_item_times_out_and_is_skipped(self):
        async def handler(item):
            if item == "slow":
                await asyncio.sleep(5)
            return True

        report = await run_isolated(
            "job", ["fast", "slow", "last"], key=lambda i: i, handler=handler, timeout_seconds=0.05
        )

        assert report.succeeded == ["fast", "last"]
        assert report.failed == ["slow"]

    @pytest.mark.asyncio
    async def test_false_result_counts_as_skipped(self):
        async def handler(item):
            return item != "done"

        report = await run_isolated("job", ["done", "todo"], key=lambda i: i, handler=handler)

        assert report.skipped == ["done"]
        assert report.succeeded == ["todo"]
        assert report.partial is False

    def test_raise_for_failures(self):
        BatchReport(job="job", succeeded=[1]).raise_for_failures()

        with pytest.raises(PartialAggregationFailure) as exc_info:
            BatchReport(job="job", succeeded=[1], failed=[7, 9]).raise_for_failures()

        assert exc_info.value.failed_ids == [7, 9]
        assert exc_info.value.status_code == 207
        assert exc_info.value.to_dict()["details"] == {"failed_ids": [7, 9]}


class TestPersistenceRetry:

    @pytest.mark.asyncio
    async def test_retries_until_store_answers(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise PersistenceError("database is locked")
            return "ok"

        assert await with_persistence_retry(flaky, attempts=3, delay_seconds=0) == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_surfaces_error_when_exhausted(self):
        async def down():
            raise PersistenceError("unavailable")

        with pytest.raises(PersistenceError):
            await with_persistence_retry(down, attempts=2, delay_seconds=0)

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        calls = []

        async def broken():
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await with_persistence_retry(broken, attempts=3, delay_seconds=0)
        assert len(calls) == 1


class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_execution(self):
        flight = SingleFlight()
        runs = []
        gate = asyncio.Event()

        async def job():
            runs.append(1)
            await gate.wait()
            return len(runs)

        first = asyncio.create_task(flight.run("k", job))
        second = asyncio.create_task(flight.run("k", job))
        await asyncio.sleep(0)
        assert flight.is_running("k")

        gate.set()
        assert await first == await second == 1
        assert runs == [1]
        assert not flight.is_running("k")

    @pytest.mark.asyncio
    async def test_new_run_after_completion(self):
        flight = SingleFlight()
        counter = {"n": 0}

        async def job():
            counter["n"] += 1
            return counter["n"]

        assert await flight.run("k", job) == 1
        assert await flight.run("k", job) == 2

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_job(self):
        flight = SingleFlight()
        gate = asyncio.Event()

        async def job():
            await gate.wait()
            return "finished"

        waiter = asyncio.create_task(flight.run("k", job))
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert flight.is_running("k")
        gate.set()
        assert await flight.run("k", job) == "finished"
