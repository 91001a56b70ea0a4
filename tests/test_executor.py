"""
Test suite for the request executor and the rate budget.
"""

import asyncio
import sys
import unittest
from pathlib import Path

import pytest

# Add the project root to the Python path
sys.path.append(str(Path(__file__).parent.parent))

from kbsynth.batch import Batch
from kbsynth.exceptions import (
    BatchExecutionError,
    GenerationError,
    PipelineTimeoutError,
    RateLimitError,
)
from kbsynth.executor import RequestExecutor
from kbsynth.models import AttemptOutcome, Record
from kbsynth.rate_limit import RateBudget


def make_batch(index=0, count=2):
    records = tuple(Record(id=f"{index}-{i}", content="text") for i in range(count))
    return Batch(records=records, index=index)


class ScriptedClient:
    """Replays a script of results and exceptions for every generate call."""

    def __init__(self, script):
        self.script = list(script)
        self.calls = 0

    async def estimate_cost(self, batch):
        return 10

    async def generate(self, batch):
        self.calls += 1
        outcome = self.script.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class TestRequestExecutor(unittest.IsolatedAsyncioTestCase):
    """Tests for retry behaviour of a single batch."""

    async def test_server_suggested_delay(self):
        """A 30s server hint is honoured exactly, then attempt 2 succeeds."""
        client = ScriptedClient([RateLimitError("quota", retry_delay=30.0), '[{"id": "0-0"}]'])
        sleep = RecordingSleep()
        executor = RequestExecutor(client, max_attempts=5, initial_delay=1.0, sleep=sleep)

        result = await executor.execute(make_batch())

        self.assertEqual(sleep.delays, [30.0])
        self.assertEqual(client.calls, 2)
        self.assertEqual(result.raw_text, '[{"id": "0-0"}]')
        self.assertEqual(
            [attempt.outcome for attempt in result.attempts],
            [AttemptOutcome.RATE_LIMITED, AttemptOutcome.SUCCESS],
        )
        self.assertEqual(result.attempts[0].delay, 30.0)

    async def test_exponential_backoff_without_hint(self):
        client = ScriptedClient([RateLimitError("quota")] * 3 + ["[]"])
        sleep = RecordingSleep()
        executor = RequestExecutor(client, max_attempts=5, initial_delay=1.0, sleep=sleep)

        await executor.execute(make_batch())

        self.assertEqual(sleep.delays, [1.0, 2.0, 4.0])
        self.assertEqual(client.calls, 4)

    async def test_attempts_exhausted(self):
        client = ScriptedClient([RateLimitError("quota")] * 3)
        sleep = RecordingSleep()
        executor = RequestExecutor(client, max_attempts=3, initial_delay=0.5, sleep=sleep)

        with pytest.raises(BatchExecutionError) as excinfo:
            await executor.execute(make_batch(index=4))

        self.assertEqual(client.calls, 3)
        self.assertEqual(sleep.delays, [0.5, 1.0])
        self.assertEqual(excinfo.value.batch_index, 4)
        self.assertEqual(excinfo.value.attempts, 3)
        self.assertEqual(excinfo.value.record_ids, ["4-0", "4-1"])

    async def test_non_rate_limit_error_is_not_retried(self):
        client = ScriptedClient([GenerationError("bad request", status=400), "[]"])
        sleep = RecordingSleep()
        executor = RequestExecutor(client, max_attempts=5, sleep=sleep)

        with pytest.raises(BatchExecutionError) as excinfo:
            await executor.execute(make_batch())

        self.assertEqual(client.calls, 1)
        self.assertEqual(sleep.delays, [])
        self.assertIsInstance(excinfo.value.__cause__, GenerationError)

    async def test_retry_state_is_per_batch(self):
        """Each batch gets its own attempt budget."""
        client = ScriptedClient([RateLimitError("quota"), "[]", RateLimitError("quota"), "[]"])
        executor = RequestExecutor(client, max_attempts=2, sleep=RecordingSleep())

        first = await executor.execute(make_batch(index=0))
        second = await executor.execute(make_batch(index=1))

        self.assertEqual(len(first.attempts), 2)
        self.assertEqual(len(second.attempts), 2)


class SlowClient:
    """Fails batch 0 after a short pause; every other batch waits for a long time."""

    def __init__(self):
        self.cancelled = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def estimate_cost(self, batch):
        return 10

    async def generate(self, batch):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if batch.index == 0:
                await asyncio.sleep(0.01)
                raise GenerationError("server error", status=500)
            await asyncio.sleep(10)
            return "[]"
        except asyncio.CancelledError:
            self.cancelled.append(batch.index)
            raise
        finally:
            self.in_flight -= 1


class CountingClient:
    def __init__(self):
        self.in_flight = 0
        self.max_in_flight = 0

    async def estimate_cost(self, batch):
        return 10

    async def generate(self, batch):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0.01)
        self.in_flight -= 1
        return f'[{{"id": "{batch.index}"}}]'


class TestExecuteAll(unittest.IsolatedAsyncioTestCase):
    """Tests for concurrent execution of a whole plan."""

    async def test_all_batches_complete(self):
        client = CountingClient()
        executor = RequestExecutor(client, max_concurrency=2)

        results = await executor.execute_all([make_batch(index=i) for i in range(5)])

        self.assertEqual(sorted(result.batch.index for result in results), [0, 1, 2, 3, 4])
        self.assertLessEqual(client.max_in_flight, 2)

    async def test_first_failure_cancels_siblings(self):
        client = SlowClient()
        executor = RequestExecutor(client, max_concurrency=3)

        with pytest.raises(BatchExecutionError) as excinfo:
            await executor.execute_all([make_batch(index=i) for i in range(3)])

        self.assertEqual(excinfo.value.batch_index, 0)
        self.assertEqual(sorted(client.cancelled), [1, 2])
        self.assertEqual(client.in_flight, 0)

    async def test_timeout(self):
        client = SlowClient()
        executor = RequestExecutor(client, max_concurrency=1)

        with pytest.raises(PipelineTimeoutError):
            await executor.execute_all([make_batch(index=1)], timeout=0.05)

        self.assertEqual(client.cancelled, [1])

    async def test_no_batches(self):
        executor = RequestExecutor(CountingClient())
        self.assertEqual(await executor.execute_all([]), [])


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    async def sleep(self, delay):
        self.now += delay


class TestRateBudget(unittest.IsolatedAsyncioTestCase):
    """Tests for the sliding-window rate budget."""

    async def test_unlimited(self):
        budget = RateBudget()
        self.assertTrue(budget.unlimited)
        self.assertEqual(await budget.acquire(10 ** 9), 0.0)

    async def test_requests_per_minute(self):
        clock = FakeClock()
        budget = RateBudget(requests_per_minute=2, clock=clock, sleep=clock.sleep)

        self.assertEqual(await budget.acquire(), 0.0)
        self.assertEqual(await budget.acquire(), 0.0)
        self.assertEqual(await budget.acquire(), 60.0)
        self.assertEqual(clock.now, 60.0)

    async def test_tokens_per_minute(self):
        clock = FakeClock()
        budget = RateBudget(tokens_per_minute=100, clock=clock, sleep=clock.sleep)

        await budget.acquire(80)
        clock.now = 15.0
        waited = await budget.acquire(50)

        self.assertEqual(waited, 45.0)
        self.assertEqual(budget.tokens_in_window(), 50)

    async def test_oversized_request_passes_on_empty_window(self):
        clock = FakeClock()
        budget = RateBudget(tokens_per_minute=100, clock=clock, sleep=clock.sleep)

        self.assertEqual(await budget.acquire(500), 0.0)

    async def test_executor_awaits_budget(self):
        clock = FakeClock()
        budget = RateBudget(requests_per_minute=1, clock=clock, sleep=clock.sleep)
        executor = RequestExecutor(ScriptedClient(["[]", "[]"]), rate_budget=budget)

        await executor.execute(make_batch(index=0))
        await executor.execute(make_batch(index=1))

        self.assertEqual(clock.now, 60.0)


if __name__ == "__main__":
    unittest.main()
