"""
Request executor: runs batches against the generation service with bounded
retries and bounded concurrency.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

from tqdm import tqdm

from .batch import Batch
from .config import INITIAL_RETRY_DELAY, MAX_ATTEMPTS, MAX_CONCURRENCY
from .exceptions import (
    BatchExecutionError,
    PipelineTimeoutError,
    RateLimitError,
)
from .llm_client import GenerationClient
from .models import AttemptOutcome, CallAttempt, GenerationResult
from .rate_limit import RateBudget
from .retry import SleepFn, build_retrying

logger = logging.getLogger(__name__)


class RequestExecutor:
    """
    Executes batches with server-directed backoff.

    Rate limits are retried up to ``max_attempts`` times. Any other failure,
    or running out of attempts, raises ``BatchExecutionError``: a missing
    batch would silently shrink the output, so the run must stop.
    """

    def __init__(
        self,
        client: GenerationClient,
        max_attempts: int = MAX_ATTEMPTS,
        initial_delay: float = INITIAL_RETRY_DELAY,
        max_concurrency: int = MAX_CONCURRENCY,
        rate_budget: Optional[RateBudget] = None,
        sleep: Optional[SleepFn] = None,
        show_progress: bool = False,
    ):
        """
        Initialize the executor.

        Args:
            client: Generation service client
            max_attempts: Attempts per batch, counted separately for every batch
            initial_delay: Base backoff delay in seconds when the server gives no hint
            max_concurrency: Maximum in-flight batch requests
            rate_budget: Budget gate awaited before every submission
            sleep: Coroutine used for backoff sleeps
            show_progress: Display a tqdm progress bar over batches
        """
        self.client = client
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_concurrency = max(1, max_concurrency)
        self.rate_budget = rate_budget or RateBudget()
        self.sleep = sleep
        self.show_progress = show_progress

    async def execute(self, batch: Batch) -> GenerationResult:
        """
        Generate content for one batch.

        Args:
            batch: Batch to send

        Returns:
            GenerationResult with the raw text of the first successful attempt

        Raises:
            BatchExecutionError: On a non-rate-limit failure or exhausted attempts
        """
        attempts: List[CallAttempt] = []
        retrying = build_retrying(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            label=f"batch {batch.index}",
            sleep=self.sleep,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    number = attempt.retry_state.attempt_number
                    logger.info(f"Making API call for batch {batch.index} (attempt {number})...")
                    await self.rate_budget.acquire(batch.estimated_tokens or 0)
                    try:
                        raw_text = await self.client.generate(batch)
                    except RateLimitError as e:
                        attempts.append(
                            CallAttempt(number, batch.index, AttemptOutcome.RATE_LIMITED, e.retry_delay, str(e))
                        )
                        raise
                    except Exception as e:
                        attempts.append(CallAttempt(number, batch.index, AttemptOutcome.FAILED, error=str(e)))
                        raise
                    attempts.append(CallAttempt(number, batch.index, AttemptOutcome.SUCCESS))
        except RateLimitError as e:
            raise BatchExecutionError(
                f"Failed to generate content for batch {batch.index} after {len(attempts)} attempts: {e}",
                batch_index=batch.index,
                record_ids=batch.record_ids,
                attempts=len(attempts),
            ) from e
        except Exception as e:
            logger.error(f"Error for batch {batch.index}: {e}")
            raise BatchExecutionError(
                f"Generation failed for batch {batch.index}: {e}",
                batch_index=batch.index,
                record_ids=batch.record_ids,
                attempts=len(attempts),
            ) from e

        return GenerationResult(batch=batch, raw_text=raw_text, attempts=attempts)

    async def execute_all(
        self,
        batches: Sequence[Batch],
        timeout: Optional[float] = None,
    ) -> List[GenerationResult]:
        """
        Execute every batch with at most ``max_concurrency`` in flight.

        Results are returned in completion order, which is not guaranteed to
        match batch order. The first fatal error cancels all in-flight
        siblings and is re-raised.

        Args:
            batches: Batches to execute
            timeout: Overall deadline in seconds, None for no deadline

        Raises:
            BatchExecutionError: First batch that failed
            PipelineTimeoutError: The deadline elapsed before every batch finished
        """
        if not batches:
            return []

        try:
            return await asyncio.wait_for(self._run_all(batches), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise PipelineTimeoutError(
                f"Generation did not finish within {timeout}s",
                {"batches": len(batches)},
            ) from e

    async def _run_all(self, batches: Sequence[Batch]) -> List[GenerationResult]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(batch: Batch) -> GenerationResult:
            async with semaphore:
                return await self.execute(batch)

        tasks = [asyncio.create_task(run(batch)) for batch in batches]
        results: List[GenerationResult] = []
        progress = tqdm(total=len(tasks), desc="Generating batches", disable=not self.show_progress)

        try:
            pending = set(tasks)
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_EXCEPTION)
                for task in done:
                    error = task.exception()
                    if error is not None:
                        raise error
                    results.append(task.result())
                    progress.update(1)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            progress.close()

        return results
