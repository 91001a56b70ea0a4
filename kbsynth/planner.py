"""
Adaptive chunk planner.

Token cost is only discoverable by asking the service, so the plan is found by
iterative refinement: split, price every batch, and either accept the split or
raise the batch count and try again.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Sequence

from .batch import Batch, BatchProcessor
from .config import GEMINI_TOKEN_LIMIT
from .exceptions import PlanningError
from .llm_client import GenerationClient
from .models import Record

logger = logging.getLogger(__name__)


class PlanState(str, Enum):
    PLANNING = "planning"
    VALIDATING = "validating"
    ACCEPTED = "accepted"
    REPLANNING = "replanning"


@dataclass
class ChunkPlan:
    """Full partition of the input records into validated batches."""

    batches: List[Batch] = field(default_factory=list)
    batch_count: int = 0
    iterations: int = 0

    @property
    def record_ids(self) -> List[str]:
        return [record_id for batch in self.batches for record_id in batch.record_ids]


@dataclass
class _Verdict:
    costs: List[Optional[int]]
    errors: List[Optional[BaseException]]

    @property
    def valid(self) -> bool:
        return not any(self.errors)


def initial_batch_count_for(total_tokens: Optional[int], token_limit: int) -> int:
    """
    Seed batch count from a single whole-set estimate.

    Args:
        total_tokens: Estimated cost of every record in one request, None if unknown
        token_limit: Hard per-request limit

    Returns:
        1 when the whole set fits or the estimate is unknown, otherwise ceil(total / limit)
    """
    if not total_tokens or total_tokens <= token_limit:
        return 1
    return math.ceil(total_tokens / token_limit)


class ChunkPlanner:
    """
    Plans batches whose oracle-estimated cost stays under the hard limit.

    Every iteration re-prices every batch, including ones that passed before,
    since a new batch count shifts all slice boundaries.
    """

    def __init__(
        self,
        oracle: GenerationClient,
        token_limit: int = GEMINI_TOKEN_LIMIT,
        max_concurrency: Optional[int] = None,
        batch_processor: Optional[BatchProcessor] = None,
    ):
        """
        Initialize the planner.

        Args:
            oracle: Client whose ``estimate_cost`` prices a batch
            token_limit: Hard per-request token limit
            max_concurrency: Bound on concurrent oracle calls per iteration (None = unbounded)
            batch_processor: Splitter used to build candidate batches
        """
        self.oracle = oracle
        self.token_limit = token_limit
        self.max_concurrency = max_concurrency
        self.batch_processor = batch_processor or BatchProcessor()

    async def plan(
        self,
        records: Sequence[Record],
        shared_context: Optional[Any] = None,
        initial_batch_count: int = 1,
    ) -> ChunkPlan:
        """
        Partition records into batches that each fit the token limit.

        Args:
            records: Records to plan, in order
            shared_context: Payload attached to every batch (e.g. existing documentation)
            initial_batch_count: Starting batch count, pre-seeded when a whole-set estimate exists

        Returns:
            Accepted ChunkPlan

        Raises:
            PlanningError: A single record exceeds the limit, or the oracle keeps
                failing once batches cannot be split any further
        """
        records = list(records)
        if not records:
            return ChunkPlan()

        batch_count = min(max(1, initial_batch_count), len(records))
        state = PlanState.PLANNING
        iterations = 0
        batches: List[Batch] = []

        while state is not PlanState.ACCEPTED:
            if state is PlanState.PLANNING:
                iterations += 1
                logger.info(f"Attempting to split {len(records)} records into {batch_count} batch(es)...")
                batches = self.batch_processor.create_batches(records, batch_count, shared_context)
                state = PlanState.VALIDATING

            elif state is PlanState.VALIDATING:
                verdict = await self._validate(batches)
                if verdict.valid:
                    for batch, cost in zip(batches, verdict.costs):
                        batch.estimated_tokens = cost
                    state = PlanState.ACCEPTED
                else:
                    increment = self._next_increment(batches, verdict)
                    batch_count = min(len(records), batch_count + increment)
                    state = PlanState.REPLANNING

            elif state is PlanState.REPLANNING:
                state = PlanState.PLANNING

        logger.info(
            f"Split {len(records)} records into {len(batches)} batches after "
            f"{iterations} iteration(s). All within the {self.token_limit} token limit."
        )
        return ChunkPlan(batches=batches, batch_count=len(batches), iterations=iterations)

    async def _validate(self, batches: List[Batch]) -> _Verdict:
        semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None

        async def price(batch: Batch) -> int:
            if semaphore is None:
                return await self.oracle.estimate_cost(batch)
            async with semaphore:
                return await self.oracle.estimate_cost(batch)

        results = await asyncio.gather(*(price(batch) for batch in batches), return_exceptions=True)

        costs: List[Optional[int]] = []
        errors: List[Optional[BaseException]] = []
        for batch, result in zip(batches, results):
            if isinstance(result, BaseException):
                logger.error(f"Error counting tokens for batch {batch.index}: {result}")
                costs.append(None)
                errors.append(result)
            elif result > self.token_limit:
                logger.info(
                    f"Batch {batch.index} is still too large, token count: {result} "
                    f"(Limit: {self.token_limit})"
                )
                costs.append(result)
                errors.append(PlanningError(f"Batch {batch.index} over limit"))
            else:
                costs.append(result)
                errors.append(None)

        return _Verdict(costs=costs, errors=errors)

    def _next_increment(self, batches: List[Batch], verdict: _Verdict) -> int:
        """How many batches to add after a failed validation."""
        oversized = [
            (batch, cost)
            for batch, cost in zip(batches, verdict.costs)
            if cost is not None and cost > self.token_limit
        ]

        for batch, cost in oversized:
            if len(batch) == 1:
                raise PlanningError(
                    f"Record {batch.records[0].id} alone costs {cost} tokens, "
                    f"over the {self.token_limit} token limit",
                    {"record_id": batch.records[0].id, "tokens": cost},
                )

        if max(len(batch) for batch in batches) == 1:
            failed = [batch.records[0].id for batch, error in zip(batches, verdict.errors) if error]
            raise PlanningError(
                "Token oracle failed for single-record batches",
                {"record_ids": failed},
            )

        if not oversized:
            return 1

        max_cost = max(cost for _, cost in oversized)
        overflow_factor = math.ceil(max_cost / self.token_limit)
        return max(1, overflow_factor)
