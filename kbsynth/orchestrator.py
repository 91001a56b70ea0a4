"""
Pipeline orchestration: records → plan → generation → repair → dedup → sink.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .batch import Batch
from .config import PipelineConfig
from .dedup import DedupEngine, FailedArtifact, MergedArtifact
from .embedder import Embedder
from .exceptions import PipelineTimeoutError
from .executor import RequestExecutor
from .llm_client import GenerationClient
from .models import Artifact, BatchFailure, Record
from .planner import ChunkPlan, ChunkPlanner, initial_batch_count_for
from .processors import ARTICLE_SCHEMA, ArtifactSchema, ResultProcessor
from .rate_limit import RateBudget
from .retry import SleepFn
from .sinks import PersistenceSink
from .storage import VectorStore

logger = logging.getLogger(__name__)

RecordSource = Union[Iterable[Record], AsyncIterable[Record]]


@dataclass
class PipelineResult:
    """Everything a run produced, including what went wrong."""

    artifacts: List[Artifact] = field(default_factory=list)
    merged: List[MergedArtifact] = field(default_factory=list)
    failures: List[BatchFailure] = field(default_factory=list)
    dedup_failures: List[FailedArtifact] = field(default_factory=list)
    plan: ChunkPlan = field(default_factory=ChunkPlan)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "total_batches": len(self.plan.batches),
            "planning_iterations": self.plan.iterations,
            "new_artifacts": [artifact.to_dict() for artifact in self.artifacts],
            "merged": [
                {
                    "title": merged.artifact.title,
                    "source_ids": merged.artifact.source_ids,
                    "entry_id": merged.entry_id,
                    "into": merged.into.title if merged.into else None,
                    "distance": merged.distance,
                }
                for merged in self.merged
            ],
            "failed_batches": [
                {"batch_index": failure.batch_index, "record_ids": failure.record_ids, "error": failure.error}
                for failure in self.failures
            ],
            "failed_artifacts": [
                {"title": failed.artifact.title, "source_ids": failed.artifact.source_ids, "error": failed.error}
                for failed in self.dedup_failures
            ],
        }


async def collect_records(source: RecordSource) -> List[Record]:
    """Materialize a list or async iterable of records."""
    if hasattr(source, "__aiter__"):
        return [record async for record in source]
    return list(source)


class KnowledgeBasePipeline:
    """
    Main pipeline class.

    This class orchestrates the entire process:
    1. Plans batches under the token limit
    2. Executes batches with retries and a shared rate budget
    3. Repairs results and merges record metadata
    4. Deduplicates artifacts against the corpus
    5. Hands new artifacts to the persistence sink
    """

    def __init__(
        self,
        client: GenerationClient,
        embedder: Optional[Embedder] = None,
        store: Optional[VectorStore] = None,
        config: Optional[PipelineConfig] = None,
        schema: ArtifactSchema = ARTICLE_SCHEMA,
        sinks: Optional[Sequence[PersistenceSink]] = None,
        seed_from_estimate: bool = True,
        sleep: Optional[SleepFn] = None,
        show_progress: bool = False,
    ):
        """
        Initialize the pipeline with its collaborators.

        Args:
            client: Generation service client, also used as the token oracle
            embedder: Embedding provider; dedup is skipped without one
            store: Corpus vector store; dedup is skipped without one
            config: Run settings, defaults to values from the environment
            schema: Field layout of the artifacts the model returns
            sinks: Receive the final new artifacts, in order
            seed_from_estimate: Seed the planner with one whole-set token estimate
            sleep: Coroutine used for backoff sleeps
            show_progress: Display progress bars
        """
        self.config = config or PipelineConfig()
        self.client = client
        self.sinks = list(sinks or [])
        self.seed_from_estimate = seed_from_estimate

        self.planner = ChunkPlanner(
            oracle=client,
            token_limit=self.config.token_limit,
            max_concurrency=self.config.max_concurrency,
        )
        self.executor = RequestExecutor(
            client=client,
            max_attempts=self.config.max_attempts,
            initial_delay=self.config.initial_delay,
            max_concurrency=self.config.max_concurrency,
            rate_budget=RateBudget(
                requests_per_minute=self.config.requests_per_minute,
                tokens_per_minute=self.config.tokens_per_minute,
            ),
            sleep=sleep,
            show_progress=show_progress,
        )
        self.processor = ResultProcessor(schema)

        self.dedup = None
        if embedder is not None and store is not None:
            self.dedup = DedupEngine(
                embedder=embedder,
                store=store,
                threshold=self.config.similarity_threshold,
                dual_embeddings=self.config.dual_embeddings,
                max_attempts=self.config.max_attempts,
                initial_delay=self.config.initial_delay,
                max_concurrency=max(self.config.max_concurrency, 5),
                sleep=sleep,
            )

    async def plan(self, records: Sequence[Record], shared_context: Optional[Any] = None) -> ChunkPlan:
        """Plan batches, seeding the batch count from a whole-set estimate when enabled."""
        if not records:
            return ChunkPlan()

        initial_batch_count = 1
        if self.seed_from_estimate:
            try:
                whole = Batch(records=tuple(records), shared_context=shared_context)
                total_tokens = await self.client.estimate_cost(whole)
                logger.info(f"Token count for all {len(records)} records: {total_tokens}")
                initial_batch_count = initial_batch_count_for(total_tokens, self.config.token_limit)
            except Exception as e:
                logger.warning(f"Whole-set token estimate failed, starting from 1 batch: {e}")

        return await self.planner.plan(records, shared_context, initial_batch_count)

    async def generate(
        self,
        records: Sequence[Record],
        shared_context: Optional[Any] = None,
    ) -> Tuple[List[Artifact], List[BatchFailure], ChunkPlan]:
        """
        Run planning, generation and repair.

        Returns:
            Flattened artifacts (order across batches not guaranteed), per-batch
            parse failures, and the plan that was executed

        Raises:
            PlanningError: No valid plan exists
            BatchExecutionError: A batch could not be generated
            ResultParseError: No batch produced parseable output
        """
        plan = await self.plan(records, shared_context)
        if not plan.batches:
            return [], [], plan

        results = await self.executor.execute_all(plan.batches)
        processed = self.processor.process_all(results)
        for failure in processed.failures:
            logger.error(f"Batch {failure.batch_index} failed to parse; record ids: {failure.record_ids}")

        return processed.artifacts, processed.failures, plan

    async def run(
        self,
        records: RecordSource,
        shared_context: Optional[Any] = None,
        timeout: Optional[float] = None,
    ) -> PipelineResult:
        """
        Run the full pipeline.

        Args:
            records: List or async iterable of records
            shared_context: Payload attached to every batch (e.g. existing documentation)
            timeout: Overall deadline in seconds, defaults to the config's timeout

        Raises:
            PipelineTimeoutError: The deadline elapsed, even mid-retry
        """
        timeout = timeout if timeout is not None else self.config.timeout
        try:
            return await asyncio.wait_for(self._run(records, shared_context), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise PipelineTimeoutError(f"Pipeline did not finish within {timeout}s") from e

    async def _run(self, records: RecordSource, shared_context: Optional[Any]) -> PipelineResult:
        records = await collect_records(records)
        logger.info(f"Starting pipeline for {len(records)} records")

        artifacts, failures, plan = await self.generate(records, shared_context)
        result = PipelineResult(artifacts=artifacts, failures=failures, plan=plan)

        if self.dedup is not None and artifacts:
            report = await self.dedup.deduplicate_with_report(artifacts)
            result.artifacts = report.new
            result.merged = report.merged
            result.dedup_failures = report.failed

        for sink in self.sinks:
            await sink.persist(result.artifacts)

        logger.info(
            f"Processing complete. {len(result.artifacts)} new artifacts, "
            f"{len(result.merged)} merged, {len(result.failures)} failed batches"
        )
        return result

    async def tag_records(self, records: RecordSource, timeout: Optional[float] = None) -> List[Record]:
        """
        Categorize records and return them with the model's fields in their metadata.

        Intended for a pipeline built with ``TAG_SCHEMA``. Records the model did
        not tag are returned unchanged.
        """
        timeout = timeout if timeout is not None else self.config.timeout
        records = await collect_records(records)
        try:
            artifacts, _, _ = await asyncio.wait_for(self.generate(records), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise PipelineTimeoutError(f"Tagging did not finish within {timeout}s") from e
        return apply_tags(records, artifacts)


def apply_tags(records: Sequence[Record], artifacts: Sequence[Artifact]) -> List[Record]:
    """Copy each artifact's string fields into the metadata of its source records."""
    tags: Dict[str, Dict[str, str]] = {}
    for artifact in artifacts:
        values = {key: str(value) for key, value in artifact.fields.items() if value is not None}
        for source_id in artifact.source_ids:
            tags.setdefault(source_id, {}).update(values)

    return [
        Record(id=record.id, content=record.content, metadata={**dict(record.metadata), **tags[record.id]})
        if record.id in tags
        else record
        for record in records
    ]
