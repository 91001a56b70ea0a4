"""
Embedding-based deduplication of generated artifacts against the corpus.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, Type, TypeVar

import numpy as np

from .config import (
    INITIAL_RETRY_DELAY,
    MAX_ATTEMPTS,
    SIMILARITY_THRESHOLD,
)
from .embedder import RETRIEVAL_DOCUMENT, SEMANTIC_SIMILARITY, Embedder
from .exceptions import KBSynthError, ProvenanceAppendError, RateLimitError
from .models import Artifact, Neighbor
from .retry import SleepFn, build_retrying
from .storage import SEMANTIC_FIELD, VectorStore
from .utils import html_to_text

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class MergedArtifact:
    """An artifact whose provenance was folded into something that already exists."""

    artifact: Artifact
    entry_id: Optional[str] = None  # Corpus entry, None for an in-run merge
    into: Optional[Artifact] = None  # Surviving artifact of the same run
    distance: Optional[float] = None


@dataclass
class FailedArtifact:
    artifact: Artifact
    error: str
    entry_id: Optional[str] = None


@dataclass
class DedupReport:
    """Outcome of one deduplication pass."""

    new: List[Artifact] = field(default_factory=list)
    merged: List[MergedArtifact] = field(default_factory=list)
    failed: List[FailedArtifact] = field(default_factory=list)


def cosine_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """1 - cosine similarity; 1.0 when either vector is zero."""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    denominator = np.linalg.norm(va) * np.linalg.norm(vb)
    if denominator == 0:
        return 1.0
    return 1.0 - float(np.dot(va, vb) / denominator)


def select_merge_target(neighbors: Sequence[Neighbor]) -> Optional[Neighbor]:
    """
    Pick the corpus entry that should receive provenance.

    The closest neighbor wins if it is an article; otherwise the closest
    article-type neighbor is used. Returns None when no neighbor is an article.
    """
    if not neighbors:
        return None
    top = neighbors[0]
    if top.is_article:
        return top
    return next((neighbor for neighbor in neighbors if neighbor.is_article), None)


class DedupEngine:
    """
    Deduplicates artifacts by embedding similarity.

    Each artifact is embedded, collapsed against earlier artifacts of the same
    run, then checked against the corpus. Matches append their source ids to
    the matched article; everything else is returned as new. Checks for
    different artifacts run concurrently and fail independently.
    """

    def __init__(
        self,
        embedder: Embedder,
        store: VectorStore,
        threshold: float = SIMILARITY_THRESHOLD,
        dual_embeddings: bool = True,
        compare_in_run: bool = True,
        max_attempts: int = MAX_ATTEMPTS,
        initial_delay: float = INITIAL_RETRY_DELAY,
        max_concurrency: int = 5,
        sleep: Optional[SleepFn] = None,
    ):
        """
        Initialize the dedup engine.

        Args:
            embedder: Embedding provider
            store: Corpus vector store
            threshold: Maximum cosine distance counted as a duplicate
            dual_embeddings: Also compute a retrieval-intent embedding
            compare_in_run: Collapse near-duplicates produced by the same run
            max_attempts: Attempts per embedding, query or provenance append
            initial_delay: Base backoff delay in seconds
            max_concurrency: Artifacts processed at once
            sleep: Coroutine used for backoff sleeps
        """
        self.embedder = embedder
        self.store = store
        self.threshold = threshold
        self.dual_embeddings = dual_embeddings
        self.compare_in_run = compare_in_run
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_concurrency = max(1, max_concurrency)
        self.sleep = sleep

    async def deduplicate(self, artifacts: Sequence[Artifact]) -> List[Artifact]:
        """Return only the artifacts that are genuinely new."""
        report = await self.deduplicate_with_report(artifacts)
        return report.new

    async def deduplicate_with_report(self, artifacts: Sequence[Artifact]) -> DedupReport:
        report = DedupReport()
        if not artifacts:
            return report

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(coro_factory: Callable[[], Awaitable[T]]) -> T:
            async with semaphore:
                return await coro_factory()

        embedded = await asyncio.gather(*(bounded(lambda a=a: self._embed_guarded(a)) for a in artifacts))
        candidates = []
        for artifact, error in zip(artifacts, embedded):
            if error is None:
                candidates.append(artifact)
            else:
                report.failed.append(FailedArtifact(artifact, error))

        if self.compare_in_run:
            candidates = self.compare_candidates(candidates, report)

        outcomes = await asyncio.gather(*(bounded(lambda a=a: self._check_guarded(a)) for a in candidates))
        for outcome in outcomes:
            if isinstance(outcome, MergedArtifact):
                report.merged.append(outcome)
            elif isinstance(outcome, FailedArtifact):
                report.failed.append(outcome)
            else:
                report.new.append(outcome)

        logger.info(
            f"Returned {len(report.new)}/{len(artifacts)} artifacts as new "
            f"({len(report.merged)} merged, {len(report.failed)} failed)"
        )
        return report

    async def embed_artifact(self, artifact: Artifact) -> Artifact:
        """
        Compute the normalized text and embeddings of an artifact in place.

        Raises:
            RateLimitError: Throttled on every attempt
            EmbeddingError: Provider failure
        """
        artifact.text = html_to_text(f"{artifact.title} \n\n {artifact.body}")
        label = f"embedding '{artifact.title[:60]}'"
        logger.info(f"Generating embedding for artifact: \"{artifact.title}\"")

        artifact.semantic_embedding = await self._with_retry(
            lambda: self.embedder.embed(artifact.text, SEMANTIC_SIMILARITY), label
        )
        if self.dual_embeddings:
            if self.embedder.supports_task_types:
                artifact.retrieval_embedding = await self._with_retry(
                    lambda: self.embedder.embed(artifact.text, RETRIEVAL_DOCUMENT), label
                )
            else:
                artifact.retrieval_embedding = list(artifact.semantic_embedding)
        return artifact

    async def _embed_guarded(self, artifact: Artifact) -> Optional[str]:
        try:
            await self.embed_artifact(artifact)
        except KBSynthError as e:
            logger.error(f"Embedding failed for artifact \"{artifact.title}\" ({artifact.source_ids}): {e}")
            return str(e)
        return None

    def compare_candidates(self, candidates: List[Artifact], report: DedupReport) -> List[Artifact]:
        """
        Collapse candidates of the same run that are within the threshold.

        Earlier candidates win; later ones donate their source ids and records.
        """
        kept: List[Artifact] = []
        for artifact in candidates:
            match = None
            for survivor in kept:
                distance = cosine_distance(artifact.semantic_embedding, survivor.semantic_embedding)
                if distance <= self.threshold:
                    match = (survivor, distance)
                    break

            if match is None:
                kept.append(artifact)
                continue

            survivor, distance = match
            survivor.add_source_ids(artifact.source_ids)
            known = {record.id for record in survivor.source_records}
            survivor.source_records = survivor.source_records + tuple(
                record for record in artifact.source_records if record.id not in known
            )
            logger.info(f"Merged in-run duplicate \"{artifact.title}\" into \"{survivor.title}\" (distance {distance:.3f})")
            report.merged.append(MergedArtifact(artifact, into=survivor, distance=distance))

        return kept

    async def check_artifact(self, artifact: Artifact):
        """
        Check one embedded artifact against the corpus.

        Returns:
            The artifact itself when it is new, or a MergedArtifact when its
            provenance was appended to an existing entry

        Raises:
            ProvenanceAppendError: The append kept failing after every retry
        """
        label = f"corpus lookup '{artifact.title[:60]}'"
        neighbors = await self._with_retry(
            lambda: self.store.query(artifact.semantic_embedding, SEMANTIC_FIELD, self.threshold), label
        )
        matches = sorted((n for n in neighbors if n.distance <= self.threshold), key=lambda n: n.distance)

        if not matches:
            logger.info(f"No highly similar content found. Keeping \"{artifact.title}\" as new")
            return artifact

        target = select_merge_target(matches)
        if target is None:
            logger.warning(
                f"Similar content for \"{artifact.title}\" is not an article "
                f"(closest: {matches[0].entry_id}). Keeping as new"
            )
            return artifact

        logger.info(
            f"Skipping artifact \"{artifact.title}\": found highly similar content "
            f"{target.entry_id} (distance {target.distance:.3f})"
        )
        await self._append_provenance(target, artifact.source_ids)
        logger.info(f"Source ids {artifact.source_ids} appended to entry: {target.external_id or target.entry_id}")
        return MergedArtifact(artifact, entry_id=target.entry_id, distance=target.distance)

    async def _check_guarded(self, artifact: Artifact):
        try:
            return await self.check_artifact(artifact)
        except ProvenanceAppendError as e:
            logger.error(f"{e.message} for source ids {e.source_ids}")
            return FailedArtifact(artifact, str(e), entry_id=e.entry_id)
        except Exception as e:
            logger.error(f"Dedup check failed for artifact \"{artifact.title}\": {e}")
            return FailedArtifact(artifact, str(e))

    async def _append_provenance(self, target: Neighbor, source_ids: Sequence[str]) -> None:
        async def append() -> None:
            if not await self.store.append_provenance(target, source_ids):
                raise ProvenanceAppendError(
                    f"Failed to append source ids to entry {target.entry_id}",
                    entry_id=target.entry_id,
                    source_ids=source_ids,
                )

        await self._with_retry(
            append,
            f"provenance append to {target.entry_id}",
            retry_on=(RateLimitError, ProvenanceAppendError),
        )

    async def _with_retry(
        self,
        call: Callable[[], Awaitable[T]],
        label: str,
        retry_on: Tuple[Type[BaseException], ...] = (RateLimitError,),
    ) -> T:
        retrying = build_retrying(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            label=label,
            sleep=self.sleep,
            retry_on=retry_on,
        )
        result = None
        async for attempt in retrying:
            with attempt:
                result = await call()
        return result
