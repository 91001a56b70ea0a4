"""
Exception hierarchy for the knowledge base synthesis pipeline.
"""

from typing import Any, Dict, List, Optional, Sequence


class KBSynthError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class PlanningError(KBSynthError):
    """Raised when no batch plan can satisfy the token limit."""

    pass


class RateLimitError(KBSynthError):
    """Transient rate-limit signal from a remote service."""

    def __init__(self, message: str, retry_delay: Optional[float] = None, **kwargs):
        super().__init__(message, kwargs)
        # Seconds suggested by the server, None when it gave no hint
        self.retry_delay = retry_delay


class GenerationError(KBSynthError):
    """Non-retryable failure from the generation service."""

    def __init__(self, message: str, status: Optional[int] = None, **kwargs):
        super().__init__(message, kwargs)
        self.status = status


class BatchExecutionError(KBSynthError):
    """A batch could not be generated. Fatal for the whole run."""

    def __init__(
        self,
        message: str,
        batch_index: int,
        record_ids: Sequence[str],
        attempts: int,
    ):
        super().__init__(message, {"batch_index": batch_index, "attempts": attempts})
        self.batch_index = batch_index
        self.record_ids: List[str] = list(record_ids)
        self.attempts = attempts


class ResultParseError(KBSynthError):
    """Raw generation output could not be repaired into JSON."""

    def __init__(
        self,
        message: str,
        raw_text: str,
        record_ids: Sequence[str] = (),
        batch_index: Optional[int] = None,
    ):
        super().__init__(message, {"batch_index": batch_index})
        self.raw_text = raw_text
        self.record_ids: List[str] = list(record_ids)
        self.batch_index = batch_index


class EmbeddingError(KBSynthError):
    """Embedding could not be computed for one artifact."""

    pass


class ProvenanceAppendError(KBSynthError):
    """Source ids could not be appended to an existing corpus entry."""

    def __init__(self, message: str, entry_id: str, source_ids: Sequence[str]):
        super().__init__(message, {"entry_id": entry_id})
        self.entry_id = entry_id
        self.source_ids: List[str] = list(source_ids)


class PipelineTimeoutError(KBSynthError):
    """The caller's overall deadline elapsed."""

    pass
