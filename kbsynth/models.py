"""
Shared data models for the synthesis pipeline.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union


@dataclass(frozen=True)
class Record:
    """A single source record (e.g. a support ticket) as fetched by the caller."""

    id: str
    content: Union[str, Mapping[str, Any]]
    metadata: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Payload sent to the generation service for this record."""
        return {"id": self.id, "content": self.content, **dict(self.metadata)}


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


@dataclass
class CallAttempt:
    """One call against the generation service for one batch."""

    number: int
    batch_index: int
    outcome: AttemptOutcome
    delay: Optional[float] = None
    error: Optional[str] = None


@dataclass
class GenerationResult:
    """Raw text returned by the service for one batch."""

    batch: Any  # Batch
    raw_text: str
    attempts: List[CallAttempt] = field(default_factory=list)


@dataclass
class Artifact:
    """A structured unit extracted from a generation result."""

    source_ids: List[str]
    category: Optional[str] = None
    title: str = ""
    body: str = ""
    fields: Dict[str, Any] = field(default_factory=dict)
    source_records: Tuple[Record, ...] = ()
    batch_index: Optional[int] = None
    text: Optional[str] = None
    semantic_embedding: Optional[List[float]] = None
    retrieval_embedding: Optional[List[float]] = None

    def add_source_ids(self, ids: List[str]) -> None:
        for source_id in ids:
            if source_id not in self.source_ids:
                self.source_ids.append(source_id)

    def to_dict(self, include_embeddings: bool = False) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = {
            "source_ids": list(self.source_ids),
            "category": self.category,
            "title": self.title,
            "body": self.body,
            "fields": self.fields,
            "text": self.text,
            "sources": [
                {"id": record.id, "metadata": dict(record.metadata)}
                for record in self.source_records
            ],
        }
        if include_embeddings:
            data["semantic_embedding"] = self.semantic_embedding
            data["retrieval_embedding"] = self.retrieval_embedding
        return data


@dataclass
class Neighbor:
    """A corpus entry returned by a similarity query."""

    entry_id: str
    distance: float
    entry_type: str = ""
    source_ids: List[str] = field(default_factory=list)
    external_id: Optional[str] = None

    @property
    def is_article(self) -> bool:
        return "article" in (self.entry_type or "")


@dataclass
class CorpusEntry:
    """A persisted artifact-like object in the vector store."""

    entry_id: str
    entry_type: str
    semantic_embedding: List[float]
    retrieval_embedding: Optional[List[float]] = None
    source_ids: List[str] = field(default_factory=list)
    external_id: Optional[str] = None
    title: str = ""
    body: str = ""


@dataclass
class BatchFailure:
    """A batch whose result could not be turned into artifacts."""

    batch_index: int
    record_ids: List[str]
    error: str
    raw_text: Optional[str] = None
