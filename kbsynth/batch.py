"""
Batch module for splitting records into contiguous groups.
"""

import math
from typing import Any, Dict, List, Optional, Sequence, Tuple
from dataclasses import dataclass

from .models import Record


@dataclass
class Batch:
    """An ordered, non-empty group of records sent to the service together."""

    records: Tuple[Record, ...]
    index: int = 0
    shared_context: Optional[Any] = None
    estimated_tokens: Optional[int] = None

    def __post_init__(self):
        if not self.records:
            raise ValueError("A batch must contain at least one record")

    @property
    def record_ids(self) -> List[str]:
        return [record.id for record in self.records]

    def to_payload(self) -> Dict[str, Any]:
        """
        Build the JSON payload describing this batch.

        Returns:
            Dictionary with the records and, when present, the shared context
        """
        payload: Dict[str, Any] = {"records": [record.to_dict() for record in self.records]}
        if self.shared_context is not None:
            payload["context"] = self.shared_context
        return payload

    def __len__(self) -> int:
        return len(self.records)


class BatchProcessor:
    """
    Creates batches of records for submission.

    Records are split into contiguous slices so that original order is
    preserved within and across batches.
    """

    def create_batches(
        self,
        records: Sequence[Record],
        batch_count: int,
        shared_context: Optional[Any] = None,
    ) -> List[Batch]:
        """
        Split records into at most `batch_count` contiguous batches.

        Args:
            records: Records to split
            batch_count: Requested number of batches (>= 1)
            shared_context: Payload attached to every batch

        Returns:
            List of batches; the last one may be smaller
        """
        if not records:
            return []

        batch_size = max(1, math.ceil(len(records) / max(1, batch_count)))
        batches = []

        for i in range(0, len(records), batch_size):
            batches.append(
                Batch(
                    records=tuple(records[i:i + batch_size]),
                    index=len(batches),
                    shared_context=shared_context,
                )
            )

        return batches
