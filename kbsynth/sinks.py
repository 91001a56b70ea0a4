"""
Persistence sinks receiving the final deduplicated artifacts.
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Sequence, Union

from .models import Artifact
from .storage import VectorStore

logger = logging.getLogger(__name__)


class PersistenceSink(ABC):
    """Receives genuinely new artifacts for storage or export."""

    @abstractmethod
    async def persist(self, artifacts: Sequence[Artifact]) -> None:
        pass


class JsonFileSink(PersistenceSink):
    """Writes artifacts to a JSON file."""

    def __init__(self, output_path: Union[str, Path], include_embeddings: bool = False):
        self.output_path = Path(output_path)
        self.include_embeddings = include_embeddings

    async def persist(self, artifacts: Sequence[Artifact]) -> None:
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        result_dict = {
            "total_artifacts": len(artifacts),
            "artifacts": [artifact.to_dict(self.include_embeddings) for artifact in artifacts],
        }
        with open(self.output_path, "w", encoding="utf-8") as f:
            json.dump(result_dict, f, indent=2, ensure_ascii=False)
        logger.info(f"Saved {len(artifacts)} artifacts to {self.output_path}")


class VectorStoreSink(PersistenceSink):
    """Ingests artifacts into the corpus so later runs deduplicate against them."""

    def __init__(self, store: VectorStore):
        self.store = store

    async def persist(self, artifacts: Sequence[Artifact]) -> None:
        if not artifacts:
            return
        if not await self.store.ingest_artifacts(artifacts):
            raise RuntimeError(f"Failed to ingest {len(artifacts)} artifacts into the vector store")
