"""
Vector database storage module for corpus lookup and provenance updates.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .config import EMBEDDING_DIMENSIONS
from .models import Artifact, CorpusEntry, Neighbor

logger = logging.getLogger(__name__)

SEMANTIC_FIELD = "semantic_embedding"
RETRIEVAL_FIELD = "retrieval_embedding"
ARTICLE_TYPE = "article"


class VectorStore(ABC):
    """
    Abstract base class for the corpus vector store.

    The pipeline only queries the store and asks it to append provenance;
    concurrency control for those appends is the store's responsibility.
    """

    @classmethod
    def create(cls, db_type: str, config: Optional[Dict[str, Any]] = None) -> "VectorStore":
        """
        Factory method to create a VectorStore instance.

        Args:
            db_type: Type of vector database ('elasticsearch' or 'memory')
            config: Configuration parameters for the database

        Returns:
            VectorStore instance
        """
        if db_type.lower() == "elasticsearch":
            return ElasticsearchVectorStore(config or {})
        elif db_type.lower() == "memory":
            return InMemoryVectorStore()
        else:
            raise ValueError(f"Unsupported vector database type: {db_type}")

    @abstractmethod
    async def query(self, embedding: Sequence[float], field: str, threshold: float) -> List[Neighbor]:
        """
        Find corpus entries near an embedding.

        Args:
            embedding: Normalized query vector
            field: Embedding field to search (e.g. semantic_embedding)
            threshold: Maximum cosine distance to include

        Returns:
            Neighbors ordered by ascending distance
        """

    @abstractmethod
    async def append_provenance(self, neighbor: Neighbor, source_ids: Sequence[str]) -> bool:
        """Append source record ids to an existing entry. Returns success status."""

    @abstractmethod
    async def ingest_artifacts(self, artifacts: Sequence[Artifact]) -> bool:
        """Persist new artifacts as article entries. Returns success status."""


class ElasticsearchVectorStore(VectorStore):
    """
    Elasticsearch implementation of the VectorStore interface.

    This class handles:
    1. Connection to Elasticsearch
    2. Creating the corpus index with dense_vector mappings
    3. kNN queries converted to cosine distance
    4. Script updates that append provenance without duplicates
    """

    APPEND_SCRIPT = (
        "if (ctx._source.source_ids == null) { ctx._source.source_ids = new ArrayList(); } "
        "for (id in params.ids) { if (!ctx._source.source_ids.contains(id)) "
        "{ ctx._source.source_ids.add(id); } }"
    )

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the Elasticsearch client.

        Args:
            config: Configuration parameters for Elasticsearch
                host: Elasticsearch host
                port: Elasticsearch port
                username: Elasticsearch username (optional)
                password: Elasticsearch password (optional)
                index: Elasticsearch index name
                top_k: Neighbors returned per query (default 10)
                num_candidates: kNN candidate pool size (default 100)
        """
        self.config = config
        self.index_name = config.get("index", "kb_articles")
        self.dimensions = config.get("dimensions", EMBEDDING_DIMENSIONS)
        self.top_k = config.get("top_k", 10)
        self.num_candidates = config.get("num_candidates", 100)
        self._init_client()
        self._init_index()

    def _init_client(self):
        """Initialize the Elasticsearch client."""
        try:
            from elasticsearch import Elasticsearch, ApiError, TransportError

            self.es_errors = (ApiError, TransportError)
            url = f"{self.config.get('host', 'http://localhost')}:{self.config.get('port', 9200)}"

            # Create client with authentication if provided
            if self.config.get("username") and self.config.get("password"):
                self.client = Elasticsearch(
                    [url],
                    basic_auth=(self.config["username"], self.config["password"]),
                )
            else:
                self.client = Elasticsearch([url])

            logger.info(f"Connected to Elasticsearch at {url}")

        except ImportError:
            raise ImportError(
                "elasticsearch package not installed. "
                "Install it with: pip install elasticsearch"
            )

    def _init_index(self):
        """Initialize the Elasticsearch index if it doesn't exist."""
        if self.client.indices.exists(index=self.index_name):
            return

        vector_mapping = {
            "type": "dense_vector",
            "dims": self.dimensions,
            "index": True,
            "similarity": "cosine",
        }
        mappings = {
            "properties": {
                "type": {"type": "keyword"},
                "external_id": {"type": "keyword"},
                "source_ids": {"type": "keyword"},
                "category": {"type": "keyword"},
                "title": {"type": "text"},
                "body": {"type": "text"},
                "text": {"type": "text"},
                SEMANTIC_FIELD: vector_mapping,
                RETRIEVAL_FIELD: vector_mapping,
            }
        }

        self.client.indices.create(index=self.index_name, mappings=mappings)
        logger.info(f"Created Elasticsearch index: {self.index_name}")

    async def query(self, embedding: Sequence[float], field: str, threshold: float) -> List[Neighbor]:
        response = await asyncio.to_thread(
            self.client.search,
            index=self.index_name,
            knn={
                "field": field,
                "query_vector": list(embedding),
                "k": self.top_k,
                "num_candidates": self.num_candidates,
            },
            source_excludes=[SEMANTIC_FIELD, RETRIEVAL_FIELD],
            size=self.top_k,
        )

        neighbors = []
        for hit in response["hits"]["hits"]:
            # Cosine _score is (1 + cos) / 2, so distance = 1 - cos = 2 - 2 * score
            distance = 2.0 - 2.0 * float(hit["_score"])
            if distance > threshold:
                continue
            source = hit.get("_source", {})
            neighbors.append(
                Neighbor(
                    entry_id=hit["_id"],
                    distance=distance,
                    entry_type=source.get("type", ""),
                    source_ids=list(source.get("source_ids") or []),
                    external_id=source.get("external_id"),
                )
            )

        neighbors.sort(key=lambda n: n.distance)
        logger.info(f"Found {len(neighbors)} neighbors within distance {threshold} on {field}")
        return neighbors

    async def append_provenance(self, neighbor: Neighbor, source_ids: Sequence[str]) -> bool:
        try:
            await asyncio.to_thread(
                self.client.update,
                index=self.index_name,
                id=neighbor.entry_id,
                script={"source": self.APPEND_SCRIPT, "lang": "painless", "params": {"ids": list(source_ids)}},
                retry_on_conflict=5,
                refresh=True,
            )
            return True
        except self.es_errors as e:
            logger.error(f"Error appending source ids to {neighbor.entry_id}: {str(e)}")
            return False

    async def ingest_artifacts(self, artifacts: Sequence[Artifact]) -> bool:
        bulk_data = []
        for artifact in artifacts:
            document = {
                "type": ARTICLE_TYPE,
                "source_ids": list(artifact.source_ids),
                "category": artifact.category,
                "title": artifact.title,
                "body": artifact.body,
                "text": artifact.text,
                SEMANTIC_FIELD: artifact.semantic_embedding,
                RETRIEVAL_FIELD: artifact.retrieval_embedding,
            }
            bulk_data.append({"index": {"_index": self.index_name, "_id": uuid.uuid4().hex}})
            bulk_data.append(document)

        if not bulk_data:
            return False

        try:
            await asyncio.to_thread(self.client.bulk, operations=bulk_data, refresh=True)
        except self.es_errors as e:
            logger.error(f"Error ingesting artifacts into Elasticsearch: {str(e)}")
            return False

        logger.info(f"Ingested {len(artifacts)} artifacts into Elasticsearch")
        return True


class InMemoryVectorStore(VectorStore):
    """
    Brute-force cosine store held in memory.

    Used for local runs and tests; appends complete without awaiting, so
    they are atomic on the event loop.
    """

    def __init__(self, entries: Optional[Sequence[CorpusEntry]] = None):
        self.entries: Dict[str, CorpusEntry] = {}
        for entry in entries or []:
            self.entries[entry.entry_id] = entry

    def add_entry(self, entry: CorpusEntry) -> None:
        self.entries[entry.entry_id] = entry

    async def query(self, embedding: Sequence[float], field: str, threshold: float) -> List[Neighbor]:
        query_vector = np.asarray(embedding, dtype=float)
        query_norm = np.linalg.norm(query_vector)
        neighbors = []

        for entry in self.entries.values():
            vector = entry.retrieval_embedding if field == RETRIEVAL_FIELD else entry.semantic_embedding
            if vector is None:
                continue
            candidate = np.asarray(vector, dtype=float)
            denominator = query_norm * np.linalg.norm(candidate)
            if denominator == 0:
                continue
            distance = 1.0 - float(np.dot(query_vector, candidate) / denominator)
            if distance <= threshold:
                neighbors.append(
                    Neighbor(
                        entry_id=entry.entry_id,
                        distance=distance,
                        entry_type=entry.entry_type,
                        source_ids=list(entry.source_ids),
                        external_id=entry.external_id,
                    )
                )

        neighbors.sort(key=lambda n: n.distance)
        return neighbors

    async def append_provenance(self, neighbor: Neighbor, source_ids: Sequence[str]) -> bool:
        entry = self.entries.get(neighbor.entry_id)
        if entry is None:
            logger.error(f"Corpus entry {neighbor.entry_id} not found")
            return False
        for source_id in source_ids:
            if source_id not in entry.source_ids:
                entry.source_ids.append(source_id)
        return True

    async def ingest_artifacts(self, artifacts: Sequence[Artifact]) -> bool:
        for artifact in artifacts:
            entry_id = uuid.uuid4().hex
            self.entries[entry_id] = CorpusEntry(
                entry_id=entry_id,
                entry_type=ARTICLE_TYPE,
                semantic_embedding=list(artifact.semantic_embedding or []),
                retrieval_embedding=artifact.retrieval_embedding,
                source_ids=list(artifact.source_ids),
                title=artifact.title,
                body=artifact.body,
            )
        logger.info(f"Ingested {len(artifacts)} artifacts into memory store")
        return bool(artifacts)
