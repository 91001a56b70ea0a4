"""
Embedding providers for artifact deduplication.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import numpy as np

from .config import EMBEDDING_DIMENSIONS, EMBEDDING_MODEL, GOOGLE_API_KEY, OPENAI_API_KEY
from .exceptions import EmbeddingError, RateLimitError
from .llm_client import translate_google_error

logger = logging.getLogger(__name__)

SEMANTIC_SIMILARITY = "SEMANTIC_SIMILARITY"
RETRIEVAL_DOCUMENT = "RETRIEVAL_DOCUMENT"


def l2_normalize(vector: Sequence[float]) -> List[float]:
    """
    Scale a vector to unit Euclidean length.

    A zero vector is returned unchanged instead of dividing by zero.
    """
    array = np.asarray(vector, dtype=float)
    if array.size == 0:
        return []
    norm = np.linalg.norm(array)
    if norm == 0:
        return array.tolist()
    return (array / norm).tolist()


class Embedder(ABC):
    """
    Base class for embedding providers.

    Subclasses return the provider's raw vector; ``embed`` truncates it to
    ``dimensions`` and L2-normalizes it.
    """

    # Whether the provider distinguishes semantic-similarity and retrieval intents
    supports_task_types = True

    def __init__(self, model_name: str, dimensions: int = EMBEDDING_DIMENSIONS):
        self.model_name = model_name
        self.dimensions = dimensions

    @abstractmethod
    async def _embed_raw(self, text: str, task_type: str) -> List[float]:
        """Call the provider and return the raw embedding values."""

    async def embed(self, text: str, task_type: str = SEMANTIC_SIMILARITY) -> List[float]:
        """
        Embed text for the given intent.

        Args:
            text: Plain text to embed
            task_type: SEMANTIC_SIMILARITY or RETRIEVAL_DOCUMENT

        Returns:
            Normalized vector of at most ``dimensions`` components

        Raises:
            RateLimitError: Provider throttled the call
            EmbeddingError: Any other provider failure
        """
        values = await self._embed_raw(text, task_type)
        if not values:
            raise EmbeddingError(f"Empty embedding returned by {self.model_name}")
        return l2_normalize(values[: self.dimensions])


class GeminiEmbedder(Embedder):
    """Gemini embedding model with task-type aware embeddings."""

    def __init__(
        self,
        model_name: str = EMBEDDING_MODEL,
        dimensions: int = EMBEDDING_DIMENSIONS,
        api_key: Optional[str] = None,
    ):
        super().__init__(model_name, dimensions)
        self.api_key = api_key or GOOGLE_API_KEY
        if not self.api_key:
            raise ValueError(
                "API key not provided. Set it in the constructor or "
                "as GOOGLE_API_KEY environment variable."
            )

        try:
            import google.generativeai as genai

            genai.configure(api_key=self.api_key)
            self.client = genai
        except ImportError:
            raise ImportError(
                "google-generativeai package not installed. "
                "Install it with: pip install google-generativeai"
            )

    async def _embed_raw(self, text: str, task_type: str) -> List[float]:
        try:
            result = await self.client.embed_content_async(
                model=self.model_name,
                content=text,
                task_type=task_type,
                output_dimensionality=self.dimensions,
            )
        except Exception as e:
            raise translate_google_error(e, "Gemini embedContent", EmbeddingError)
        return list(result["embedding"])


class OpenAIEmbedder(Embedder):
    """
    OpenAI Embeddings API.

    OpenAI has no task types, so one vector serves both intents.
    """

    supports_task_types = False

    def __init__(
        self,
        model_name: str = "text-embedding-3-small",
        dimensions: int = EMBEDDING_DIMENSIONS,
        api_key: Optional[str] = None,
    ):
        super().__init__(model_name, dimensions)
        self.api_key = api_key or OPENAI_API_KEY
        if not self.api_key:
            raise ValueError("OPENAI_API_KEY environment variable not set")

        try:
            import openai

            self.openai = openai
            self.client = openai.AsyncOpenAI(api_key=self.api_key)
        except ImportError:
            raise ImportError(
                "openai package not installed. "
                "Install it with: pip install openai"
            )

    async def _embed_raw(self, text: str, task_type: str) -> List[float]:
        kwargs = {"model": self.model_name, "input": text}
        if self.model_name.startswith("text-embedding-3"):
            kwargs["dimensions"] = self.dimensions

        try:
            response = await self.client.embeddings.create(**kwargs)
        except self.openai.RateLimitError as e:
            raise RateLimitError(
                f"OpenAI embeddings rate limited: {e}",
                retry_delay=_retry_after(e.response),
            )
        except self.openai.OpenAIError as e:
            logger.error(f"Error getting OpenAI embeddings: {str(e)}")
            raise EmbeddingError(f"OpenAI embeddings failed: {e}")

        return list(response.data[0].embedding)


def create_embedder(provider: str = "gemini", **kwargs) -> Embedder:
    """
    Factory for embedding providers.

    Args:
        provider: 'gemini' or 'openai'
    """
    if provider.lower() == "gemini":
        return GeminiEmbedder(**kwargs)
    if provider.lower() == "openai":
        return OpenAIEmbedder(**kwargs)
    raise ValueError(f"Unsupported embedding provider: {provider}")


def _retry_after(response) -> Optional[float]:
    """Seconds from a Retry-After header, None when absent or not numeric."""
    if response is None:
        return None
    value = response.headers.get("retry-after")
    try:
        return float(value) if value else None
    except ValueError:
        return None
