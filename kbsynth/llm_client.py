"""
Generation service client for pricing and processing record batches.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, Type

from .batch import Batch
from .config import (
    GEMINI_MAX_OUTPUT_TOKENS,
    GEMINI_MODEL,
    GEMINI_TEMPERATURE,
    GENERATION_INSTRUCTION,
    GOOGLE_API_KEY,
)
from .exceptions import GenerationError, KBSynthError, RateLimitError
from .retry import parse_retry_delay

logger = logging.getLogger(__name__)


class GenerationClient(ABC):
    """
    Interface of the external text-generation service.

    ``estimate_cost`` is the token oracle used by the planner; ``generate``
    performs the real call. Implementations raise ``RateLimitError`` for
    throttling and ``GenerationError`` for anything else.
    """

    @abstractmethod
    async def estimate_cost(self, batch: Batch) -> int:
        """Return the service's token count for this batch."""

    @abstractmethod
    async def generate(self, batch: Batch) -> str:
        """Return raw text that is supposed to be JSON."""


class GeminiClient(GenerationClient):
    """
    Client for Google Gemini models.

    This class handles:
    1. Rendering a batch into a prompt
    2. Calling countTokens and generateContent
    3. Translating API errors into pipeline exceptions
    """

    def __init__(
        self,
        model_name: str = GEMINI_MODEL,
        api_key: Optional[str] = None,
        max_tokens: int = GEMINI_MAX_OUTPUT_TOKENS,
        temperature: float = GEMINI_TEMPERATURE,
        instruction: str = GENERATION_INSTRUCTION,
        response_schema: Optional[dict] = None,
    ):
        """
        Initialize the Gemini client.

        Args:
            model_name: Name of the Gemini model to use
            api_key: API key, defaults to GOOGLE_API_KEY
            max_tokens: Maximum tokens in the response
            temperature: Temperature for generation (lower = more deterministic)
            instruction: Instruction text placed ahead of the batch payload
            response_schema: Optional JSON schema enforced by the service
        """
        self.model_name = model_name
        self.api_key = api_key or GOOGLE_API_KEY

        if not self.api_key:
            raise ValueError(
                "API key not provided. Set it in the constructor or "
                "as GOOGLE_API_KEY environment variable."
            )

        self.max_tokens = max_tokens
        self.temperature = temperature
        self.instruction = instruction
        self.response_schema = response_schema
        self._init_client()

    def _init_client(self):
        """Initialize the google-generativeai model."""
        try:
            import google.generativeai as genai

            genai.configure(api_key=self.api_key)
            generation_config = {
                "max_output_tokens": self.max_tokens,
                "temperature": self.temperature,
                "response_mime_type": "application/json",
            }
            if self.response_schema:
                generation_config["response_schema"] = self.response_schema

            self.client = genai
            self.model = genai.GenerativeModel(
                model_name=self.model_name,
                generation_config=generation_config,
            )
            logger.info(f"Initialized Gemini client with model: {self.model_name}")
        except ImportError:
            raise ImportError(
                "google-generativeai package not installed. "
                "Install it with: pip install google-generativeai"
            )

    def create_prompt(self, batch: Batch) -> str:
        """
        Render a batch as prompt text.

        The same text is used for counting and for generation so the
        estimate matches what is actually sent.
        """
        payload = json.dumps(batch.to_payload(), indent=2, ensure_ascii=False)
        return f"{self.instruction}\n\n<batch>\n{payload}\n</batch>"

    async def estimate_cost(self, batch: Batch) -> int:
        try:
            response = await self.model.count_tokens_async(self.create_prompt(batch))
        except Exception as e:
            raise self._translate_error(e, "countTokens")
        return int(response.total_tokens)

    async def generate(self, batch: Batch) -> str:
        """
        Generate content for a batch.

        Only the first candidate is considered; its text parts are
        concatenated into one raw string.
        """
        logger.info(f"Sending batch {batch.index} with {len(batch)} records to {self.model_name}")
        try:
            response = await self.model.generate_content_async(self.create_prompt(batch))
        except Exception as e:
            raise self._translate_error(e, "generateContent")

        candidates = getattr(response, "candidates", None) or []
        if not candidates:
            raise GenerationError(f"No candidates returned for batch {batch.index}")

        parts = getattr(candidates[0].content, "parts", None) or []
        raw_text = "".join(getattr(part, "text", "") for part in parts)
        logger.info(f"Received {len(raw_text)} characters for batch {batch.index}")
        return raw_text

    def _translate_error(self, error: Exception, operation: str) -> Exception:
        return translate_google_error(error, f"Gemini {operation}")


def translate_google_error(
    error: Exception,
    operation: str,
    error_cls: Type[KBSynthError] = GenerationError,
) -> Exception:
    """
    Map a google-api-core exception onto the pipeline's taxonomy.

    Args:
        error: Exception raised by the Google client
        operation: Name of the failed call, used in messages
        error_cls: Exception type for non-rate-limit failures

    Returns:
        RateLimitError for 429/RESOURCE_EXHAUSTED, otherwise an `error_cls` instance
    """
    if isinstance(error, KBSynthError):
        return error

    from google.api_core import exceptions as google_exceptions

    if isinstance(error, (google_exceptions.TooManyRequests, google_exceptions.ResourceExhausted)):
        return RateLimitError(
            f"{operation} rate limited: {error}",
            retry_delay=parse_retry_delay(getattr(error, "details", None)),
        )

    logger.error(f"Error calling {operation}: {str(error)}")
    if error_cls is GenerationError:
        status: Any = getattr(error, "code", None)
        return GenerationError(
            f"{operation} failed: {error}",
            status=status if isinstance(status, int) else None,
        )
    return error_cls(f"{operation} failed: {error}")
