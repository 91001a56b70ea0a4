import os
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _int_env(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


# API keys
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")

# Gemini API configuration
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-pro")
GEMINI_TEMPERATURE = _float_env("GEMINI_TEMPERATURE", 0.2)
GEMINI_MAX_OUTPUT_TOKENS = _int_env("GEMINI_MAX_OUTPUT_TOKENS", 65536)
GEMINI_TOKEN_LIMIT = _int_env("GEMINI_TOKEN_LIMIT", 1048576)  # Hard request limit in tokens

# Retry configuration
MAX_ATTEMPTS = _int_env("MAX_ATTEMPTS", 5)
INITIAL_RETRY_DELAY = _float_env("INITIAL_RETRY_DELAY", 1.0)  # Seconds

# Rate budget shared by every batch of a run (None = unlimited)
MAX_CONCURRENCY = _int_env("MAX_CONCURRENCY", 1)
REQUESTS_PER_MINUTE = _int_env("REQUESTS_PER_MINUTE", 150)
TOKENS_PER_MINUTE = _int_env("TOKENS_PER_MINUTE", None)

# Embedding configuration
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "models/gemini-embedding-001")
EMBEDDING_DIMENSIONS = _int_env("EMBEDDING_DIMENSIONS", 1536)
SIMILARITY_THRESHOLD = _float_env("SIMILARITY_THRESHOLD", 0.85)  # Cosine distance, lower = closer

# Vector database configuration
VECTOR_DB_HOST = os.getenv("VECTOR_DB_HOST", "http://localhost")
VECTOR_DB_PORT = _int_env("VECTOR_DB_PORT", 9200)
VECTOR_DB_USERNAME = os.getenv("VECTOR_DB_USERNAME", "")
VECTOR_DB_PASSWORD = os.getenv("VECTOR_DB_PASSWORD", "")
VECTOR_DB_INDEX = os.getenv("VECTOR_DB_INDEX", "kb_articles")

# Instruction sent ahead of every batch
GENERATION_INSTRUCTION = os.getenv(
    "GENERATION_INSTRUCTION",
    "Analyze the records below and return a JSON array of knowledge base articles.",
)
TAGGING_INSTRUCTION = os.getenv(
    "TAGGING_INSTRUCTION",
    "Categorize every record below. Return a JSON array of objects with id, tpa and tpsa.",
)


def _vector_db_defaults() -> dict:
    return {
        "host": VECTOR_DB_HOST,
        "port": VECTOR_DB_PORT,
        "username": VECTOR_DB_USERNAME,
        "password": VECTOR_DB_PASSWORD,
        "index": VECTOR_DB_INDEX,
    }


@dataclass
class PipelineConfig:
    """Settings threaded through one pipeline run."""

    token_limit: int = GEMINI_TOKEN_LIMIT
    max_attempts: int = MAX_ATTEMPTS
    initial_delay: float = INITIAL_RETRY_DELAY
    max_concurrency: int = MAX_CONCURRENCY
    requests_per_minute: Optional[int] = REQUESTS_PER_MINUTE
    tokens_per_minute: Optional[int] = TOKENS_PER_MINUTE
    embedding_dimensions: int = EMBEDDING_DIMENSIONS
    similarity_threshold: float = SIMILARITY_THRESHOLD
    dual_embeddings: bool = True
    timeout: Optional[float] = None
    vector_db: dict = field(default_factory=_vector_db_defaults)

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Build a config from the current environment, falling back to the module constants."""
        timeout = os.getenv("PIPELINE_TIMEOUT")
        return cls(
            token_limit=_int_env("GEMINI_TOKEN_LIMIT", GEMINI_TOKEN_LIMIT),
            max_attempts=_int_env("MAX_ATTEMPTS", MAX_ATTEMPTS),
            initial_delay=_float_env("INITIAL_RETRY_DELAY", INITIAL_RETRY_DELAY),
            max_concurrency=_int_env("MAX_CONCURRENCY", MAX_CONCURRENCY),
            requests_per_minute=_int_env("REQUESTS_PER_MINUTE", REQUESTS_PER_MINUTE),
            tokens_per_minute=_int_env("TOKENS_PER_MINUTE", TOKENS_PER_MINUTE),
            embedding_dimensions=_int_env("EMBEDDING_DIMENSIONS", EMBEDDING_DIMENSIONS),
            similarity_threshold=_float_env("SIMILARITY_THRESHOLD", SIMILARITY_THRESHOLD),
            dual_embeddings=os.getenv("DUAL_EMBEDDINGS", "true").lower() != "false",
            timeout=float(timeout) if timeout else None,
            vector_db={
                "host": os.getenv("VECTOR_DB_HOST", VECTOR_DB_HOST),
                "port": _int_env("VECTOR_DB_PORT", VECTOR_DB_PORT),
                "username": os.getenv("VECTOR_DB_USERNAME", VECTOR_DB_USERNAME),
                "password": os.getenv("VECTOR_DB_PASSWORD", VECTOR_DB_PASSWORD),
                "index": os.getenv("VECTOR_DB_INDEX", VECTOR_DB_INDEX),
            },
        )
