from .result_processor import (
    ARTICLE_SCHEMA,
    TAG_SCHEMA,
    ArtifactSchema,
    ProcessedResults,
    ResultProcessor,
)

__all__ = ["ARTICLE_SCHEMA", "TAG_SCHEMA", "ArtifactSchema", "ProcessedResults", "ResultProcessor"]
