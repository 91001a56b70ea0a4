"""
Knowledge Base Synthesis from Support Records
=============================================

This package turns large sets of support records into knowledge base articles
using a Large Language Model, splitting the records into batches that fit the
model's token limit and deduplicating the results against an existing corpus
by embedding similarity.
"""

__version__ = "0.1.0"

from .models import Artifact, Record
from .exceptions import KBSynthError


# Avoid circular imports by deferring import
def get_pipeline():
    from .orchestrator import KnowledgeBasePipeline
    return KnowledgeBasePipeline


__all__ = ["get_pipeline", "Artifact", "Record", "KBSynthError"]
