"""
End-to-end tests for the knowledge base pipeline with fake services.
"""

import asyncio
import json
import sys
import tempfile
import unittest
from pathlib import Path

import pytest

# Add the project root to the Python path
sys.path.append(str(Path(__file__).parent.parent))

from kbsynth.config import PipelineConfig
from kbsynth.embedder import Embedder
from kbsynth.exceptions import PipelineTimeoutError, ResultParseError
from kbsynth.models import CorpusEntry, Record
from kbsynth.orchestrator import KnowledgeBasePipeline, apply_tags
from kbsynth.processors import TAG_SCHEMA
from kbsynth.sinks import JsonFileSink, VectorStoreSink
from kbsynth.storage import InMemoryVectorStore


class FakeGeminiClient:
    """Prices each record at `cost` tokens and answers with one article per record."""

    def __init__(self, cost=40, raw_text=None, delay=0.0):
        self.cost = cost
        self.raw_text = raw_text
        self.delay = delay
        self.estimates = 0
        self.generated = []

    async def estimate_cost(self, batch):
        self.estimates += 1
        return self.cost * len(batch)

    async def generate(self, batch):
        if self.delay:
            await asyncio.sleep(self.delay)
        self.generated.append(batch.record_ids)
        if self.raw_text is not None:
            return self.raw_text
        items = [
            {
                "Ticket IDs": [record.id],
                "Knowledge Base Article": {"question": record.content, "answer": "<p>Steps</p>"},
                "tpa": "general",
            }
            for record in batch.records
        ]
        return "```json\n" + json.dumps(items) + "\n```"


class FakeTagClient(FakeGeminiClient):
    async def generate(self, batch):
        self.generated.append(batch.record_ids)
        return json.dumps([{"id": record.id, "tpa": "billing", "tpsa": "refunds"} for record in batch.records[:-1]])


class TitleEmbedder(Embedder):
    def __init__(self, vectors):
        super().__init__("title", dimensions=4)
        self.vectors = vectors

    async def _embed_raw(self, text, task_type):
        return self.vectors[text.split("\n")[0]]


def make_config(**overrides):
    settings = dict(
        token_limit=100,
        max_attempts=3,
        initial_delay=0.01,
        max_concurrency=2,
        requests_per_minute=None,
        tokens_per_minute=None,
        similarity_threshold=0.85,
    )
    settings.update(overrides)
    return PipelineConfig(**settings)


def make_records(*titles):
    return [Record(id=str(i + 1), content=title, metadata={"status": "solved"}) for i, title in enumerate(titles)]


VECTORS = {
    "Reset password": [1.0, 0.0, 0.0, 0.0],
    "Change password": [0.99, 0.141, 0.0, 0.0],
    "Export invoices": [0.0, 1.0, 0.0, 0.0],
    "Connect printer": [0.0, 0.0, 1.0, 0.0],
    "Add users": [0.0, 0.0, 0.0, 1.0],
}


class TestKnowledgeBasePipeline(unittest.IsolatedAsyncioTestCase):
    """Tests for the KnowledgeBasePipeline class."""

    async def test_generate_plans_under_limit(self):
        client = FakeGeminiClient(cost=40)
        pipeline = KnowledgeBasePipeline(client, config=make_config())
        records = make_records(*VECTORS)

        artifacts, failures, plan = await pipeline.generate(records)

        self.assertEqual(plan.record_ids, [record.id for record in records])
        self.assertTrue(all(batch.estimated_tokens <= 100 for batch in plan.batches))
        self.assertEqual(sorted(a.source_ids[0] for a in artifacts), ["1", "2", "3", "4", "5"])
        self.assertEqual(failures, [])

    async def test_run_deduplicates_and_persists(self):
        store = InMemoryVectorStore([
            CorpusEntry("kb-7", "article", semantic_embedding=[0.0, 0.0, 1.0, 0.0], source_ids=["900"]),
        ])
        with tempfile.TemporaryDirectory() as tmp:
            output = Path(tmp) / "articles.json"
            pipeline = KnowledgeBasePipeline(
                FakeGeminiClient(cost=10),
                embedder=TitleEmbedder(VECTORS),
                store=store,
                config=make_config(),
                sinks=[JsonFileSink(output), VectorStoreSink(store)],
            )

            result = await pipeline.run(make_records(*VECTORS))

            with open(output, "r", encoding="utf-8") as f:
                saved = json.load(f)

        # "Change password" collapses into "Reset password"; "Connect printer" matches kb-7
        self.assertEqual(sorted(a.title for a in result.artifacts), ["Add users", "Export invoices", "Reset password"])
        self.assertEqual(len(result.merged), 2)
        self.assertEqual(store.entries["kb-7"].source_ids, ["900", "4"])
        self.assertEqual(saved["total_artifacts"], 3)
        reset = next(a for a in saved["artifacts"] if a["title"] == "Reset password")
        self.assertEqual(reset["source_ids"], ["1", "2"])
        # New articles were ingested next to the existing entry
        self.assertEqual(len(store.entries), 4)

        report = result.to_dict()
        self.assertEqual(len(report["new_artifacts"]), 3)
        self.assertEqual(report["failed_batches"], [])

    async def test_async_record_source(self):
        async def stream():
            for record in make_records("Reset password", "Add users"):
                yield record

        client = FakeGeminiClient(cost=10)
        result = await KnowledgeBasePipeline(client, config=make_config()).run(stream())

        self.assertEqual(len(result.artifacts), 2)

    async def test_empty_input_makes_no_calls(self):
        client = FakeGeminiClient()
        result = await KnowledgeBasePipeline(client, config=make_config()).run([])

        self.assertEqual(result.artifacts, [])
        self.assertEqual(client.estimates, 0)
        self.assertEqual(client.generated, [])

    async def test_unparseable_output_fails_the_run(self):
        client = FakeGeminiClient(cost=10, raw_text="Sorry, I cannot help with that.")

        with pytest.raises(ResultParseError):
            await KnowledgeBasePipeline(client, config=make_config()).run(make_records("Reset password"))

    async def test_timeout(self):
        client = FakeGeminiClient(cost=10, delay=10)

        with pytest.raises(PipelineTimeoutError):
            await KnowledgeBasePipeline(client, config=make_config()).run(make_records("Reset password"), timeout=0.05)

    async def test_tag_records(self):
        client = FakeTagClient(cost=10)
        pipeline = KnowledgeBasePipeline(client, config=make_config(), schema=TAG_SCHEMA)

        tagged = await pipeline.tag_records(make_records("Refund request", "Card declined"))

        self.assertEqual(tagged[0].metadata, {"status": "solved", "tpa": "billing", "tpsa": "refunds"})
        # The model skipped the last record of the batch
        self.assertEqual(tagged[1].metadata, {"status": "solved"})


class TestApplyTags(unittest.TestCase):

    def test_records_without_tags_are_untouched(self):
        records = make_records("a", "b")
        self.assertEqual(apply_tags(records, []), records)


if __name__ == "__main__":
    unittest.main()
