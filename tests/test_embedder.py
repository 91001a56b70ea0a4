"""
Test suite for embedding normalization and text preparation.
"""

import math
import sys
import unittest
from datetime import timedelta
from pathlib import Path

import pytest

# Add the project root to the Python path
sys.path.append(str(Path(__file__).parent.parent))

from kbsynth.embedder import RETRIEVAL_DOCUMENT, Embedder, l2_normalize
from kbsynth.exceptions import EmbeddingError
from kbsynth.retry import RETRY_INFO_TYPE, parse_retry_delay
from kbsynth.utils import html_to_text


class FixedEmbedder(Embedder):
    def __init__(self, values, dimensions=1536):
        super().__init__("fixed", dimensions)
        self.values = values
        self.task_types = []

    async def _embed_raw(self, text, task_type):
        self.task_types.append(task_type)
        return self.values


class TestL2Normalize(unittest.TestCase):

    def test_unit_length(self):
        self.assertEqual(l2_normalize([3.0, 4.0]), [0.6, 0.8])

    def test_idempotent(self):
        once = l2_normalize([1.0, 2.0, 2.0])
        twice = l2_normalize(once)

        for a, b in zip(once, twice):
            self.assertAlmostEqual(a, b)
        self.assertAlmostEqual(math.sqrt(sum(v * v for v in once)), 1.0)

    def test_zero_vector_unchanged(self):
        self.assertEqual(l2_normalize([0.0, 0.0, 0.0]), [0.0, 0.0, 0.0])

    def test_empty_vector(self):
        self.assertEqual(l2_normalize([]), [])


class TestEmbedder(unittest.IsolatedAsyncioTestCase):

    async def test_truncates_then_normalizes(self):
        embedder = FixedEmbedder([3.0, 4.0, 12.0], dimensions=2)
        self.assertEqual(await embedder.embed("text"), [0.6, 0.8])

    async def test_passes_task_type(self):
        embedder = FixedEmbedder([1.0])
        await embedder.embed("text", RETRIEVAL_DOCUMENT)
        self.assertEqual(embedder.task_types, [RETRIEVAL_DOCUMENT])

    async def test_empty_embedding_raises(self):
        with pytest.raises(EmbeddingError):
            await FixedEmbedder([]).embed("text")


class TestHtmlToText(unittest.TestCase):

    def test_block_tags_become_lines(self):
        html = "<h2>Reset</h2><p>Open   <b>Settings</b>.</p><ul><li>One</li><li>Two</li></ul>"
        self.assertEqual(html_to_text(html), "Reset\nOpen Settings.\nOne\nTwo")

    def test_scripts_dropped(self):
        self.assertEqual(html_to_text("<p>Hi</p><script>alert(1)</script>"), "Hi")

    def test_plain_text(self):
        self.assertEqual(html_to_text("Title \n\n Body"), "Title\nBody")
        self.assertEqual(html_to_text(""), "")


class TestParseRetryDelay(unittest.TestCase):

    def test_json_retry_info(self):
        details = [{"@type": "type.googleapis.com/google.rpc.Help"}, {"@type": RETRY_INFO_TYPE, "retryDelay": "30s"}]
        self.assertEqual(parse_retry_delay(details), 30.0)

    def test_protobuf_style_retry_info(self):
        class Duration:
            seconds = 2
            nanos = 500000000

        class RetryInfo:
            retry_delay = Duration()

        self.assertEqual(parse_retry_delay([RetryInfo()]), 2.5)

    def test_timedelta(self):
        class RetryInfo:
            retry_delay = timedelta(seconds=7)

        self.assertEqual(parse_retry_delay([RetryInfo()]), 7.0)

    def test_missing(self):
        self.assertIsNone(parse_retry_delay(None))
        self.assertIsNone(parse_retry_delay([{"@type": RETRY_INFO_TYPE, "retryDelay": "soon"}]))


if __name__ == "__main__":
    unittest.main()
