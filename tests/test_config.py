"""
Test suite for run configuration.
"""

import os
import sys
import unittest
from pathlib import Path
from unittest.mock import patch

# Add the project root to the Python path
sys.path.append(str(Path(__file__).parent.parent))

from kbsynth import config
from kbsynth.config import PipelineConfig

VECTOR_DB_VARS = ["VECTOR_DB_HOST", "VECTOR_DB_PORT", "VECTOR_DB_USERNAME", "VECTOR_DB_PASSWORD", "VECTOR_DB_INDEX"]


class TestPipelineConfig(unittest.TestCase):
    """Tests for the PipelineConfig class."""

    def test_vector_db_defaults_to_module_constants(self):
        self.assertEqual(
            PipelineConfig().vector_db,
            {
                "host": config.VECTOR_DB_HOST,
                "port": config.VECTOR_DB_PORT,
                "username": config.VECTOR_DB_USERNAME,
                "password": config.VECTOR_DB_PASSWORD,
                "index": config.VECTOR_DB_INDEX,
            },
        )

    def test_from_env_reads_environment(self):
        with patch.dict(os.environ, {"VECTOR_DB_INDEX": "support_kb", "MAX_ATTEMPTS": "7", "PIPELINE_TIMEOUT": "30"}):
            settings = PipelineConfig.from_env()

        self.assertEqual(settings.vector_db["index"], "support_kb")
        self.assertEqual(settings.max_attempts, 7)
        self.assertEqual(settings.timeout, 30.0)

    def test_from_env_falls_back_to_constants(self):
        environ = {key: value for key, value in os.environ.items() if key not in VECTOR_DB_VARS + ["MAX_ATTEMPTS"]}
        with patch.dict(os.environ, environ, clear=True), \
                patch.object(config, "VECTOR_DB_INDEX", "from_dotenv"), \
                patch.object(config, "MAX_ATTEMPTS", 9):
            settings = PipelineConfig.from_env()

        self.assertEqual(settings.vector_db["index"], "from_dotenv")
        self.assertEqual(settings.max_attempts, 9)


if __name__ == "__main__":
    unittest.main()
