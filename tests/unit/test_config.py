"""
Unit tests for configuration defaults, YAML loading and environment overrides.

Run: python -m pytest tests/unit/test_config.py -v
"""
import os
import sys
import tempfile
from pathlib import Path
from unittest import TestCase
from unittest.mock import patch

REPO_ROOT = Path(__file__).resolve().parent.parent.parent
sys.path.insert(0, str(REPO_ROOT))

from coderag.core.config import IngestionConfig, detect_language, load_config
from coderag.core.errors import ConfigurationError


class TestConfigLoading(TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self.tmp.name)
        # Nothing from the developer's shell or .env leaks into these tests
        self.env = patch.dict(os.environ, {}, clear=True)
        self.env.start()
        self.dotenv = patch('coderag.core.config.load_dotenv')
        self.dotenv.start()

    def tearDown(self):
        self.dotenv.stop()
        self.env.stop()
        self.tmp.cleanup()

    def write(self, text: str) -> Path:
        path = self.dir / "coderag.yaml"
        path.write_text(text)
        return path

    def test_defaults(self):
        config = IngestionConfig()
        config.validate()

        self.assertEqual(config.chunker.max_chunk_tokens, 512)
        self.assertEqual(config.embedding.dimension, 768)
        self.assertEqual(config.vector_db.upsert_batch_size, 100)
        self.assertEqual(config.vector_db.collection_name, "coderag_vectors")
        self.assertEqual(config.worker.checkpoint_interval_files, 50)
        self.assertEqual(config.memory.pause_threshold_percent, 85.0)
        self.assertIsNone(config.checkpoint_file)

    def test_yaml_sections_override_defaults(self):
        path = self.write(
            "chunker:\n"
            "  max_chunk_tokens: 256\n"
            "embedding:\n"
            "  provider: hash\n"
            "  dimension: 64\n"
            "discovery:\n"
            "  skip_dirs: [node_modules, dist]\n"
            "checkpoint_file: state/checkpoints.json\n"
        )

        config = load_config(path)

        self.assertEqual(config.chunker.max_chunk_tokens, 256)
        self.assertEqual(config.embedding.provider, "hash")
        self.assertEqual(config.embedding.dimension, 64)
        self.assertEqual(config.discovery.skip_dirs, {"node_modules", "dist"})
        self.assertEqual(config.checkpoint_file, Path("state/checkpoints.json"))

    def test_unknown_key_is_rejected(self):
        path = self.write("embedding:\n  dimensions: 64\n")
        with self.assertRaises(ConfigurationError) as ctx:
            load_config(path)
        self.assertIn("embedding.dimensions", str(ctx.exception))

    def test_unknown_section_is_rejected(self):
        with self.assertRaises(ConfigurationError):
            load_config(self.write("graph_db:\n  url: ws://x\n"))

    def test_bad_value_type(self):
        with self.assertRaises(ConfigurationError):
            load_config(self.write("worker:\n  index_batch_size: lots\n"))

    def test_cross_field_validation(self):
        with self.assertRaises(ConfigurationError):
            load_config(self.write("chunker:\n  max_chunk_tokens: 10\n  min_chunk_tokens: 20\n"))
        with self.assertRaises(ConfigurationError):
            load_config(self.write("memory:\n  warning_threshold_percent: 90\n  pause_threshold_percent: 80\n"))

    def test_malformed_yaml(self):
        with self.assertRaises(ConfigurationError):
            load_config(self.write("chunker: [unclosed\n"))

    def test_missing_explicit_path(self):
        with self.assertRaises(ConfigurationError):
            load_config(self.dir / "nope.yaml")

    def test_config_path_from_environment(self):
        path = self.write("worker:\n  index_batch_size: 8\n")
        os.environ['CODERAG_CONFIG'] = str(path)

        self.assertEqual(load_config().worker.index_batch_size, 8)

    def test_environment_overrides_yaml(self):
        path = self.write("embedding:\n  provider: ollama\n  dimension: 768\n")
        os.environ.update({
            'EMBEDDING_PROVIDER': 'hash',
            'EMBEDDING_DIMENSION': '128',
            'VECTOR_BACKEND': 'memory',
            'CODERAG_CHECKPOINT_FILE': str(self.dir / "cp.json"),
        })

        config = load_config(path)

        self.assertEqual(config.embedding.provider, "hash")
        self.assertEqual(config.embedding.dimension, 128)
        self.assertEqual(config.vector_db.backend, "memory")
        self.assertEqual(config.checkpoint_file, self.dir / "cp.json")

    def test_environment_ignored_when_disabled(self):
        path = self.write("embedding:\n  provider: ollama\n")
        os.environ['EMBEDDING_PROVIDER'] = 'hash'

        self.assertEqual(load_config(path, use_env=False).embedding.provider, "ollama")


class TestLanguageDetection(TestCase):

    def test_known_and_unknown_extensions(self):
        self.assertEqual(detect_language("src/App.TSX"), "typescript")
        self.assertEqual(detect_language("lib.rs"), "rust")
        self.assertEqual(detect_language("Makefile"), "text")
