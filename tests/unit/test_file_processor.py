"""
Unit tests for file discovery, content filtering and file reading.

Run: python -m pytest tests/unit/test_file_processor.py -v
"""
import sys
import tempfile
from pathlib import Path
from unittest import IsolatedAsyncioTestCase, TestCase

REPO_ROOT = Path(__file__).resolve().parent.parent.parent
sys.path.insert(0, str(REPO_ROOT))

from coderag.core.config import FileDiscoveryOptions
from coderag.core.file_processor import FileProcessor, is_binary
from coderag.services.content_filter import ContentFilter


def build_tree(root: Path) -> None:
    files = {
        "src/main.py": "print('hi')\n",
        "src/lib/util.rs": "pub fn util() {}\n",
        "web/app.tsx": "export const App = () => null;\n",
        "web/package-lock.json": "{}\n",
        "web/vendor.min.js": "var a=1;\n",
        "node_modules/left-pad/index.js": "module.exports = 1;\n",
        "build/output.py": "x = 1\n",
        "README.md": "# Project\n",
        "notes.unknownext": "not code\n",
        "Proto.g.cs": "// generated\n",
    }
    for relative, text in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)


class TestContentFilter(TestCase):

    def test_default_exclusions(self):
        f = ContentFilter()
        self.assertFalse(f.should_include_file("web/package-lock.json"))
        self.assertFalse(f.should_include_file("Cargo.lock"))
        self.assertFalse(f.should_include_file("static/app.min.js"))
        self.assertFalse(f.should_include_file("Forms\\Main.Designer.cs"))
        self.assertTrue(f.should_include_file("src/distance.py"))
        self.assertTrue(f.should_include_file("src/main.py"))

    def test_extra_patterns(self):
        f = ContentFilter(extra_patterns=[r'_test\.go$'])
        self.assertFalse(f.should_include_file("pkg/server_test.go"))
        self.assertTrue(f.should_include_file("pkg/server.go"))


class TestFileDiscovery(TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        build_tree(self.root)

    def tearDown(self):
        self.tmp.cleanup()

    def test_discovers_sorted_source_files(self):
        files = FileProcessor().discover_files(self.root)

        self.assertEqual(
            [f.relative_path for f in files],
            ["README.md", "src/lib/util.rs", "src/main.py", "web/app.tsx"],
        )
        by_path = {f.relative_path: f for f in files}
        self.assertEqual(by_path["src/lib/util.rs"].language, "rust")
        self.assertEqual(by_path["src/main.py"].size_bytes, len("print('hi')\n"))

    def test_discovery_is_deterministic(self):
        processor = FileProcessor()
        first = [f.relative_path for f in processor.discover_files(self.root)]
        second = [f.relative_path for f in processor.discover_files(self.root)]
        self.assertEqual(first, second)

    def test_unknown_extensions_opt_in(self):
        options = FileDiscoveryOptions(include_unknown_extensions=True)
        paths = [f.relative_path for f in FileProcessor(options).discover_files(self.root)]
        self.assertIn("notes.unknownext", paths)

    def test_oversized_files_skipped(self):
        (self.root / "src" / "huge.py").write_text("x = 1\n" * 1000)
        options = FileDiscoveryOptions(max_file_size=100)
        paths = [f.relative_path for f in FileProcessor(options).discover_files(self.root)]
        self.assertNotIn("src/huge.py", paths)
        self.assertIn("src/main.py", paths)

    def test_missing_repository(self):
        with self.assertRaises(FileNotFoundError):
            FileProcessor().discover_files(self.root / "missing")


class TestFileReading(IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    async def test_reads_text_and_skips_binary(self):
        (self.root / "ok.py").write_text("name = 'çà'\n", encoding="utf-8")
        (self.root / "blob.py").write_bytes(b"\x00\x01\x02binary")
        processor = FileProcessor()
        files = {f.relative_path: f for f in processor.discover_files(self.root)}

        self.assertEqual(await processor.read_file(files["ok.py"]), "name = 'çà'\n")
        self.assertIsNone(await processor.read_file(files["blob.py"]))

    async def test_invalid_utf8_is_replaced(self):
        (self.root / "latin.py").write_bytes(b"x = '\xe9'\n")
        processor = FileProcessor()
        source = processor.discover_files(self.root)[0]

        self.assertEqual(await processor.read_file(source), "x = '�'\n")

    async def test_vanished_file_returns_none(self):
        (self.root / "gone.py").write_text("x = 1\n")
        processor = FileProcessor()
        source = processor.discover_files(self.root)[0]
        source.path.unlink()

        self.assertIsNone(await processor.read_file(source))

    def test_is_binary(self):
        self.assertTrue(is_binary(b"abc\x00def"))
        self.assertFalse(is_binary(b"plain text"))
