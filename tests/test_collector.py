"""Tests for source collectors."""

import pytest

from auditpipe.collector import FilesystemCollector, InMemoryCollector, SourceCollector
from auditpipe.pipeline.structures import SourceFile


def test_in_memory_collector_sorted():
    collector = InMemoryCollector({"b.py": "", "a.py": "x"})
    assert isinstance(collector, SourceCollector)
    assert [f.path for f in collector.collect("any")] == ["a.py", "b.py"]


def test_in_memory_collector_accepts_source_files():
    collector = InMemoryCollector([SourceFile("z.js", ""), SourceFile("m.js", "")])
    assert [f.path for f in collector.collect("any", "rev")] == ["m.js", "z.js"]


class TestFilesystemCollector:
    def test_walks_tree_with_relative_posix_paths(self, tmp_path):
        (tmp_path / "src" / "pkg").mkdir(parents=True)
        (tmp_path / "src" / "pkg" / "mod.py").write_text("x = 1\n", encoding="utf-8")
        (tmp_path / "top.js").write_text("let a;\n", encoding="utf-8")

        files = FilesystemCollector(tmp_path).collect("demo")
        assert [f.path for f in files] == ["src/pkg/mod.py", "top.js"]
        assert files[0].content == "x = 1\n"

    def test_skips_excluded_binary_and_large_files(self, tmp_path):
        (tmp_path / "node_modules" / "dep").mkdir(parents=True)
        (tmp_path / "node_modules" / "dep" / "index.js").write_text("x\n", encoding="utf-8")
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("ref\n", encoding="utf-8")
        (tmp_path / "logo.png").write_bytes(b"\x89PNG")
        (tmp_path / "blob.dat").write_bytes(b"abc\x00def")
        (tmp_path / "big.py").write_text("x = 1\n" * 100, encoding="utf-8")
        (tmp_path / "small.py").write_text("y = 2\n", encoding="utf-8")

        files = FilesystemCollector(tmp_path, max_file_size=100).collect("demo")
        assert [f.path for f in files] == ["small.py"]

    def test_missing_root(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            FilesystemCollector(tmp_path / "absent").collect("demo")
