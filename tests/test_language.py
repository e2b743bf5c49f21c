"""Tests for language detection and per-language statistics."""

import pytest

from auditpipe.language import LanguageDetector, compute_stats, is_excluded_path, is_manifest
from auditpipe.pipeline.structures import SourceFile


@pytest.mark.parametrize(
    "path, language",
    [
        ("src/app.py", "python"),
        ("web/index.JS", "javascript"),
        ("web/App.tsx", "typescript"),
        ("cmd/main.go", "go"),
        ("lib/core.rs", "rust"),
        ("include/util.hpp", "cpp"),
    ],
)
def test_detect_by_extension(path, language):
    mapping = LanguageDetector().detect(SourceFile(path, ""))
    assert mapping.language == language
    assert mapping.detected_by == "extension"
    assert mapping.confidence == pytest.approx(0.9)


@pytest.mark.parametrize(
    "first_line, language",
    [
        ("#!/usr/bin/env python3", "python"),
        ("#!/usr/bin/env node", "javascript"),
        ("#!/usr/bin/env -S deno run", "typescript"),
    ],
)
def test_detect_by_shebang(first_line, language):
    mapping = LanguageDetector().detect(SourceFile("bin/tool", first_line + "\nbody\n"))
    assert mapping.language == language
    assert mapping.detected_by == "shebang"
    assert mapping.confidence == pytest.approx(0.85)


def test_extension_wins_over_shebang():
    mapping = LanguageDetector().detect(SourceFile("tool.js", "#!/usr/bin/env python\n"))
    assert mapping.language == "javascript"


def test_undetected_file():
    mapping = LanguageDetector().detect(SourceFile("README.md", "# readme\n"))
    assert mapping.language is None
    assert mapping.confidence == 0.0
    assert mapping.detected_by == "none"


def test_custom_extension_map():
    detector = LanguageDetector({".kt": "kotlin"})
    assert detector.detect(SourceFile("a.kt", "")).language == "kotlin"
    assert detector.supported_languages() == ["kotlin"]


def test_compute_stats():
    sources = [
        SourceFile("a.py", "x = 1\ny = 2\n"),
        SourceFile("b.py", "z = 3\n"),
        SourceFile("c.js", "let a;\n"),
        SourceFile("d.md", "doc\n"),
    ]
    detector = LanguageDetector()
    stats = compute_stats(detector.detect_all(sources), sources)
    assert [s.to_dict() for s in stats] == [
        {"language": "python", "fileCount": 2, "lineCount": 3, "percentage": 66.7},
        {"language": "javascript", "fileCount": 1, "lineCount": 1, "percentage": 33.3},
    ]


def test_stats_tie_broken_by_name():
    sources = [SourceFile("a.py", ""), SourceFile("b.go", "")]
    stats = compute_stats(LanguageDetector().detect_all(sources), sources)
    assert [s.language for s in stats] == ["go", "python"]


@pytest.mark.parametrize(
    "path, expected",
    [
        ("package.json", True),
        ("sub/requirements-prod.txt", True),
        ("pyproject.toml", True),
        ("notes.txt", False),
    ],
)
def test_is_manifest(path, expected):
    assert is_manifest(path) is expected


@pytest.mark.parametrize(
    "path, expected",
    [
        ("node_modules/lib/index.js", True),
        ("src/.git/config", True),
        ("static/app.min.js", True),
        ("assets/logo.png", True),
        ("src/app.py", False),
        ("build.py", False),
    ],
)
def test_is_excluded_path(path, expected):
    assert is_excluded_path(path) is expected
