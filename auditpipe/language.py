"""Language detection: extension table first, shebang line second."""

import re
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import PurePosixPath

from auditpipe.pipeline.structures import SourceFile
from auditpipe.utils.constants import EXCLUDED_DIRECTORIES, EXCLUDED_EXTENSIONS

EXTENSION_MAP = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".py": "python",
    ".pyw": "python",
    ".pyi": "python",
    ".java": "java",
    ".go": "go",
    ".cs": "csharp",
    ".rs": "rust",
    ".c": "cpp",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".h": "cpp",
    ".hpp": "cpp",
}

SHEBANG_PATTERNS = [
    (re.compile(r"^#!.*\bpython[0-9.]*\b"), "python"),
    (re.compile(r"^#!.*\b(?:deno|bun|ts-node)\b"), "typescript"),
    (re.compile(r"^#!.*\bnode\b"), "javascript"),
]

EXTENSION_CONFIDENCE = 0.9
SHEBANG_CONFIDENCE = 0.85

# Files that carry dependency information but no analyzable code.
MANIFEST_NAMES = frozenset({"package.json", "requirements.txt", "requirements-dev.txt", "pyproject.toml"})


@dataclass(frozen=True)
class LanguageMapping:
    file_path: str
    language: str | None
    confidence: float
    detected_by: str  # extension | shebang | none


@dataclass(frozen=True)
class LanguageStats:
    language: str
    file_count: int
    line_count: int
    percentage: float

    def to_dict(self):
        return {
            "language": self.language,
            "fileCount": self.file_count,
            "lineCount": self.line_count,
            "percentage": self.percentage,
        }


def is_excluded_path(path: str) -> bool:
    """True for files under vendor/VCS directories or with binary extensions."""
    parts = PurePosixPath(path.replace("\\", "/")).parts
    if any(part in EXCLUDED_DIRECTORIES for part in parts[:-1]):
        return True
    name = parts[-1].lower() if parts else ""
    if name.endswith(".min.js"):
        return True
    return PurePosixPath(name).suffix in EXCLUDED_EXTENSIONS


def is_manifest(path: str) -> bool:
    name = PurePosixPath(path.replace("\\", "/")).name
    return name in MANIFEST_NAMES or (name.startswith("requirements") and name.endswith(".txt"))


class LanguageDetector:
    def __init__(self, extension_map: dict[str, str] | None = None):
        self.extension_map = dict(extension_map or EXTENSION_MAP)

    def supported_languages(self) -> list[str]:
        return sorted(set(self.extension_map.values()))

    def detect(self, source: SourceFile) -> LanguageMapping:
        extension = source.extension
        language = self.extension_map.get(extension)
        if language:
            return LanguageMapping(source.path, language, EXTENSION_CONFIDENCE, "extension")

        first_line = source.content.split("\n", 1)[0] if source.content else ""
        if first_line.startswith("#!"):
            for pattern, shebang_language in SHEBANG_PATTERNS:
                if pattern.search(first_line):
                    return LanguageMapping(source.path, shebang_language, SHEBANG_CONFIDENCE, "shebang")

        return LanguageMapping(source.path, None, 0.0, "none")

    def detect_all(self, sources: Iterable[SourceFile]) -> list[LanguageMapping]:
        return [self.detect(source) for source in sources]


def compute_stats(mappings: Iterable[LanguageMapping], sources: Iterable[SourceFile]) -> list[LanguageStats]:
    """Per-language file and line counts, largest first."""
    lines_by_path = {s.path: len(s.content.splitlines()) for s in sources}
    files: Counter = Counter()
    lines: Counter = Counter()
    for mapping in mappings:
        if mapping.language is None:
            continue
        files[mapping.language] += 1
        lines[mapping.language] += lines_by_path.get(mapping.file_path, 0)

    total = sum(files.values())
    stats = [
        LanguageStats(
            language=language,
            file_count=count,
            line_count=lines[language],
            percentage=round(count * 100 / total, 1) if total else 0.0,
        )
        for language, count in files.items()
    ]
    stats.sort(key=lambda s: (-s.file_count, s.language))
    return stats
