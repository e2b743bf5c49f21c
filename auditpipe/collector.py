"""Source collectors: hand the pipeline a list of files with content."""

import os
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol, runtime_checkable

from auditpipe.pipeline.structures import SourceFile
from auditpipe.utils.constants import DEFAULT_MAX_FILE_SIZE, EXCLUDED_DIRECTORIES, EXCLUDED_EXTENSIONS
from auditpipe.utils.logging import logger


@runtime_checkable
class SourceCollector(Protocol):
    def collect(self, project_id: str, revision: str | None = None) -> list[SourceFile]: ...


class InMemoryCollector:
    """Serves a fixed set of files regardless of project or revision."""

    def __init__(self, files: Iterable[SourceFile] | dict[str, str]):
        if isinstance(files, dict):
            files = [SourceFile(path=p, content=c) for p, c in files.items()]
        self.files = sorted(files, key=lambda f: f.path)

    def collect(self, project_id: str, revision: str | None = None) -> list[SourceFile]:
        return list(self.files)


class FilesystemCollector:
    """Walks a directory tree, skipping VCS/vendor directories and binary files.

    Paths are reported relative to root with forward slashes.
    """

    def __init__(self, root: str | Path, max_file_size: int = DEFAULT_MAX_FILE_SIZE):
        self.root = Path(root).resolve()
        self.max_file_size = max_file_size

    def _is_binary(self, path: Path) -> bool:
        try:
            with open(path, "rb") as f:
                chunk = f.read(8192)
        except OSError:
            return True
        return b"\x00" in chunk

    def collect(self, project_id: str, revision: str | None = None) -> list[SourceFile]:
        if not self.root.is_dir():
            raise FileNotFoundError(f"Source root does not exist: {self.root}")

        files: list[SourceFile] = []
        skipped = 0
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(d for d in dirnames if d not in EXCLUDED_DIRECTORIES)
            for filename in sorted(filenames):
                path = Path(dirpath) / filename
                if path.suffix.lower() in EXCLUDED_EXTENSIONS or path.is_symlink():
                    skipped += 1
                    continue
                try:
                    size = path.stat().st_size
                except OSError:
                    skipped += 1
                    continue
                if size > self.max_file_size or self._is_binary(path):
                    skipped += 1
                    continue
                try:
                    content = path.read_text(encoding="utf-8", errors="replace")
                except OSError as e:
                    logger.warning(f"Could not read {path}: {e}")
                    skipped += 1
                    continue
                files.append(SourceFile(path=path.relative_to(self.root).as_posix(), content=content))

        logger.debug(f"Collected {len(files)} files for {project_id} from {self.root} ({skipped} skipped)")
        return files
