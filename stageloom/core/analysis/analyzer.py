"""Source file analysis: glob resolution, reading, symbol extraction."""

import hashlib
import logging
import os
from typing import List, Optional, Sequence

from ..errors import AnalysisError
from .models import FileRecord
from .utils import detect_language, get_scanner, glob_to_regex, matches_any, should_skip_directory

logger = logging.getLogger(__name__)


class CodeAnalyzer:
    """Produce FileRecords for the files of a project.

    Per-file failures (unreadable, undecodable, scanner crash) are logged,
    collected in ``errors`` and skipped; they never abort the pass.

    Args:
        root: Project root directory
    """

    def __init__(self, root: str):
        self.root = os.path.abspath(root)
        self.errors: List[AnalysisError] = []

    def analyze(
        self,
        patterns: Sequence[str],
        excludes: Optional[Sequence[str]] = None,
    ) -> List[FileRecord]:
        """Resolve globs against the root and analyse every matching file.

        Only files of a supported language are recorded.

        Args:
            patterns: Include globs relative to the root (e.g. ``"src/**/*.py"``)
            excludes: Exclude globs; a file matching any of them is dropped

        Returns:
            FileRecords sorted by path
        """
        self.errors = []
        includes = [glob_to_regex(p) for p in patterns]
        exclude_res = [glob_to_regex(p) for p in (excludes or [])]

        records: List[FileRecord] = []
        for rel_path in self._walk():
            if not matches_any(rel_path, includes) or matches_any(rel_path, exclude_res):
                continue
            language = detect_language(rel_path)
            if language is None:
                logger.debug(f"Skipping unsupported file: {rel_path}")
                continue
            record = self._analyze_file(rel_path, language)
            if record is not None:
                records.append(record)

        logger.info(
            "Analyzed %d files under %s (%d skipped with errors)",
            len(records), self.root, len(self.errors),
        )
        return records

    def analyze_source(self, rel_path: str, content: str, language: Optional[str] = None) -> FileRecord:
        """Build a FileRecord from in-memory content."""
        language = language or detect_language(rel_path)
        if language is None:
            raise AnalysisError(f"Unsupported file type: {rel_path}", rel_path)
        symbols = get_scanner(language).parse(content)
        return FileRecord(
            path=rel_path,
            content_hash=hashlib.sha256(content.encode("utf-8")).hexdigest(),
            language=language,
            imports=symbols.imports,
            declarations=symbols.declarations,
            exports=symbols.exports,
            line_count=content.count("\n") + (1 if content and not content.endswith("\n") else 0),
        )

    def _walk(self):
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(d for d in dirnames if not should_skip_directory(d))
            rel_dir = os.path.relpath(dirpath, self.root)
            for name in sorted(filenames):
                rel = name if rel_dir == "." else os.path.join(rel_dir, name)
                yield rel.replace(os.sep, "/")

    def _analyze_file(self, rel_path: str, language: str) -> Optional[FileRecord]:
        full_path = os.path.join(self.root, rel_path)
        try:
            with open(full_path, "r", encoding="utf-8", newline="") as f:
                content = f.read()
        except (OSError, UnicodeDecodeError) as e:
            self._record_error(AnalysisError(f"Cannot read {rel_path}: {e}", rel_path))
            return None

        try:
            return self.analyze_source(rel_path, content, language)
        except Exception as e:
            self._record_error(AnalysisError(f"Symbol extraction failed for {rel_path}: {e}", rel_path))
            return None

    def _record_error(self, error: AnalysisError) -> None:
        logger.warning(error.message)
        self.errors.append(error)
