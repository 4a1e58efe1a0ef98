"""Stageloom dependency analysis: lexical symbol scanning and graphs.

Public API:
    analyze(root, patterns, excludes) → list[FileRecord]
    build_graph(records) → DependencyGraph
    detect_cycles(graph) → list[Cycle]
"""

from typing import List, Optional, Sequence

from .analyzer import CodeAnalyzer
from .base import BaseSymbolScanner
from .graph import build_graph, detect_cycles
from .models import Cycle, DependencyGraph, FileRecord, ImportTarget, Symbols
from .utils import detect_language, get_scanner, register_scanner

__all__ = [
    "analyze",
    "build_graph",
    "detect_cycles",
    "detect_language",
    "get_scanner",
    "register_scanner",
    "BaseSymbolScanner",
    "CodeAnalyzer",
    "Cycle",
    "DependencyGraph",
    "FileRecord",
    "ImportTarget",
    "Symbols",
]


def analyze(
    root: str,
    patterns: Sequence[str],
    excludes: Optional[Sequence[str]] = None,
) -> List[FileRecord]:
    """Analyse the files under ``root`` matching ``patterns``.

    Per-file errors are logged and skipped; use CodeAnalyzer directly to
    inspect them.
    """
    return CodeAnalyzer(root).analyze(patterns, excludes)
