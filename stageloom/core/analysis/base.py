"""Base interface for language symbol scanners.

Each scanner turns raw file content into ``Symbols`` by lexical line
scanning, and knows how its language spells a module reference so the
graph builder can resolve imports without language knowledge. A real
parser can replace a scanner by implementing the same interface.
"""

import posixpath
from abc import ABC, abstractmethod
from typing import Optional

from .models import ImportTarget, Symbols


class BaseSymbolScanner(ABC):
    """Abstract base for per-language scanners.

    Subclasses implement:
    - get_language(): returns language name string
    - parse(): extracts imports and top-level declarations from content
    - import_targets(): maps an import reference to candidate in-project paths
    """

    @abstractmethod
    def get_language(self) -> str:
        """Return the language identifier (e.g., 'python', 'go')."""
        ...

    @abstractmethod
    def parse(self, content: str) -> Symbols:
        """Extract symbols from source content.

        Args:
            content: Full source text

        Returns:
            Symbols with imports in source order (duplicates removed)
        """
        ...

    @abstractmethod
    def import_targets(self, ref: str, importer: str) -> ImportTarget:
        """Map an import reference to candidate project paths.

        Args:
            ref: Import reference as returned by parse()
            importer: Relative posix path of the importing file

        Returns:
            ImportTarget describing where the reference may resolve
        """
        ...

    @staticmethod
    def join_relative(importer: str, ref: str) -> Optional[str]:
        """Resolve ``ref`` against the importer's directory.

        Returns None when the result escapes the project root.
        """
        joined = posixpath.normpath(posixpath.join(posixpath.dirname(importer), ref))
        if joined == ".." or joined.startswith("../") or joined.startswith("/"):
            return None
        return joined

    @staticmethod
    def unique(items) -> tuple:
        """Order-preserving de-duplication."""
        return tuple(dict.fromkeys(items))
