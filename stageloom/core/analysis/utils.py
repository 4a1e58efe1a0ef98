"""Analysis utilities.

Language detection, scanner registry, glob matching and directory skipping.
"""

import os
import re
from typing import Callable, Dict, Iterable, Optional, Pattern, TYPE_CHECKING

if TYPE_CHECKING:
    from .base import BaseSymbolScanner

# Extension → language mapping
SUPPORTED_EXTENSIONS: Dict[str, str] = {
    ".py": "python",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".go": "go",
}

# Directories to skip during file walking
SKIP_DIRECTORIES = frozenset({
    "__pycache__",
    ".git",
    "venv",
    "env",
    ".venv",
    "node_modules",
    ".tox",
    ".mypy_cache",
    ".pytest_cache",
    ".ruff_cache",
    "dist",
    "build",
    ".eggs",
    "vendor",
    ".stageloom",
})

# Scanner registry, lazy-loaded; custom factories may be registered
_scanner_registry: Dict[str, "BaseSymbolScanner"] = {}
_scanner_factories: Dict[str, Callable[[], "BaseSymbolScanner"]] = {}


def detect_language(file_path: str) -> Optional[str]:
    """Detect language from file extension, or None if unsupported."""
    _, ext = os.path.splitext(file_path)
    return SUPPORTED_EXTENSIONS.get(ext.lower())


def register_scanner(language: str, factory: Callable[[], "BaseSymbolScanner"]) -> None:
    """Install a scanner factory for a language, replacing any built-in one."""
    _scanner_factories[language] = factory
    _scanner_registry.pop(language, None)


def get_scanner(language: str) -> "BaseSymbolScanner":
    """Get a scanner instance for the given language.

    Raises:
        ValueError: If language is not supported
    """
    if language not in _scanner_registry:
        if language in _scanner_factories:
            _scanner_registry[language] = _scanner_factories[language]()
        elif language == "python":
            from .python_scanner import PythonScanner
            _scanner_registry["python"] = PythonScanner()
        elif language in ("typescript", "javascript"):
            from .typescript_scanner import TypeScriptScanner
            _scanner_registry[language] = TypeScriptScanner(language)
        elif language == "go":
            from .go_scanner import GoScanner
            _scanner_registry["go"] = GoScanner()
        else:
            raise ValueError(
                f"Unsupported language: {language}. "
                f"Supported: {sorted(set(SUPPORTED_EXTENSIONS.values()))}"
            )

    return _scanner_registry[language]


def should_skip_directory(dir_name: str) -> bool:
    """True if a directory should not be walked."""
    return dir_name in SKIP_DIRECTORIES


def glob_to_regex(pattern: str) -> Pattern:
    """Compile a glob supporting ``**``, ``*`` and ``?`` against posix paths.

    ``**/`` matches zero or more directories; ``*`` and ``?`` never cross ``/``.
    """
    pattern = pattern.replace("\\", "/")
    if pattern.startswith("./"):
        pattern = pattern[2:]
    out = []
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif c == "*":
            out.append("[^/]*")
            i += 1
        elif c == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(c))
            i += 1
    return re.compile("^" + "".join(out) + "$")


def matches_any(path: str, patterns: Iterable[Pattern]) -> bool:
    return any(p.match(path) for p in patterns)
