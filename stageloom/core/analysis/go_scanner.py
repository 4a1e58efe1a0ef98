"""Go symbol scanner: regex/line based.

Handles single-line and parenthesised multi-line import blocks, top-level
functions, methods and type declarations. Exported names are the
capitalised declarations.
"""

import re
from typing import List

from .base import BaseSymbolScanner
from .models import ImportTarget, Symbols

_SINGLE_IMPORT_RE = re.compile(r'^import\s+(?:[\w.]+\s+)?"([^"]+)"')
_BLOCK_START_RE = re.compile(r"^import\s*\($")
_BLOCK_ENTRY_RE = re.compile(r'^(?:[\w.]+\s+)?"([^"]+)"')
_FUNC_RE = re.compile(r"^func\s+(?:\(\s*\w*\s*\*?[\w.\[\], ]+\)\s*)?(\w+)\s*[\[(]")
_TYPE_RE = re.compile(r"^type\s+(\w+)\b")


class GoScanner(BaseSymbolScanner):
    """Line-based Go scanner."""

    def get_language(self) -> str:
        return "go"

    def parse(self, content: str) -> Symbols:
        imports: List[str] = []
        declarations: List[str] = []
        in_block = False
        in_comment = False

        for raw in content.splitlines():
            line = raw.strip()

            if in_comment:
                if "*/" in line:
                    in_comment = False
                continue
            if line.startswith("/*") and "*/" not in line:
                in_comment = True
                continue
            if not line or line.startswith("//"):
                continue

            if in_block:
                if line.startswith(")"):
                    in_block = False
                    continue
                m = _BLOCK_ENTRY_RE.match(line)
                if m:
                    imports.append(m.group(1))
                continue

            if _BLOCK_START_RE.match(line):
                in_block = True
                continue

            m = _SINGLE_IMPORT_RE.match(line)
            if m:
                imports.append(m.group(1))
                continue

            if raw[:1].isspace():
                continue

            m = _FUNC_RE.match(line) or _TYPE_RE.match(line)
            if m:
                declarations.append(m.group(1))

        declarations_t = self.unique(declarations)
        return Symbols(
            imports=self.unique(imports),
            declarations=declarations_t,
            exports=tuple(d for d in declarations_t if d[:1].isupper()),
        )

    def import_targets(self, ref: str, importer: str) -> ImportTarget:
        if ref.startswith("./") or ref.startswith("../"):
            base = self.join_relative(importer, ref)
            if base is None:
                return ImportTarget(relative=True)
            return ImportTarget(relative=True, candidates=(f"{base}/",))

        # Module prefix is unknown: try the most specific path suffix first
        parts = [p for p in ref.split("/") if p]
        candidates = tuple("/".join(parts[i:]) + "/" for i in range(len(parts)))
        return ImportTarget(relative=False, candidates=candidates)
