"""TypeScript / JavaScript symbol scanner: regex based.

Handles ES module imports (including multi-line named imports),
re-exports, side-effect imports, ``require()`` and dynamic ``import()``.
"""

import re
from typing import List

from .base import BaseSymbolScanner
from .models import ImportTarget, Symbols

_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
_LINE_COMMENT_RE = re.compile(r"^\s*//.*$", re.MULTILINE)

# import x from 'm' / import {a,\n b} from 'm' / import 'm' / export * from 'm'
_MODULE_IMPORT_RE = re.compile(
    r"^\s*(?:import|export)\s+(?:type\s+)?(?:[\w*${}\s,]+?\s+from\s+)?['\"]([^'\"]+)['\"]",
    re.MULTILINE,
)
_REQUIRE_RE = re.compile(r"\brequire\(\s*['\"]([^'\"]+)['\"]\s*\)")
_DYNAMIC_IMPORT_RE = re.compile(r"\bimport\(\s*['\"]([^'\"]+)['\"]\s*\)")

_DECL_RE = re.compile(
    r"^(export\s+)?(?:default\s+)?(?:declare\s+)?(?:abstract\s+)?(?:async\s+)?"
    r"(?:function\s*\*?|class|interface|enum|type|const|let|var)\s+([A-Za-z_$][\w$]*)"
)
_EXPORT_LIST_RE = re.compile(r"^export\s*\{([^}]*)\}")

_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")
_ALIAS_PREFIXES = ("@/", "~/")


class TypeScriptScanner(BaseSymbolScanner):
    """Regex scanner shared by TypeScript and JavaScript."""

    def __init__(self, language: str = "typescript"):
        self._language = language

    def get_language(self) -> str:
        return self._language

    def parse(self, content: str) -> Symbols:
        text = _LINE_COMMENT_RE.sub("", _BLOCK_COMMENT_RE.sub("", content))

        imports: List[str] = []
        for pattern in (_MODULE_IMPORT_RE, _REQUIRE_RE, _DYNAMIC_IMPORT_RE):
            imports.extend(pattern.findall(text))

        declarations: List[str] = []
        exports: List[str] = []
        for line in text.splitlines():
            if not line or line[0].isspace():
                continue
            m = _DECL_RE.match(line)
            if m:
                declarations.append(m.group(2))
                if m.group(1):
                    exports.append(m.group(2))
                continue
            m = _EXPORT_LIST_RE.match(line)
            if m:
                for part in m.group(1).split(","):
                    name = part.strip().split(" as ")[-1].strip()
                    if name:
                        exports.append(name)

        return Symbols(
            imports=self.unique(imports),
            declarations=self.unique(declarations),
            exports=self.unique(exports),
        )

    def import_targets(self, ref: str, importer: str) -> ImportTarget:
        if ref.startswith("./") or ref.startswith("../"):
            base = self.join_relative(importer, ref)
            if base is None:
                return ImportTarget(relative=True)
            return ImportTarget(relative=True, candidates=self._expand(base))

        for prefix in _ALIAS_PREFIXES:
            if ref.startswith(prefix):
                ref = ref[len(prefix):]
                break
        return ImportTarget(relative=False, candidates=self._expand(ref))

    @staticmethod
    def _expand(base: str) -> tuple:
        candidates = [base]
        stem = base
        # ESM-style "./x.js" pointing at "x.ts"
        for ext in _EXTENSIONS:
            if base.endswith(ext):
                stem = base[: -len(ext)]
                break
        candidates.extend(stem + ext for ext in _EXTENSIONS)
        candidates.extend(f"{base}/index{ext}" for ext in _EXTENSIONS)
        return tuple(dict.fromkeys(candidates))
