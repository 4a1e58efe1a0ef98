"""Python symbol scanner: regex/line based.

Extracts ``import``/``from ... import`` references and top-level ``def``
and ``class`` names. Lines inside triple-quoted strings are ignored.
Does NOT build an AST.
"""

import re
from typing import List, Optional

from .base import BaseSymbolScanner
from .models import ImportTarget, Symbols

_IMPORT_RE = re.compile(r"^import\s+(.+)$")
_FROM_RE = re.compile(r"^from\s+(\.*[\w.]*)\s+import\s+(.+)$")
_DEF_RE = re.compile(r"^(?:async\s+)?def\s+(\w+)\s*\(")
_CLASS_RE = re.compile(r"^class\s+(\w+)")
_ALL_RE = re.compile(r"^__all__\s*=\s*[\[(](.*)[\])]")
_NAME_RE = re.compile(r"""['"](\w+)['"]""")


class PythonScanner(BaseSymbolScanner):
    """Line-based Python scanner.

    ``from . import a, b`` yields the references ``.a`` and ``.b`` so that
    sibling modules resolve; every other ``from M import ...`` yields ``M``.
    """

    def get_language(self) -> str:
        return "python"

    def parse(self, content: str) -> Symbols:
        imports: List[str] = []
        declarations: List[str] = []
        exports: List[str] = []
        in_string = False
        pending_dots: Optional[str] = None  # inside "from . import (" block

        for raw in content.splitlines():
            line = raw.split("#", 1)[0].rstrip() if "#" in raw else raw.rstrip()
            stripped = line.strip()

            quotes = stripped.count('"""') + stripped.count("'''")
            if in_string:
                if quotes % 2 == 1:
                    in_string = False
                continue
            if quotes % 2 == 1:
                in_string = True
                continue

            if pending_dots is not None:
                imports.extend(self._dotted_names(pending_dots, stripped))
                if ")" in stripped:
                    pending_dots = None
                continue

            if not stripped:
                continue

            m = _IMPORT_RE.match(stripped)
            if m:
                for part in m.group(1).split(","):
                    name = part.strip().split(" as ")[0].strip()
                    if name:
                        imports.append(name)
                continue

            m = _FROM_RE.match(stripped)
            if m:
                module, names = m.group(1), m.group(2)
                if module and set(module) == {"."}:
                    imports.extend(self._dotted_names(module, names))
                    if "(" in names and ")" not in names:
                        pending_dots = module
                elif module:
                    imports.append(module)
                continue

            # Only unindented lines count as top-level declarations
            if raw[:1].isspace():
                continue

            m = _DEF_RE.match(stripped) or _CLASS_RE.match(stripped)
            if m:
                declarations.append(m.group(1))
                continue

            m = _ALL_RE.match(stripped)
            if m:
                exports.extend(_NAME_RE.findall(m.group(1)))

        if not exports:
            exports = [d for d in declarations if not d.startswith("_")]

        return Symbols(
            imports=self.unique(imports),
            declarations=self.unique(declarations),
            exports=self.unique(exports),
        )

    @staticmethod
    def _dotted_names(dots: str, names: str) -> List[str]:
        refs = []
        for part in names.replace("(", " ").replace(")", " ").split(","):
            name = part.strip().split(" as ")[0].strip()
            if name and name != "*":
                refs.append(f"{dots}{name}")
        return refs

    def import_targets(self, ref: str, importer: str) -> ImportTarget:
        if ref.startswith("."):
            level = len(ref) - len(ref.lstrip("."))
            rest = ref[level:].replace(".", "/")
            base = "/".join([".."] * (level - 1)) or "."
            target = self.join_relative(importer, f"{base}/{rest}" if rest else base)
            if target is None:
                return ImportTarget(relative=True)
            if target == ".":
                return ImportTarget(relative=True, candidates=("__init__.py",))
            return ImportTarget(
                relative=True,
                candidates=(f"{target}.py", f"{target}/__init__.py"),
            )

        path = ref.replace(".", "/")
        return ImportTarget(relative=False, candidates=(f"{path}.py", f"{path}/__init__.py"))
