"""Tests for dependency analysis: scanners, graph building, cycle detection."""

import hashlib

import pytest

from stageloom.core.analysis import (
    CodeAnalyzer,
    DependencyGraph,
    FileRecord,
    analyze,
    build_graph,
    detect_cycles,
    detect_language,
    get_scanner,
)
from stageloom.core.analysis.utils import glob_to_regex


# =========================================================================
# Sample sources
# =========================================================================

PY_MODULE = '''"""Orders service."""

import os
import json, logging as log
from typing import List
from .models import Order
from . import repo, events
from .. import settings

__all__ = ["OrderService"]


class OrderService:
    def place(self):
        import inner_only
        return None


def _helper():
    pass


async def refresh():
    pass
'''

PY_DOCSTRING_IMPORTS = '''"""
import should_not_count
from nowhere import thing
"""
import real
'''

TS_MODULE = """
/* import fake from './commented' */
import { a,
  b } from './lib/util';
import Default from "../shared/base";
import './side-effect';
// import gone from './gone';
export * from './reexport';
const x = require('./legacy');
const lazy = () => import('./lazy');

export function handler() {}
export class Service {}
interface Hidden {}
const internal = 1;
export { internal as publicName };
"""

GO_MODULE = """package orders

import "fmt"

import (
    "strings"
    str2 "example.com/app/internal/store"
    /* comment */
)

/*
func Fake() {}
*/

type Order struct{}

func (o *Order) Total() int { return 0 }

func NewOrder() *Order { return nil }

func helper[T any](v T) T { return v }
"""


def _write(root, rel, content):
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


def _make_record(path, imports=(), language="python"):
    return FileRecord(path=path, content_hash="x", language=language, imports=tuple(imports))


# ── Tests: language detection / globs ──────────────────────────────────


class TestDetectLanguage:

    def test_known_extensions(self):
        assert detect_language("a/b.py") == "python"
        assert detect_language("a/b.tsx") == "typescript"
        assert detect_language("a/b.mjs") == "javascript"
        assert detect_language("main.go") == "go"

    def test_unknown_extension(self):
        assert detect_language("README.md") is None

    def test_unknown_scanner_raises(self):
        with pytest.raises(ValueError):
            get_scanner("cobol")


class TestGlobToRegex:

    def test_double_star_matches_zero_or_more_dirs(self):
        regex = glob_to_regex("**/*.py")
        assert regex.match("a.py")
        assert regex.match("src/pkg/a.py")
        assert not regex.match("src/a.pyc")

    def test_single_star_does_not_cross_directories(self):
        regex = glob_to_regex("src/*.py")
        assert regex.match("src/a.py")
        assert not regex.match("src/pkg/a.py")

    def test_leading_dot_slash_is_ignored(self):
        assert glob_to_regex("./src/*.py").match("src/a.py")

    def test_dot_prefixed_names_are_kept(self):
        assert glob_to_regex(".github/*.yml").match(".github/ci.yml")


# ── Tests: Python scanner ──────────────────────────────────────────────


class TestPythonScanner:

    def test_imports(self):
        symbols = get_scanner("python").parse(PY_MODULE)
        assert symbols.imports == (
            "os", "json", "logging", "typing", ".models", ".repo", ".events", "..settings", "inner_only",
        )

    def test_only_top_level_declarations(self):
        symbols = get_scanner("python").parse(PY_MODULE)
        assert symbols.declarations == ("OrderService", "_helper", "refresh")

    def test_exports_follow_dunder_all(self):
        symbols = get_scanner("python").parse(PY_MODULE)
        assert symbols.exports == ("OrderService",)

    def test_exports_default_to_public_declarations(self):
        symbols = get_scanner("python").parse("def a():\n    pass\n\ndef _b():\n    pass\n")
        assert symbols.exports == ("a",)

    def test_docstring_content_is_skipped(self):
        symbols = get_scanner("python").parse(PY_DOCSTRING_IMPORTS)
        assert symbols.imports == ("real",)

    def test_parenthesised_sibling_import(self):
        symbols = get_scanner("python").parse("from . import (\n    alpha,\n    beta as b,\n)\n")
        assert symbols.imports == (".alpha", ".beta")

    def test_relative_targets(self):
        scanner = get_scanner("python")
        target = scanner.import_targets(".models", "shop/orders/service.py")
        assert target.relative
        assert target.candidates == ("shop/orders/models.py", "shop/orders/models/__init__.py")

        parent = scanner.import_targets("..settings", "shop/orders/service.py")
        assert parent.candidates[0] == "shop/settings.py"

    def test_relative_target_escaping_root(self):
        target = get_scanner("python").import_targets("...x", "a/b.py")
        assert target.relative
        assert target.candidates == ()

    def test_absolute_targets(self):
        target = get_scanner("python").import_targets("shop.orders", "main.py")
        assert not target.relative
        assert target.candidates == ("shop/orders.py", "shop/orders/__init__.py")


# ── Tests: TypeScript scanner ──────────────────────────────────────────


class TestTypeScriptScanner:

    def test_imports_including_multiline_require_and_dynamic(self):
        symbols = get_scanner("typescript").parse(TS_MODULE)
        assert set(symbols.imports) == {
            "./lib/util", "../shared/base", "./side-effect", "./reexport", "./legacy", "./lazy",
        }
        assert "./commented" not in symbols.imports
        assert "./gone" not in symbols.imports

    def test_declarations_and_exports(self):
        symbols = get_scanner("typescript").parse(TS_MODULE)
        assert symbols.declarations == ("x", "lazy", "handler", "Service", "Hidden", "internal")
        assert symbols.exports == ("handler", "Service", "publicName")

    def test_relative_target_expands_extensions_and_index(self):
        target = get_scanner("typescript").import_targets("./lib/util", "src/app.ts")
        assert target.relative
        assert target.candidates[0] == "src/lib/util"
        assert "src/lib/util.ts" in target.candidates
        assert "src/lib/util/index.ts" in target.candidates

    def test_js_extension_maps_to_ts_source(self):
        target = get_scanner("typescript").import_targets("./util.js", "src/app.ts")
        assert "src/util.ts" in target.candidates

    def test_alias_prefix_is_stripped(self):
        target = get_scanner("typescript").import_targets("@/components/button", "src/app.ts")
        assert not target.relative
        assert "components/button.tsx" in target.candidates


# ── Tests: Go scanner ──────────────────────────────────────────────────


class TestGoScanner:

    def test_single_and_block_imports(self):
        symbols = get_scanner("go").parse(GO_MODULE)
        assert symbols.imports == ("fmt", "strings", "example.com/app/internal/store")

    def test_declarations_skip_comments(self):
        symbols = get_scanner("go").parse(GO_MODULE)
        assert symbols.declarations == ("Order", "Total", "NewOrder", "helper")
        assert "Fake" not in symbols.declarations

    def test_exports_are_capitalised(self):
        symbols = get_scanner("go").parse(GO_MODULE)
        assert symbols.exports == ("Order", "Total", "NewOrder")

    def test_absolute_targets_are_directory_suffixes(self):
        target = get_scanner("go").import_targets("example.com/app/internal/store", "main.go")
        assert target.candidates[0] == "example.com/app/internal/store/"
        assert target.candidates[-1] == "store/"


# ── Tests: CodeAnalyzer ────────────────────────────────────────────────


class TestCodeAnalyzer:

    def test_analyze_respects_patterns_and_skips(self, tmp_path):
        _write(tmp_path, "src/a.py", "import b\n")
        _write(tmp_path, "src/b.py", "x = 1\n")
        _write(tmp_path, "src/notes.md", "# notes\n")
        _write(tmp_path, "tests/test_a.py", "import a\n")
        _write(tmp_path, "node_modules/lib/index.js", "module.exports = 1\n")

        records = analyze(str(tmp_path), ["**/*"], ["tests/**"])
        assert [r.path for r in records] == ["src/a.py", "src/b.py"]

    def test_record_hash_and_line_count(self, tmp_path):
        content = "import os\n\ndef f():\n    pass\n"
        _write(tmp_path, "m.py", content)

        record = analyze(str(tmp_path), ["*.py"])[0]
        assert record.content_hash == hashlib.sha256(content.encode("utf-8")).hexdigest()
        assert record.line_count == 4
        assert record.language == "python"
        assert record.declarations == ("f",)

    def test_unreadable_file_is_skipped_and_collected(self, tmp_path):
        _write(tmp_path, "good.py", "x = 1\n")
        (tmp_path / "bad.py").write_bytes(b"\xff\xfe\x00invalid")

        analyzer = CodeAnalyzer(str(tmp_path))
        records = analyzer.analyze(["**/*"])
        assert [r.path for r in records] == ["good.py"]
        assert len(analyzer.errors) == 1
        assert analyzer.errors[0].path == "bad.py"


# ── Tests: graph building ──────────────────────────────────────────────


class TestBuildGraph:

    def test_relative_and_absolute_python_edges(self):
        records = [
            _make_record("shop/orders/service.py", [".models", "shop.util", "requests"]),
            _make_record("shop/orders/models.py"),
            _make_record("shop/util.py"),
        ]
        graph = build_graph(records)
        assert graph.dependencies_of("shop/orders/service.py") == [
            "shop/orders/models.py", "shop/util.py",
        ]
        assert graph.edge_count() == 2
        assert graph.dependents_of("shop/util.py") == ["shop/orders/service.py"]

    def test_external_imports_are_dropped(self):
        graph = build_graph([_make_record("a.py", ["numpy", "os.path"])])
        assert graph.to_dict() == {"a.py": []}

    def test_typescript_relative_resolution(self):
        records = [
            _make_record("src/app.ts", ["./lib/util", "./components"], "typescript"),
            _make_record("src/lib/util.ts", language="typescript"),
            _make_record("src/components/index.tsx", language="typescript"),
        ]
        graph = build_graph(records)
        assert graph.dependencies_of("src/app.ts") == ["src/lib/util.ts", "src/components/index.tsx"]

    def test_go_package_import_links_every_file_in_directory(self):
        records = [
            _make_record("cmd/main.go", ["example.com/app/internal/store"], "go"),
            _make_record("internal/store/a.go", language="go"),
            _make_record("internal/store/b.go", language="go"),
        ]
        graph = build_graph(records)
        assert graph.dependencies_of("cmd/main.go") == ["internal/store/a.go", "internal/store/b.go"]

    def test_duplicate_imports_produce_one_edge(self):
        records = [_make_record("a.py", ["b", "b"]), _make_record("b.py")]
        assert build_graph(records).dependencies_of("a.py") == ["b.py"]


# ── Tests: cycle detection ─────────────────────────────────────────────


class TestDetectCycles:

    def test_acyclic_graph_has_no_cycles(self):
        graph = DependencyGraph({"a": ["b", "c"], "b": ["c"], "c": []})
        assert detect_cycles(graph) == []

    def test_self_import_is_single_node_cycle(self):
        graph = DependencyGraph({"a": ["a"]})
        cycles = detect_cycles(graph)
        assert len(cycles) == 1
        assert cycles[0].nodes == ("a",)
        assert cycles[0].closed_path() == ["a", "a"]

    def test_three_node_cycle(self):
        graph = DependencyGraph({"a": ["b"], "b": ["c"], "c": ["a"], "d": ["a"]})
        cycles = detect_cycles(graph)
        assert len(cycles) == 1
        assert cycles[0].nodes == ("a", "b", "c")

    def test_cycle_in_each_component_is_reported(self):
        graph = DependencyGraph({
            "a": ["b"], "b": ["a"],
            "x": ["y"], "y": ["z"], "z": ["x"],
            "solo": [],
        })
        cycles = detect_cycles(graph)
        assert {frozenset(c.nodes) for c in cycles} == {frozenset({"a", "b"}), frozenset({"x", "y", "z"})}

    def test_visited_nodes_are_not_re_explored(self):
        # Diamond with a shared tail: d must be expanded once only
        graph = DependencyGraph({"a": ["b", "c"], "b": ["d"], "c": ["d"], "d": ["e"], "e": []})
        assert detect_cycles(graph) == []

    def test_deep_chain_does_not_hit_recursion_limit(self):
        n = 5000
        adjacency = {f"n{i}": [f"n{i + 1}"] for i in range(n)}
        adjacency[f"n{n}"] = ["n0"]
        cycles = detect_cycles(DependencyGraph(adjacency))
        assert len(cycles) == 1
        assert len(cycles[0]) == n + 1

    def test_end_to_end_python_cycle(self, tmp_path):
        _write(tmp_path, "pkg/__init__.py", "")
        _write(tmp_path, "pkg/a.py", "from . import b\n")
        _write(tmp_path, "pkg/b.py", "from .a import thing\n")

        graph = build_graph(analyze(str(tmp_path), ["**/*.py"]))
        cycles = detect_cycles(graph)
        assert len(cycles) == 1
        assert set(cycles[0].nodes) == {"pkg/a.py", "pkg/b.py"}
