"""Dependency graph construction and cycle detection.

Language knowledge stays in the scanners: the builder only asks each
scanner for an ImportTarget and matches its candidates against known nodes.
"""

import logging
import posixpath
from collections import defaultdict
from typing import Dict, Iterable, Iterator, List, Sequence, Set

from .models import Cycle, DependencyGraph, FileRecord, ImportTarget
from .utils import get_scanner

logger = logging.getLogger(__name__)


def _suffixes(path: str) -> Iterator[str]:
    """Yield every component-aligned suffix: a/b/c -> a/b/c, b/c, c."""
    parts = path.split("/")
    for i in range(len(parts)):
        yield "/".join(parts[i:])


class _NodeIndex:
    """Lookup tables over the known file set."""

    def __init__(self, paths: Iterable[str]):
        self.known: Set[str] = set(paths)
        self.files_by_dir: Dict[str, List[str]] = defaultdict(list)
        self.file_suffixes: Dict[str, List[str]] = defaultdict(list)
        self.dir_suffixes: Dict[str, Set[str]] = defaultdict(set)

        for path in sorted(self.known):
            directory = posixpath.dirname(path)
            self.files_by_dir[directory].append(path)
            for suffix in _suffixes(path):
                self.file_suffixes[suffix].append(path)
            if directory:
                for suffix in _suffixes(directory):
                    self.dir_suffixes[suffix].add(directory)

    def resolve(self, target: ImportTarget) -> List[str]:
        """Return the nodes matched by the first candidate that matches anything."""
        for candidate in target.candidates:
            if candidate.endswith("/"):
                directory = candidate[:-1]
                if target.relative:
                    matches = list(self.files_by_dir.get(directory, []))
                else:
                    dirs = self.dir_suffixes.get(directory)
                    # Ambiguous suffix: prefer the shallowest directory
                    matches = list(self.files_by_dir[min(dirs, key=lambda d: (len(d), d))]) if dirs else []
            elif target.relative:
                matches = [candidate] if candidate in self.known else []
            else:
                hits = self.file_suffixes.get(candidate, [])
                matches = [min(hits, key=lambda p: (len(p), p))] if hits else []
            if matches:
                return matches
        return []


def build_graph(records: Sequence[FileRecord]) -> DependencyGraph:
    """Build the intra-project dependency graph.

    Relative imports resolve to normalised in-project paths; absolute or
    external imports become edges only when a matching node exists and are
    otherwise dropped silently.

    Args:
        records: FileRecords from CodeAnalyzer.analyze()

    Returns:
        DependencyGraph containing every record as a node
    """
    index = _NodeIndex(r.path for r in records)
    adjacency: Dict[str, List[str]] = {}

    for record in records:
        scanner = get_scanner(record.language)
        deps: List[str] = []
        for ref in record.imports:
            for dep in index.resolve(scanner.import_targets(ref, record.path)):
                if dep not in deps:
                    deps.append(dep)
        adjacency[record.path] = deps

    graph = DependencyGraph(adjacency)
    logger.info(f"Built dependency graph: {len(adjacency)} nodes, {graph.edge_count()} edges")
    return graph


def detect_cycles(graph: DependencyGraph) -> List[Cycle]:
    """Find dependency cycles with a depth-first traversal.

    Each unvisited node starts a traversal that keeps an explicit recursion
    stack. Reaching a node already on the stack yields the path suffix from
    that node as a cycle. A fully visited node is never explored again, so
    the walk is O(V+E). A self-import yields a single-node cycle.

    Reporting is partial by design of the traversal: each node at which a
    cycle closes contributes only the first cycle found through it, so not
    every simple cycle is enumerated. Every strongly connected component
    containing a cycle still has at least one cycle reported.
    """
    adjacency = graph.adjacency
    visited: Set[str] = set()
    on_stack: Set[str] = set()
    reported: Set[str] = set()
    cycles: List[Cycle] = []

    for root in adjacency:
        if root in visited:
            continue

        path = [root]
        visited.add(root)
        on_stack.add(root)
        pending = [iter(adjacency[root])]

        while pending:
            descended = False
            for dep in pending[-1]:
                if dep not in adjacency:
                    continue
                if dep in on_stack:
                    if dep not in reported:
                        reported.add(dep)
                        cycles.append(Cycle(tuple(path[path.index(dep):])))
                    continue
                if dep in visited:
                    continue
                visited.add(dep)
                on_stack.add(dep)
                path.append(dep)
                pending.append(iter(adjacency[dep]))
                descended = True
                break

            if not descended:
                pending.pop()
                on_stack.discard(path.pop())

    if cycles:
        logger.warning(f"Detected {len(cycles)} dependency cycle(s)")
    return cycles
