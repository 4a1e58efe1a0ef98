"""Dependency analysis data models.

Pure data containers; scanning and graph logic live elsewhere.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Tuple


@dataclass(frozen=True)
class Symbols:
    """Lexically extracted symbols for one source file."""

    imports: Tuple[str, ...] = ()
    declarations: Tuple[str, ...] = ()  # top-level functions, classes, types
    exports: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FileRecord:
    """One analysed source file. Immutable once created."""

    path: str  # posix path relative to project root
    content_hash: str  # sha256 hex digest
    language: str
    imports: Tuple[str, ...] = ()
    declarations: Tuple[str, ...] = ()
    exports: Tuple[str, ...] = ()
    line_count: int = 0


@dataclass(frozen=True)
class ImportTarget:
    """Where an import reference may point inside the project.

    ``candidates`` are posix paths. For relative imports they are exact
    paths; otherwise a node matches when it equals a candidate or ends with
    ``"/" + candidate``. A candidate ending in ``/`` names a directory and
    matches every file directly inside it.
    """

    relative: bool
    candidates: Tuple[str, ...] = ()


@dataclass
class DependencyGraph:
    """file -> in-project dependency files.

    Every edge target is a known node.
    """

    adjacency: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def nodes(self) -> List[str]:
        return list(self.adjacency)

    def dependencies_of(self, path: str) -> List[str]:
        return list(self.adjacency.get(path, []))

    def dependents_of(self, path: str) -> List[str]:
        return [src for src, deps in self.adjacency.items() if path in deps]

    def edges(self) -> Iterator[Tuple[str, str]]:
        for src, deps in self.adjacency.items():
            for dst in deps:
                yield src, dst

    def edge_count(self) -> int:
        return sum(len(deps) for deps in self.adjacency.values())

    def to_dict(self) -> Dict[str, List[str]]:
        return {k: list(v) for k, v in self.adjacency.items()}


@dataclass(frozen=True)
class Cycle:
    """Ordered node sequence forming a closed loop (last -> first)."""

    nodes: Tuple[str, ...]

    def __len__(self) -> int:
        return len(self.nodes)

    def closed_path(self) -> List[str]:
        return list(self.nodes) + [self.nodes[0]]
