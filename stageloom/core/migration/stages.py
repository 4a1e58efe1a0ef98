"""Stage planning: order boundaries and slice them into stages.

Boundaries are ordered so that each one follows the boundaries it depends
on (stable Kahn sort: ties keep discovery order). A boundary larger than
``max_stage_size`` files is split into consecutive stages ``<id>#1``,
``<id>#2``, ... so no stage exceeds the limit.
"""

import logging
from collections import deque
from typing import Dict, List, Sequence

import yaml

from ..errors import ConfigurationError
from .models import Boundary, Stage

logger = logging.getLogger(__name__)


def order_boundaries(boundaries: Sequence[Boundary]) -> List[Boundary]:
    """Dependency-first order of ``boundaries``.

    Unknown dependencies are ignored. If the boundaries form a cycle the
    remaining ones are appended in discovery order with a warning.
    """
    index: Dict[str, int] = {}
    for i, b in enumerate(boundaries):
        if b.boundary_id in index:
            raise ValueError(f"Duplicate boundary id: {b.boundary_id}")
        index[b.boundary_id] = i

    indegree = [0] * len(boundaries)
    dependents: Dict[int, List[int]] = {i: [] for i in range(len(boundaries))}
    for i, b in enumerate(boundaries):
        for dep in dict.fromkeys(b.depends_on):
            j = index.get(dep)
            if j is None:
                logger.debug(f"Boundary {b.boundary_id}: ignoring unknown dependency {dep}")
                continue
            if j == i:
                continue
            indegree[i] += 1
            dependents[j].append(i)

    ready = deque(i for i in range(len(boundaries)) if indegree[i] == 0)
    ordered: List[int] = []
    while ready:
        i = ready.popleft()
        ordered.append(i)
        for k in dependents[i]:
            indegree[k] -= 1
            if indegree[k] == 0:
                ready.append(k)
        ready = deque(sorted(ready))

    if len(ordered) < len(boundaries):
        placed = set(ordered)
        rest = [i for i in range(len(boundaries)) if i not in placed]
        logger.warning(
            "Boundary dependency cycle among %s; keeping discovery order for them",
            [boundaries[i].boundary_id for i in rest],
        )
        ordered.extend(rest)

    return [boundaries[i] for i in ordered]


def plan_stages(boundaries: Sequence[Boundary], max_stage_size: int = 5) -> List[Stage]:
    """Build the ordered stage list for a session.

    Raises:
        ValueError: ``max_stage_size`` < 1 or duplicate boundary ids
    """
    if max_stage_size < 1:
        raise ValueError(f"max_stage_size must be >= 1, got {max_stage_size}")

    stages: List[Stage] = []
    for boundary in order_boundaries(boundaries):
        files = list(dict.fromkeys(boundary.files))
        if not files:
            logger.info(f"Boundary {boundary.boundary_id} has no files; no stage planned")
            continue

        chunks = [files[i:i + max_stage_size] for i in range(0, len(files), max_stage_size)]
        for part, chunk in enumerate(chunks, start=1):
            stage_id = f"{boundary.boundary_id}#{part}"
            stages.append(Stage(
                stage_id=stage_id,
                boundary_id=boundary.boundary_id,
                position=len(stages),
                targets=chunk,
                critical=boundary.critical,
            ))

    logger.info(f"Planned {len(stages)} stage(s) from {len(boundaries)} boundary(ies)")
    return stages


def load_boundaries(path: str) -> List[Boundary]:
    """Read boundaries from a YAML file.

    Expected shape::

        boundaries:
          - id: users
            files: [src/users/service.py, src/users/repo.py]
            depends_on: [core]
            critical: true

    Raises:
        ConfigurationError: Unreadable file or malformed entries
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read boundaries {path}: {e}") from e

    items = loaded.get("boundaries") if isinstance(loaded, dict) else loaded
    if not isinstance(items, list):
        raise ConfigurationError(f"{path}: expected a list of boundaries")

    boundaries: List[Boundary] = []
    for i, item in enumerate(items):
        if not isinstance(item, dict) or not item.get("id") or not isinstance(item.get("files"), list):
            raise ConfigurationError(f"{path}: boundary #{i + 1} needs 'id' and a 'files' list")
        boundaries.append(Boundary(
            boundary_id=str(item["id"]),
            files=[str(f) for f in item["files"]],
            depends_on=[str(d) for d in item.get("depends_on") or []],
            critical=bool(item.get("critical", False)),
            description=item.get("description", ""),
        ))
    return boundaries
