"""Patch producers.

A producer turns (boundary id, target file) into patches. The primary
producer (typically AI-backed) lives outside this package; when it fails the
runner falls back to a deterministic template producer instead of aborting.
Every call is recorded in the session's processing log for the quality
evaluator.
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple, Union, TYPE_CHECKING

from ..errors import PatchProducerError
from ..quality.evaluator import METHOD_AI, METHOD_FALLBACK, ProcessingEntry
from .models import Patch

if TYPE_CHECKING:
    from ..context import SessionContext

logger = logging.getLogger(__name__)

PatchLike = Union[Patch, Dict[str, Any]]

# Comment prefix per extension for the template header
_COMMENT_PREFIX = {
    ".py": "#",
    ".go": "//",
    ".ts": "//",
    ".tsx": "//",
    ".js": "//",
    ".jsx": "//",
    ".java": "//",
    ".cs": "//",
    ".rb": "#",
    ".sh": "#",
    ".yaml": "#",
    ".yml": "#",
}


class PatchProducer(ABC):
    """Contract: given a boundary id and target file, return patches."""

    @abstractmethod
    def produce(self, boundary_id: str, target_file: str) -> List[PatchLike]:
        """Return ``{path, content, description}`` patches for one file.

        Raises:
            Exception: Any failure; callers fall back to a template patch
        """
        ...


class TemplatePatchProducer(PatchProducer):
    """Deterministic fallback: current content tagged with a boundary header.

    Idempotent: content already carrying the header is returned unchanged.
    """

    HEADER = "stageloom: boundary={boundary}"

    def __init__(self, project_root: str):
        self.project_root = project_root

    def produce(self, boundary_id: str, target_file: str) -> List[PatchLike]:
        full = os.path.join(self.project_root, target_file)
        content = ""
        if os.path.exists(full):
            with open(full, "r", encoding="utf-8", errors="replace", newline="") as f:
                content = f.read()

        prefix = _COMMENT_PREFIX.get(os.path.splitext(target_file)[1].lower())
        header = self.HEADER.format(boundary=boundary_id)
        if prefix and header not in content.split("\n", 1)[0]:
            content = f"{prefix} {header}\n{content}"

        return [Patch(
            path=target_file,
            content=content,
            description=f"Template migration of {target_file} into {boundary_id}",
            metadata={"template": True},
        )]


class FilePatchProducer(PatchProducer):
    """Read prepared patch content from ``<patch_dir>/<target_file>``."""

    def __init__(self, patch_dir: str):
        self.patch_dir = patch_dir

    def produce(self, boundary_id: str, target_file: str) -> List[PatchLike]:
        source = os.path.join(self.patch_dir, target_file)
        if not os.path.isfile(source):
            raise PatchProducerError(f"No prepared patch for {target_file}", boundary_id, target_file)
        with open(source, "r", encoding="utf-8", newline="") as f:
            content = f.read()
        return [{"path": target_file, "content": content, "description": f"Prepared patch from {source}"}]


def _count(patches: List[Patch], key: str) -> int:
    total = 0
    for p in patches:
        try:
            total += int(p.metadata.get(key, 0) or 0)
        except (TypeError, ValueError):
            continue
    return total


class ResilientPatchProducer:
    """Primary producer with template fallback and processing-log recording.

    Args:
        primary: The external producer; may be None to always use the fallback
        fallback: Deterministic producer used when the primary fails
        context: SessionContext receiving one ProcessingEntry per call
    """

    def __init__(
        self,
        primary: Optional[PatchProducer],
        fallback: PatchProducer,
        context: Optional["SessionContext"] = None,
    ):
        self.primary = primary
        self.fallback = fallback
        self._context = context
        self._log = context.logger if context else logger

    def produce(self, boundary_id: str, target_file: str) -> Tuple[List[Patch], str]:
        """Return (patches, method) where method is ``ai`` or ``fallback``."""
        method = METHOD_FALLBACK
        patches: Optional[List[Patch]] = None

        if self.primary is not None:
            try:
                patches = [self._normalize(p) for p in self.primary.produce(boundary_id, target_file)]
                method = METHOD_AI
            except Exception as e:
                self._log.warning(f"Patch producer failed for {target_file} ({boundary_id}), using template: {e}")
                if self._context:
                    self._context.incr("producer_fallbacks")

        if patches is None:
            patches = [self._normalize(p) for p in self.fallback.produce(boundary_id, target_file)]

        if self._context:
            rules = _count(patches, "rules")
            data_patterns = _count(patches, "patterns")
            workflows = _count(patches, "workflows")
            self._context.record_processing(ProcessingEntry(
                path=target_file,
                method=method,
                rules=rules,
                patterns=data_patterns,
                workflows=workflows,
                empty=not patches or rules + data_patterns + workflows == 0,
            ))
        return patches, method

    @staticmethod
    def _normalize(patch: PatchLike) -> Patch:
        if isinstance(patch, Patch):
            return patch
        return Patch.from_dict(patch)
