"""Data contracts for the staged migration runner.

Kept as dataclasses (not ORM models) for transport between layers; the
manifest store maps them onto database rows.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..config import MigrationConfig
from ..quality.evaluator import ProcessingLog
from .validation import ValidationOutcome


class StageStatus(str, Enum):
    """Per-stage state machine."""
    PENDING = "PENDING"
    APPLYING = "APPLYING"
    VALIDATING = "VALIDATING"
    VALIDATED = "VALIDATED"
    FAILED = "FAILED"
    PERMANENTLY_FAILED = "PERMANENTLY_FAILED"


class SessionStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    ABORTED = "ABORTED"


# Legal forward transitions; FAILED -> APPLYING is the bounded retry edge
_TRANSITIONS = {
    StageStatus.PENDING: {StageStatus.APPLYING},
    StageStatus.APPLYING: {StageStatus.VALIDATING, StageStatus.FAILED},
    StageStatus.VALIDATING: {StageStatus.VALIDATED, StageStatus.FAILED},
    StageStatus.FAILED: {StageStatus.APPLYING, StageStatus.PERMANENTLY_FAILED},
    StageStatus.VALIDATED: set(),
    StageStatus.PERMANENTLY_FAILED: set(),
}

TERMINAL_STAGE_STATUSES = frozenset({StageStatus.VALIDATED, StageStatus.PERMANENTLY_FAILED})


def now_iso() -> str:
    return datetime.utcnow().isoformat()


@dataclass
class Patch:
    """Proposed replacement or new content for one file."""
    path: str
    content: str
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Patch":
        if "path" not in data or "content" not in data:
            raise ValueError(f"Patch requires 'path' and 'content': {sorted(data)}")
        return cls(
            path=data["path"],
            content=data["content"],
            description=data.get("description", ""),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class Boundary:
    """A logical group of files migrated as one unit."""
    boundary_id: str
    files: List[str]
    depends_on: List[str] = field(default_factory=list)
    critical: bool = False
    description: str = ""


@dataclass
class Stage:
    """One boundary slice: its patches are applied and validated together."""
    stage_id: str
    boundary_id: str
    position: int
    targets: List[str]
    critical: bool = False
    patches: List[Patch] = field(default_factory=list)
    status: StageStatus = StageStatus.PENDING
    retry_count: int = 0
    touched_files: List[str] = field(default_factory=list)
    skipped: bool = False
    error: Optional[str] = None
    started_at: Optional[str] = None
    updated_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STAGE_STATUSES

    def transition(self, new_status: StageStatus) -> None:
        """Move to ``new_status``.

        Raises:
            ValueError: The transition is not allowed
        """
        if new_status not in _TRANSITIONS[self.status]:
            raise ValueError(f"Illegal stage transition {self.status.value} -> {new_status.value} ({self.stage_id})")
        now = now_iso()
        if self.started_at is None:
            self.started_at = now
        if new_status in TERMINAL_STAGE_STATUSES:
            self.finished_at = now
        self.status = new_status
        self.updated_at = now

    def recover(self) -> None:
        """Reset an attempt that was interrupted mid-flight (process crash).

        Only APPLYING/VALIDATING/FAILED stages loaded from a manifest are
        recovered; their files must already have been rolled back.
        """
        if self.status not in (StageStatus.APPLYING, StageStatus.VALIDATING, StageStatus.FAILED):
            raise ValueError(f"Stage {self.stage_id} is {self.status.value}; nothing to recover")
        self.status = StageStatus.PENDING
        self.touched_files = []
        self.updated_at = now_iso()


@dataclass
class MigrationSession:
    """Ordered stages plus run-level state; persisted across resumes."""
    session_id: str
    project_root: str
    config: MigrationConfig
    stages: List[Stage] = field(default_factory=list)
    current_index: int = 0
    status: SessionStatus = SessionStatus.RUNNING
    abort_reason: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None

    def stage(self, stage_id: str) -> Stage:
        for s in self.stages:
            if s.stage_id == stage_id:
                return s
        raise KeyError(stage_id)


@dataclass
class StageResult:
    """Outcome of processing one stage in a run."""
    stage_id: str
    status: StageStatus
    decision: str  # "continue" | "skip" | "abort"
    attempts: int = 0
    applied: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    validation: Optional[ValidationOutcome] = None
    error: Optional[str] = None
    duration_seconds: float = 0.0


@dataclass
class MigrationSummary:
    total_stages: int = 0
    successful_stages: int = 0
    failed_stages: int = 0
    skipped_stages: int = 0
    total_patches: int = 0
    applied_patches: int = 0
    duration_seconds: float = 0.0


@dataclass
class AbortReport:
    """What a person needs to recover manually after an abort."""
    reason: str
    completed_stages: List[str] = field(default_factory=list)
    modified_files: List[str] = field(default_factory=list)
    restored_files: List[str] = field(default_factory=list)
    backup_location: str = ""


@dataclass
class MigrationResult:
    session: MigrationSession
    stage_results: List[StageResult] = field(default_factory=list)
    summary: MigrationSummary = field(default_factory=MigrationSummary)
    recommendations: List[str] = field(default_factory=list)
    abort_report: Optional[AbortReport] = None
    processing_log: Optional[ProcessingLog] = None

    @property
    def completed(self) -> bool:
        return self.session.status == SessionStatus.COMPLETED
