"""Staged migration: planning, patch production, validation and the runner.

Public API:
    plan_stages(boundaries, max_stage_size) → list[Stage]
    StagedMigrationRunner(root, config, producer).run(boundaries) → MigrationResult
"""

from .manifest import ManifestStore
from .models import (
    AbortReport,
    Boundary,
    MigrationResult,
    MigrationSession,
    MigrationSummary,
    Patch,
    SessionStatus,
    Stage,
    StageResult,
    StageStatus,
)
from .producer import FilePatchProducer, PatchProducer, ResilientPatchProducer, TemplatePatchProducer
from .runner import StagedMigrationRunner
from .stages import load_boundaries, order_boundaries, plan_stages
from .validation import CommandResult, CommandRunner, StageValidator, ValidationOutcome

__all__ = [
    "AbortReport",
    "Boundary",
    "CommandResult",
    "CommandRunner",
    "FilePatchProducer",
    "ManifestStore",
    "MigrationResult",
    "MigrationSession",
    "MigrationSummary",
    "Patch",
    "PatchProducer",
    "ResilientPatchProducer",
    "SessionStatus",
    "Stage",
    "StageResult",
    "StageStatus",
    "StageValidator",
    "TemplatePatchProducer",
    "ValidationOutcome",
    "load_boundaries",
    "order_boundaries",
    "plan_stages",
    "StagedMigrationRunner",
]
