"""Error taxonomy for Stageloom.

ConfigurationError is raised before any file is written. AnalysisError is
per-file and never aborts a graph build. WriteError fails closed and aborts
the current stage. ValidationError drives stage retry and rollback.
RestoreError is fatal and always propagates.
"""

from typing import Any, Optional


class StageloomError(Exception):
    """Base class for all Stageloom errors."""

    def __init__(self, message: str, code: str = "STAGELOOM_ERROR", details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details


class ConfigurationError(StageloomError):
    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message, "CONFIG_ERROR", details)


class AnalysisError(StageloomError):
    def __init__(self, message: str, path: str, details: Optional[Any] = None):
        super().__init__(message, "ANALYSIS_ERROR", details)
        self.path = path


class WriteError(StageloomError):
    def __init__(self, message: str, path: str, details: Optional[Any] = None):
        super().__init__(message, "WRITE_ERROR", details)
        self.path = path


class ValidationError(StageloomError):
    def __init__(self, message: str, stage_id: str, phase: str = "build", details: Optional[Any] = None):
        super().__init__(message, "VALIDATION_ERROR", details)
        self.stage_id = stage_id
        self.phase = phase  # "build" | "test"


class RestoreError(StageloomError):
    def __init__(self, message: str, path: str, details: Optional[Any] = None):
        super().__init__(message, "RESTORE_ERROR", details)
        self.path = path


class BackupNotFoundError(StageloomError):
    def __init__(self, path: str):
        super().__init__(f"No backup found for {path}", "NOT_FOUND")
        self.path = path


class PatchProducerError(StageloomError):
    def __init__(self, message: str, boundary_id: str, target_file: str):
        super().__init__(message, "PRODUCER_ERROR")
        self.boundary_id = boundary_id
        self.target_file = target_file


class MigrationCancelled(StageloomError):
    def __init__(self, message: str = "Migration cancelled"):
        super().__init__(message, "CANCELLED")


def get_error_message(error: BaseException) -> str:
    """Return a printable message for any exception."""
    if isinstance(error, StageloomError):
        return error.message
    return str(error) or error.__class__.__name__
