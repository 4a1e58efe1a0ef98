"""Quality/confidence evaluation of migration runs."""

from .evaluator import (
    ProcessingEntry,
    ProcessingLog,
    QualityEvaluator,
    QualityReport,
    compute_confidence,
    exit_code_for,
    should_auto_merge,
    write_report,
)

__all__ = [
    "ProcessingEntry",
    "ProcessingLog",
    "QualityEvaluator",
    "QualityReport",
    "compute_confidence",
    "exit_code_for",
    "should_auto_merge",
    "write_report",
]
