"""Quality/confidence evaluation of a migration run.

Consumes the per-file processing log of a run (which method produced each
file's patches and how much was extracted) and decides whether the result
can be accepted, needs a partial rerun of critical files, or a full rerun.

    confidence = clamp(0, 100, ai_rate*50 + (1-empty_rate)*30 + min(avg_items/5, 1)*20)
    needs_rerun = ai_rate < 0.10 or empty_rate > 0.80
"""

import json
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..analysis.utils import glob_to_regex, matches_any

logger = logging.getLogger(__name__)

METHOD_AI = "ai"
METHOD_FALLBACK = "fallback"

RERUN_AI_RATE = 0.10
RERUN_EMPTY_RATE = 0.80
LOW_EXTRACTION_AVG = 0.5
PARTIAL_RERUN_BELOW = 70.0
DEFAULT_MERGE_THRESHOLD = 70.0

TIER_FULL_RERUN = "full_rerun"
TIER_PARTIAL_RERUN = "partial_rerun"
TIER_ACCEPT = "accept"

# Plain-text log markers
_PROCESSING_RE = re.compile(r"Processing:\s*(.*)$")
_AI_MARKER_RE = re.compile(r"Using .+ for business logic extraction")
_EMPTY_MARKER = "returned empty results"
_RULES_RE = re.compile(r"(\d+) rules")
_PATTERNS_RE = re.compile(r"(\d+) data patterns")
_WORKFLOWS_RE = re.compile(r"(\d+) workflows")


@dataclass
class ProcessingEntry:
    """How one file was processed during a run."""
    path: str
    method: str = METHOD_FALLBACK  # "ai" | "fallback"
    rules: int = 0
    patterns: int = 0
    workflows: int = 0
    empty: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessingEntry":
        return cls(
            path=str(data.get("path", "")),
            method=data.get("method", METHOD_FALLBACK),
            rules=int(data.get("rules", 0)),
            patterns=int(data.get("patterns", 0)),
            workflows=int(data.get("workflows", 0)),
            empty=bool(data.get("empty", False)),
        )


@dataclass
class ProcessingStats:
    total_files: int = 0
    ai_processed_files: int = 0
    fallback_processed_files: int = 0
    extracted_rules: int = 0
    extracted_patterns: int = 0
    extracted_workflows: int = 0
    empty_results: int = 0

    @property
    def ai_rate(self) -> float:
        return self.ai_processed_files / self.total_files if self.total_files else 0.0

    @property
    def empty_rate(self) -> float:
        return self.empty_results / self.total_files if self.total_files else 0.0

    @property
    def avg_items(self) -> float:
        if not self.total_files:
            return 0.0
        items = self.extracted_rules + self.extracted_patterns + self.extracted_workflows
        return items / self.total_files


class ProcessingLog:
    """Structured per-file processing log of one run."""

    def __init__(self, entries: Optional[Iterable[ProcessingEntry]] = None):
        self.entries: List[ProcessingEntry] = list(entries or [])

    def __len__(self) -> int:
        return len(self.entries)

    def stats(self) -> ProcessingStats:
        stats = ProcessingStats(total_files=len(self.entries))
        for e in self.entries:
            if e.method == METHOD_AI:
                stats.ai_processed_files += 1
            else:
                stats.fallback_processed_files += 1
            stats.extracted_rules += e.rules
            stats.extracted_patterns += e.patterns
            stats.extracted_workflows += e.workflows
            if e.empty:
                stats.empty_results += 1
        return stats

    # ── Persistence ────────────────────────────────────────────────────

    def to_jsonl(self, path: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            for e in self.entries:
                f.write(json.dumps(asdict(e)) + "\n")

    @classmethod
    def from_jsonl(cls, path: str) -> "ProcessingLog":
        entries = []
        with open(path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(ProcessingEntry.from_dict(json.loads(line)))
                except (ValueError, TypeError) as e:
                    raise ValueError(f"{path}:{line_no}: invalid processing entry: {e}") from e
        return cls(entries)

    @classmethod
    def from_text(cls, text: str) -> "ProcessingLog":
        """Parse a plain-text run log.

        A ``Processing: <path>`` line opens a file entry; subsequent lines
        until the next one mark AI use, empty results, and add
        ``N rules`` / ``N data patterns`` / ``N workflows`` counts.
        """
        entries: List[ProcessingEntry] = []
        current: Optional[ProcessingEntry] = None

        for line in text.splitlines():
            m = _PROCESSING_RE.search(line)
            if m:
                current = ProcessingEntry(path=m.group(1).strip())
                entries.append(current)
                continue
            if current is None:
                continue

            if _EMPTY_MARKER in line:
                current.method = METHOD_FALLBACK
                current.empty = True
            elif _AI_MARKER_RE.search(line) and not current.empty:
                current.method = METHOD_AI

            for regex, attr in ((_RULES_RE, "rules"), (_PATTERNS_RE, "patterns"), (_WORKFLOWS_RE, "workflows")):
                hit = regex.search(line)
                if hit:
                    setattr(current, attr, getattr(current, attr) + int(hit.group(1)))
            if "0 rules, 0 data patterns, 0 workflows" in line:
                current.empty = True

        return cls(entries)

    @classmethod
    def load(cls, path: str) -> "ProcessingLog":
        """Load a ``.jsonl`` log, or parse any other file as plain text."""
        if path.endswith(".jsonl"):
            return cls.from_jsonl(path)
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return cls.from_text(f.read())


@dataclass
class QualityReport:
    confidence: float
    needs_rerun: bool
    recommendation: str  # full_rerun | partial_rerun | accept
    reasons: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    critical_files: List[str] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_confidence(ai_rate: float, empty_rate: float, avg_items: float) -> float:
    """Confidence in [0, 100] from the three processing rates."""
    score = ai_rate * 50 + (1 - empty_rate) * 30 + min(avg_items / 5, 1) * 20
    return max(0.0, min(100.0, score))


def needs_rerun(ai_rate: float, empty_rate: float) -> bool:
    return ai_rate < RERUN_AI_RATE or empty_rate > RERUN_EMPTY_RATE


class QualityEvaluator:
    """Score a run's processing log and recommend accept/partial/full rerun.

    Args:
        critical_patterns: Globs naming business-critical files; those that
            fell back to templates or came back empty are flagged for a
            partial rerun
    """

    def __init__(self, critical_patterns: Optional[Sequence[str]] = None):
        self._critical = [glob_to_regex(p) for p in (critical_patterns or [])]

    def evaluate(self, log: ProcessingLog) -> QualityReport:
        stats = log.stats()
        stats_dict = asdict(stats)

        if stats.total_files == 0:
            return QualityReport(
                confidence=0.0,
                needs_rerun=True,
                recommendation=TIER_FULL_RERUN,
                reasons=["No processed files found in the log"],
                recommendations=["Run the migration again; nothing was processed"],
                stats=stats_dict,
            )

        ai_rate, empty_rate, avg_items = stats.ai_rate, stats.empty_rate, stats.avg_items
        report = QualityReport(
            confidence=compute_confidence(ai_rate, empty_rate, avg_items),
            needs_rerun=needs_rerun(ai_rate, empty_rate),
            recommendation=TIER_ACCEPT,
            stats=stats_dict,
        )

        if ai_rate < RERUN_AI_RATE:
            report.reasons.append(f"AI processing rate is very low: {ai_rate * 100:.1f}%")
        if empty_rate > RERUN_EMPTY_RATE:
            report.reasons.append(f"Too many empty results: {empty_rate * 100:.1f}%")
        if avg_items < LOW_EXTRACTION_AVG:
            report.reasons.append(f"Little business logic extracted: {avg_items:.2f} items/file on average")

        report.critical_files = sorted(
            e.path for e in log.entries
            if (e.method != METHOD_AI or e.empty) and matches_any(e.path, self._critical)
        )

        if report.needs_rerun:
            report.recommendation = TIER_FULL_RERUN
            report.recommendations += [
                "Run the full migration again once the patch producer is available",
                "Critical business-logic files need AI processing",
            ]
        elif report.confidence < PARTIAL_RERUN_BELOW:
            report.recommendation = TIER_PARTIAL_RERUN
            report.recommendations += [
                "Consider a partial rerun",
                "Reprocessing only the critical files should raise quality",
            ]
        else:
            report.recommendations += [
                "Current results are of sufficient quality",
                "Reprocess individual files as needed",
            ]

        logger.info(
            "Quality: confidence=%.1f needs_rerun=%s tier=%s",
            report.confidence, report.needs_rerun, report.recommendation,
        )
        return report


def should_auto_merge(report: QualityReport, session_status: str, threshold: float = DEFAULT_MERGE_THRESHOLD) -> bool:
    """Auto-merge requires confidence >= threshold and a COMPLETED session."""
    status = getattr(session_status, "value", session_status)
    return report.confidence >= threshold and status == "COMPLETED"


def exit_code_for(report: QualityReport) -> int:
    """0 = acceptable, 1 = rerun recommended."""
    return 1 if report.needs_rerun else 0


def write_report(report: QualityReport, path: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(report.to_dict(), f, indent=2)
