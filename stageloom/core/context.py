"""Per-session context shared explicitly by all migration components.

Replaces module-level logging/metrics state: the context is created when a
session starts, handed to the runner, the File Safety Manager and the
validator, and closed when the session completes or aborts.
"""

import logging
import threading
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, MutableMapping, Optional, Tuple
from uuid import uuid4

from .quality.evaluator import ProcessingEntry, ProcessingLog

logger = logging.getLogger(__name__)


class _SessionLoggerAdapter(logging.LoggerAdapter):
    """Prefix every record with the session id."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        return f"[{self.extra['session_id'][:8]}] {msg}", kwargs


class SessionContext:
    """Logging, counters and processing log for one migration session.

    Usage:
        with SessionContext() as ctx:
            ctx.logger.info("starting")
            ctx.incr("patches_written")
    """

    def __init__(self, session_id: Optional[str] = None, logger_name: str = "stageloom.session"):
        self.session_id = session_id or str(uuid4())
        self.logger = _SessionLoggerAdapter(logging.getLogger(logger_name), {"session_id": self.session_id})
        self.counters: Counter = Counter()
        self.started_at = datetime.utcnow()
        self.closed_at: Optional[datetime] = None
        self.final_status: Optional[str] = None
        self._entries: List[ProcessingEntry] = []
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self.closed_at is not None

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self.counters[name] += amount

    def record_processing(self, entry: ProcessingEntry) -> None:
        """Append one per-file entry to the run's processing log."""
        with self._lock:
            self._entries.append(entry)

    def processing_log(self) -> ProcessingLog:
        with self._lock:
            return ProcessingLog(list(self._entries))

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self.counters)

    def close(self, status: Optional[str] = None) -> None:
        """Close the context. Closing twice is a no-op."""
        if self.closed:
            return
        self.closed_at = datetime.utcnow()
        self.final_status = status
        elapsed = (self.closed_at - self.started_at).total_seconds()
        self.logger.info(
            "Session closed (status=%s, %.1fs): %s",
            status or "unknown", elapsed, self.snapshot(),
        )

    def __enter__(self) -> "SessionContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if not self.closed:
            self.close("error" if exc_type else None)
        return False
