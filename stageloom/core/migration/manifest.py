"""Durable session manifest.

Sessions, stages and backup entries are stored in a SQLite database at
``<root>/<state_dir>/manifest.db``. Rows are written after every stage
transition so a later ``resume_from`` run sees exactly where the previous
run stopped.
"""

import logging
import os
from typing import Iterable, List, Optional

from sqlalchemy import select

from ..config import MigrationConfig
from ..db import BackupEntryRow, DatabaseManager, MigrationSessionRow, MigrationStageRow, sqlite_url
from ..safety import BackupEntry
from .models import MigrationSession, SessionStatus, Stage, StageStatus

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.db"


class ManifestStore:
    """Map migration dataclasses onto manifest rows and back."""

    def __init__(self, db: DatabaseManager):
        self._db = db
        self._db.init_db()

    @classmethod
    def for_project(cls, project_root: str, state_dir: str = ".stageloom") -> "ManifestStore":
        directory = os.path.join(os.path.abspath(project_root), state_dir)
        os.makedirs(directory, exist_ok=True)
        return cls(DatabaseManager(sqlite_url(os.path.join(directory, MANIFEST_FILE))))

    def close(self) -> None:
        self._db.dispose()

    # ── Writes ─────────────────────────────────────────────────────────

    def save_session(self, session: MigrationSession) -> None:
        """Upsert the session row and every stage row."""
        with self._db.get_session() as db:
            row = db.get(MigrationSessionRow, session.session_id)
            if row is None:
                row = MigrationSessionRow(session_id=session.session_id)
                db.add(row)
            row.project_root = session.project_root
            row.status = session.status.value
            row.current_index = session.current_index
            row.abort_reason = session.abort_reason
            row.config = session.config.model_dump()
            row.created_at = session.created_at
            row.updated_at = session.updated_at
            row.completed_at = session.completed_at
            db.flush()

            for stage in session.stages:
                self._upsert_stage(db, session.session_id, stage)

    def save_stage(self, session_id: str, stage: Stage) -> None:
        with self._db.get_session() as db:
            self._upsert_stage(db, session_id, stage)

    @staticmethod
    def _upsert_stage(db, session_id: str, stage: Stage) -> None:
        row = db.execute(
            select(MigrationStageRow).where(
                MigrationStageRow.session_id == session_id,
                MigrationStageRow.stage_id == stage.stage_id,
            )
        ).scalar_one_or_none()
        if row is None:
            row = MigrationStageRow(session_id=session_id, stage_id=stage.stage_id)
            db.add(row)
        row.boundary_id = stage.boundary_id
        row.position = stage.position
        row.targets = list(stage.targets)
        row.critical = stage.critical
        row.status = stage.status.value
        row.retry_count = stage.retry_count
        row.touched_files = list(stage.touched_files)
        row.skipped = stage.skipped
        row.error = stage.error
        row.started_at = stage.started_at
        row.updated_at = stage.updated_at
        row.finished_at = stage.finished_at

    def save_backup_entries(self, session_id: str, entries: Iterable[BackupEntry]) -> int:
        """Insert entries not yet stored. Stored entries are never replaced."""
        added = 0
        with self._db.get_session() as db:
            known = set(db.execute(
                select(BackupEntryRow.original_path).where(BackupEntryRow.session_id == session_id)
            ).scalars())
            for entry in entries:
                if entry.original_path in known:
                    continue
                db.add(BackupEntryRow(
                    session_id=session_id,
                    original_path=entry.original_path,
                    snapshot_path=entry.snapshot_path,
                    checksum=entry.checksum,
                    existed=entry.existed,
                    timestamp=entry.timestamp,
                ))
                known.add(entry.original_path)
                added += 1
        if added:
            logger.debug(f"Persisted {added} backup entr(ies) for session {session_id[:8]}")
        return added

    # ── Reads ──────────────────────────────────────────────────────────

    def load_session(self, session_id: str) -> Optional[MigrationSession]:
        """Rebuild a session (with its ordered stages) or None if unknown."""
        with self._db.get_session() as db:
            row = db.get(MigrationSessionRow, session_id)
            if row is None:
                return None
            stages = [
                Stage(
                    stage_id=s.stage_id,
                    boundary_id=s.boundary_id,
                    position=s.position,
                    targets=list(s.targets or []),
                    critical=bool(s.critical),
                    status=StageStatus(s.status),
                    retry_count=s.retry_count or 0,
                    touched_files=list(s.touched_files or []),
                    skipped=bool(s.skipped),
                    error=s.error,
                    started_at=s.started_at,
                    updated_at=s.updated_at,
                    finished_at=s.finished_at,
                )
                for s in row.stages
            ]
            return MigrationSession(
                session_id=row.session_id,
                project_root=row.project_root,
                config=MigrationConfig.model_validate(row.config or {}),
                stages=stages,
                current_index=row.current_index,
                status=SessionStatus(row.status),
                abort_reason=row.abort_reason,
                created_at=row.created_at,
                updated_at=row.updated_at,
                completed_at=row.completed_at,
            )

    def load_backup_entries(self, session_id: str) -> List[BackupEntry]:
        with self._db.get_session() as db:
            rows = db.execute(
                select(BackupEntryRow)
                .where(BackupEntryRow.session_id == session_id)
                .order_by(BackupEntryRow.id)
            ).scalars().all()
            return [
                BackupEntry(
                    original_path=r.original_path,
                    snapshot_path=r.snapshot_path,
                    checksum=r.checksum,
                    timestamp=r.timestamp,
                    existed=bool(r.existed),
                )
                for r in rows
            ]

    def list_sessions(self) -> List[str]:
        with self._db.get_session() as db:
            return list(db.execute(
                select(MigrationSessionRow.session_id).order_by(MigrationSessionRow.created_at)
            ).scalars())
