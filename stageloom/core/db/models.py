"""
SQLAlchemy ORM models for the Stageloom migration manifest.

- MigrationSessionRow: one staged migration session (config, cursor, status)
- MigrationStageRow: per-stage status, retries and touched files
- BackupEntryRow: pre-session state of each file the session touched
"""

from datetime import datetime

from sqlalchemy import (
    JSON, TIMESTAMP, Boolean, Column, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class MigrationSessionRow(Base):
    __tablename__ = "migration_sessions"

    session_id = Column(String(36), primary_key=True)
    project_root = Column(Text, nullable=False)
    status = Column(String(20), default="RUNNING", nullable=False)  # RUNNING, COMPLETED, ABORTED
    current_index = Column(Integer, default=0, nullable=False)
    abort_reason = Column(Text, nullable=True)
    config = Column(JSON, default=dict)
    created_at = Column(String(32), nullable=False)
    updated_at = Column(String(32), nullable=True)
    completed_at = Column(String(32), nullable=True)
    saved_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow)

    stages = relationship(
        "MigrationStageRow", back_populates="session",
        cascade="all, delete-orphan", order_by="MigrationStageRow.position",
    )

    def __repr__(self):
        return f"<MigrationSessionRow(session_id={self.session_id}, status='{self.status}', index={self.current_index})>"


class MigrationStageRow(Base):
    __tablename__ = "migration_stages"
    __table_args__ = (
        Index("idx_migration_stages_session", "session_id"),
        UniqueConstraint("session_id", "stage_id", name="uq_session_stage"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(36), ForeignKey("migration_sessions.session_id", ondelete="CASCADE"), nullable=False)
    stage_id = Column(String(255), nullable=False)           # "<boundary_id>#<part>"
    boundary_id = Column(String(255), nullable=False)
    position = Column(Integer, nullable=False)
    targets = Column(JSON, default=list)
    critical = Column(Boolean, default=False, nullable=False)
    status = Column(String(32), default="PENDING", nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    touched_files = Column(JSON, default=list)
    skipped = Column(Boolean, default=False, nullable=False)
    error = Column(Text, nullable=True)
    started_at = Column(String(32), nullable=True)
    updated_at = Column(String(32), nullable=True)
    finished_at = Column(String(32), nullable=True)

    session = relationship("MigrationSessionRow", back_populates="stages")

    def __repr__(self):
        return f"<MigrationStageRow(stage_id='{self.stage_id}', status='{self.status}', retries={self.retry_count})>"


class BackupEntryRow(Base):
    __tablename__ = "backup_entries"
    __table_args__ = (
        Index("idx_backup_entries_session", "session_id"),
        UniqueConstraint("session_id", "original_path", name="uq_session_backup_path"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(36), ForeignKey("migration_sessions.session_id", ondelete="CASCADE"), nullable=False)
    original_path = Column(Text, nullable=False)
    snapshot_path = Column(Text, nullable=True)              # NULL when the file did not exist
    checksum = Column(String(64), nullable=True)
    existed = Column(Boolean, default=True, nullable=False)
    timestamp = Column(String(32), nullable=False)

    def __repr__(self):
        return f"<BackupEntryRow(path='{self.original_path}', existed={self.existed})>"
