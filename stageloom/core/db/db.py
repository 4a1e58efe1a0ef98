"""Database connection and session management for the migration manifest."""

import logging
import os
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from .models import Base

logger = logging.getLogger(__name__)


def sqlite_url(path: str) -> str:
    return f"sqlite:///{os.path.abspath(path)}"


class DatabaseManager:
    """Engine plus session factory for one database URL.

    Usage:
        db = DatabaseManager(sqlite_url(".stageloom/manifest.db"))
        db.init_db()
        with db.get_session() as session:
            session.add(row)
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine = create_engine(database_url, echo=echo, connect_args=connect_args, future=True)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def init_db(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(self.engine)
        logger.debug(f"Database initialised: {self.database_url}")

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        """Session scope: commit on success, rollback on error."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
