"""Session-scoped backup and restore for safe file writes.

Every file overwritten during a session has its pristine content copied
into ``<root>/<state_dir>/backups/<session_id>/`` (mirroring the relative
path) before the first write. Files created by the session are tracked too,
so restoring them removes them again. The mirror tree plus the entry list is
enough to rebuild the pre-session tree with ``restore_all()``.

Stage attempts additionally take a checkpoint under
``<root>/<state_dir>/checkpoints/<session_id>/<name>/``: a copy of each file
as it was just before the attempt. Rolling back to a checkpoint undoes that
attempt only, leaving changes made by earlier stages in place.

Failure policy is fail-closed: a failed backup aborts the write, and a
failed restore raises RestoreError to the caller.
"""

import hashlib
import json
import logging
import os
import re
import shutil
import tempfile
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Union, TYPE_CHECKING

from ..errors import BackupNotFoundError, RestoreError, WriteError

if TYPE_CHECKING:
    from ..context import SessionContext

logger = logging.getLogger(__name__)

CHECKPOINT_INDEX = "checkpoint.json"


@dataclass(frozen=True)
class BackupEntry:
    """Pre-session state of one path. At most one per path per session."""

    original_path: str  # posix, relative to project root
    snapshot_path: Optional[str]  # None when the file did not exist
    checksum: Optional[str]  # sha256 of the snapshot
    timestamp: str
    existed: bool = True


@dataclass(frozen=True)
class CheckpointEntry:
    """State of one path just before a stage attempt wrote it."""

    path: str
    existed: bool
    checksum: Optional[str] = None


@dataclass
class Checkpoint:
    name: str
    directory: str
    entries: List[CheckpointEntry] = field(default_factory=list)

    @property
    def paths(self) -> List[str]:
        return [e.path for e in self.entries]

    def copy_path(self, rel: str) -> str:
        return os.path.join(self.directory, "files", *rel.split("/"))


def checksum_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _atomic_write(full_path: str, data: bytes, mode_from: Optional[str] = None) -> None:
    """Write via temp file + rename so an interruption never leaves a partial file."""
    directory = os.path.dirname(full_path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=directory, prefix=f".{os.path.basename(full_path)}.", suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if mode_from and os.path.exists(mode_from):
            shutil.copymode(mode_from, tmp_path)
        os.replace(tmp_path, full_path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


class FileSafetyManager:
    """Backup/restore layer guaranteeing every touched file is recoverable.

    The entry map is the only shared mutable state. It is guarded by one
    lock that is never held during file I/O; a per-path in-flight marker
    makes concurrent first backups of the same path wait for the owner.

    Args:
        project_root: Root of the project being migrated
        session_id: Migration session id (names the backup directory)
        state_dir: Stageloom state directory under the root
        context: Optional SessionContext for logging and counters
        on_entry: Called with each new BackupEntry before the live file is
            first written; raising from it aborts that write
    """

    def __init__(
        self,
        project_root: str,
        session_id: str,
        state_dir: str = ".stageloom",
        context: Optional["SessionContext"] = None,
        on_entry: Optional[Callable[[BackupEntry], None]] = None,
    ):
        self.root = os.path.abspath(project_root)
        self.session_id = session_id
        self.backup_dir = os.path.join(self.root, state_dir, "backups", session_id)
        self.checkpoint_root = os.path.join(self.root, state_dir, "checkpoints", session_id)
        self._on_entry = on_entry
        self._context = context
        self._log = context.logger if context else logger
        self._entries: Dict[str, BackupEntry] = {}
        self._in_flight: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    # ── Path helpers ───────────────────────────────────────────────────

    def relative(self, path: str) -> str:
        """Normalise a path to posix form relative to the project root."""
        full = path if os.path.isabs(path) else os.path.join(self.root, path)
        rel = os.path.relpath(os.path.normpath(full), self.root)
        if rel == os.curdir or rel.startswith(os.pardir):
            raise WriteError(f"Path escapes project root: {path}", path)
        return rel.replace(os.sep, "/")

    def absolute(self, rel_path: str) -> str:
        return os.path.join(self.root, *rel_path.split("/"))

    # ── Backup ─────────────────────────────────────────────────────────

    def backup(self, path: str) -> BackupEntry:
        """Snapshot a file before its first modification in this session.

        Idempotent: later calls return the original entry and never replace
        the stored snapshot, even if the live file changed since.

        Raises:
            WriteError: File missing or snapshot could not be written
        """
        rel = self.relative(path)
        return self._ensure_entry(rel, lambda: self._snapshot(rel))

    def _snapshot(self, rel: str) -> BackupEntry:
        source = self.absolute(rel)
        target = os.path.join(self.backup_dir, *rel.split("/"))
        try:
            if os.path.exists(target):
                # Mirror left by an earlier run of this session whose entry was
                # never recorded. It holds the pre-session content; the live
                # file may not, so the mirror is never replaced.
                with open(target, "rb") as f:
                    data = f.read()
                self._log.warning(f"Reusing existing snapshot of {rel}")
            else:
                with open(source, "rb") as f:
                    data = f.read()
                _atomic_write(target, data, mode_from=source)
                self._log.debug(f"Backed up {rel}")
        except OSError as e:
            raise WriteError(f"Could not back up {rel}: {e}", rel) from e

        if self._context:
            self._context.incr("backups_taken")
        return BackupEntry(
            original_path=rel,
            snapshot_path=target,
            checksum=checksum_bytes(data),
            timestamp=datetime.utcnow().isoformat(),
            existed=True,
        )

    def _track_created(self, rel: str) -> BackupEntry:
        return BackupEntry(
            original_path=rel,
            snapshot_path=None,
            checksum=None,
            timestamp=datetime.utcnow().isoformat(),
            existed=False,
        )

    def _ensure_entry(self, rel: str, make: Callable[[], BackupEntry]) -> BackupEntry:
        while True:
            with self._lock:
                entry = self._entries.get(rel)
                if entry is not None:
                    return entry
                waiter = self._in_flight.get(rel)
                owner = waiter is None
                if owner:
                    waiter = threading.Event()
                    self._in_flight[rel] = waiter

            if not owner:
                waiter.wait()
                continue

            entry = None
            try:
                created = make()
                self._record(created)
                entry = created
                return entry
            finally:
                with self._lock:
                    if entry is not None:
                        self._entries[rel] = entry
                    self._in_flight.pop(rel, None)
                waiter.set()

    def _record(self, entry: BackupEntry) -> None:
        if self._on_entry is None:
            return
        try:
            self._on_entry(entry)
        except Exception as e:
            raise WriteError(
                f"Could not record backup of {entry.original_path}: {e}", entry.original_path
            ) from e

    # ── Safe write ─────────────────────────────────────────────────────

    def safe_write(self, path: str, content: Union[str, bytes]) -> BackupEntry:
        """Write content to a project file after securing its backup.

        Existing files are backed up first; new files are tracked so that a
        restore deletes them. The write itself is temp-file + rename.

        Returns:
            The BackupEntry covering this path

        Raises:
            WriteError: Backup or write failed (live file left untouched)
        """
        rel = self.relative(path)
        full = self.absolute(rel)

        if os.path.exists(full):
            entry = self.backup(rel)
        else:
            entry = self._ensure_entry(rel, lambda: self._track_created(rel))

        data = content.encode("utf-8") if isinstance(content, str) else content
        try:
            _atomic_write(full, data, mode_from=full)
        except OSError as e:
            raise WriteError(f"Could not write {rel}: {e}", rel) from e

        if self._context:
            self._context.incr("patches_written")
        return entry

    # ── Restore ────────────────────────────────────────────────────────

    def restore(self, path: str) -> None:
        """Put the pre-session content back in place.

        Raises:
            BackupNotFoundError: Path was never backed up in this session
            RestoreError: Snapshot unreadable, corrupted, or not writable
        """
        rel = self.relative(path)
        with self._lock:
            entry = self._entries.get(rel)
        if entry is None:
            raise BackupNotFoundError(rel)
        self._put_back(rel, entry.existed, entry.snapshot_path, entry.checksum)

    def _put_back(self, rel: str, existed: bool, copy_path: Optional[str], checksum: Optional[str]) -> None:
        full = self.absolute(rel)
        try:
            if not existed:
                if os.path.exists(full):
                    os.remove(full)
            else:
                with open(copy_path, "rb") as f:
                    data = f.read()
                if checksum_bytes(data) != checksum:
                    raise RestoreError(f"Backup of {rel} is corrupted (checksum mismatch)", rel)
                _atomic_write(full, data)
        except OSError as e:
            raise RestoreError(f"Could not restore {rel}: {e}", rel) from e

        if self._context:
            self._context.incr("restores")
        self._log.info(f"Restored {rel}")

    def _restore_each(self, rels: Iterable[str], restore_one: Callable[[str], None]) -> List[str]:
        restored: List[str] = []
        failures: List[RestoreError] = []
        for rel in rels:
            try:
                restore_one(rel)
                restored.append(rel)
            except RestoreError as e:
                self._log.error(e.message)
                failures.append(e)

        if failures:
            raise RestoreError(
                f"{len(failures)} file(s) could not be restored; backups remain in {self.backup_dir}",
                failures[0].path,
                details=[f.path for f in failures],
            )
        return restored

    def restore_many(self, paths: Iterable[str]) -> List[str]:
        """Restore the given paths to their pre-session content.

        Every path is attempted; if any fail, RestoreError is raised after
        the others were restored, listing the failures.
        """
        return self._restore_each([self.relative(p) for p in paths], self.restore)

    def restore_all(self) -> List[str]:
        """Restore every tracked path (session-wide abort)."""
        with self._lock:
            paths = list(self._entries)
        self._log.info(f"Restoring all {len(paths)} file(s) from backup...")
        restored = self.restore_many(paths)
        self._log.info(f"Restored {len(restored)} file(s)")
        return restored

    # ── Checkpoints ────────────────────────────────────────────────────

    def _checkpoint_dir(self, name: str) -> str:
        return os.path.join(self.checkpoint_root, re.sub(r"[^A-Za-z0-9._-]", "_", name))

    def checkpoint(self, name: str, paths: Iterable[str]) -> Checkpoint:
        """Copy the current content of ``paths`` before an attempt writes them.

        Any earlier checkpoint under the same name is replaced. The index is
        written last, so an interrupted checkpoint is never loaded.

        Raises:
            WriteError: A file could not be read or copied
        """
        self.discard_checkpoint(name)
        checkpoint = Checkpoint(name, self._checkpoint_dir(name))

        for path in paths:
            rel = self.relative(path)
            source = self.absolute(rel)
            if not os.path.exists(source):
                checkpoint.entries.append(CheckpointEntry(rel, existed=False))
                continue
            try:
                with open(source, "rb") as f:
                    data = f.read()
                _atomic_write(checkpoint.copy_path(rel), data, mode_from=source)
            except OSError as e:
                raise WriteError(f"Could not checkpoint {rel}: {e}", rel) from e
            checkpoint.entries.append(CheckpointEntry(rel, existed=True, checksum=checksum_bytes(data)))

        index = {"name": name, "entries": [asdict(e) for e in checkpoint.entries]}
        try:
            _atomic_write(
                os.path.join(checkpoint.directory, CHECKPOINT_INDEX),
                json.dumps(index, indent=2).encode("utf-8"),
            )
        except OSError as e:
            raise WriteError(f"Could not record checkpoint {name}: {e}", name) from e

        self._log.debug(f"Checkpoint {name}: {len(checkpoint.entries)} file(s)")
        return checkpoint

    def load_checkpoint(self, name: str) -> Optional[Checkpoint]:
        """Load a checkpoint written by this or an earlier run, or None."""
        directory = self._checkpoint_dir(name)
        index_path = os.path.join(directory, CHECKPOINT_INDEX)
        if not os.path.exists(index_path):
            return None
        try:
            with open(index_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise RestoreError(f"Checkpoint {name} is unreadable: {e}", name) from e
        return Checkpoint(name, directory, [CheckpointEntry(**e) for e in data.get("entries", [])])

    def rollback_to(self, checkpoint: Checkpoint) -> List[str]:
        """Put every checkpointed path back to its pre-attempt content.

        Raises:
            RestoreError: One or more paths could not be rolled back
        """
        by_path = {e.path: e for e in checkpoint.entries}

        def put_back(rel: str) -> None:
            entry = by_path[rel]
            self._put_back(rel, entry.existed, checkpoint.copy_path(rel), entry.checksum)

        restored = self._restore_each(list(by_path), put_back)
        self._log.info(f"Rolled back {len(restored)} file(s) to checkpoint {checkpoint.name}")
        return restored

    def discard_checkpoint(self, name: str) -> None:
        directory = self._checkpoint_dir(name)
        if os.path.isdir(directory):
            shutil.rmtree(directory)

    # ── Introspection / resume ─────────────────────────────────────────

    def has_backup(self, path: str) -> bool:
        rel = self.relative(path)
        with self._lock:
            return rel in self._entries

    def get_entry(self, path: str) -> Optional[BackupEntry]:
        rel = self.relative(path)
        with self._lock:
            return self._entries.get(rel)

    def entries(self) -> List[BackupEntry]:
        with self._lock:
            return list(self._entries.values())

    def adopt(self, entries: Iterable[BackupEntry]) -> int:
        """Rehydrate entries persisted by an earlier run of this session.

        Existing entries win; no snapshot is taken. Returns the number adopted.
        """
        adopted = 0
        with self._lock:
            for entry in entries:
                if entry.original_path not in self._entries:
                    self._entries[entry.original_path] = entry
                    adopted += 1
        return adopted

    def summary(self) -> Dict[str, object]:
        with self._lock:
            count = len(self._entries)
        return {"count": count, "location": self.backup_dir}
