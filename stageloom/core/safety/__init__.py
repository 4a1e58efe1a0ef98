"""File safety: session-scoped backup, per-attempt checkpoints, restore and atomic writes."""

from .file_safety import BackupEntry, Checkpoint, CheckpointEntry, FileSafetyManager, checksum_bytes

__all__ = ["BackupEntry", "Checkpoint", "CheckpointEntry", "FileSafetyManager", "checksum_bytes"]
