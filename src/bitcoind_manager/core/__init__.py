"""Core functionality package."""

from .file_io import atomic_write, backup_path_for, list_backups, prune_backups, write_with_backup

__all__ = [
    "atomic_write",
    "backup_path_for",
    "list_backups",
    "prune_backups",
    "write_with_backup",
]
