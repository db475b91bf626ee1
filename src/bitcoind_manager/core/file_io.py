"""Atomic file writes with timestamped backups.

- atomic_write: Write content via temp file + fsync + os.replace
- write_with_backup: Keep the previous file as ``<name>.<timestamp>.bak``, then atomic_write
- prune_backups: Retain only the newest N backups of a file

Every path through these functions leaves the target either fully old or
fully new. The backup copy is taken before the swap, so a failure during the
write never loses the previous content.

Cross-platform concerns:
- Windows PermissionError retry with exponential backoff on os.replace
- Parent directory fsync on Linux for durability
"""

import os
import shutil
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

BACKUP_SUFFIX = ".bak"
CORRUPT_SUFFIX = ".corrupt"
BACKUP_TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"


def _replace_with_retry(src: str, dst: str) -> None:
    """Replace file atomically with retry on Windows PermissionError.

    On Windows, retries up to 3 attempts with exponential backoff
    (0.05s, 0.1s, 0.2s) to handle transient PermissionError from
    antivirus or file indexing. On other platforms, no retry is used.
    """
    if sys.platform == 'win32':
        @retry(
            retry=retry_if_exception_type(PermissionError),
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=0.05, min=0.05, max=0.2),
            reraise=True
        )
        def _replace_windows() -> None:
            os.replace(src, dst)

        _replace_windows()
    else:
        os.replace(src, dst)


def _fsync_parent_directory(file_path: str) -> None:
    """Fsync parent directory so the rename itself is durable (no-op on Windows)."""
    if sys.platform == 'win32':
        return

    parent_dir = os.path.dirname(file_path)
    if not parent_dir:
        return

    try:
        dir_fd = os.open(parent_dir, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
    except OSError:
        # Some filesystems don't support directory fsync
        pass


def atomic_write(target_path: str | Path, content: bytes) -> None:
    """Write content to file atomically with durability guarantees.

    Args:
        target_path: Destination file path
        content: Raw bytes content to write

    Raises:
        OSError: If write fails
        PermissionError: If file cannot be written (after retries)

    Implementation:
        1. Create temp file in same directory as target (ensures same filesystem)
        2. Write content to temp file and fsync it
        3. Close temp file descriptor (required before os.replace on Windows)
        4. Replace target with temp file atomically (with retry on Windows)
        5. Fsync parent directory on Linux/macOS
        6. On any failure: cleanup temp file and re-raise
    """
    target_path = str(target_path)
    target_dir = os.path.dirname(target_path) or '.'
    fd = None
    tmp_path = None

    try:
        fd, tmp_path = tempfile.mkstemp(dir=target_dir, prefix='.tmp_')

        os.write(fd, content)
        os.fsync(fd)

        # MUST close before os.replace on Windows
        os.close(fd)
        fd = None

        # Preserve the mode of the file being replaced (mkstemp creates 0600)
        if os.path.exists(target_path):
            shutil.copymode(target_path, tmp_path)
        else:
            os.chmod(tmp_path, 0o644)

        _replace_with_retry(tmp_path, target_path)
        _fsync_parent_directory(target_path)

    except Exception:
        if fd is not None:
            try:
                os.close(fd)
            except OSError:
                pass

        if tmp_path is not None and os.path.exists(tmp_path):
            try:
                os.unlink(tmp_path)
            except OSError:
                pass

        raise


def backup_path_for(target: Path, now: datetime | None = None, suffix: str = BACKUP_SUFFIX) -> Path:
    """Return ``<target>.<UTC timestamp><suffix>`` for the given moment."""
    stamp = (now or datetime.now(timezone.utc)).strftime(BACKUP_TIMESTAMP_FORMAT)
    return target.with_name(f"{target.name}.{stamp}{suffix}")


def list_backups(target: Path, suffix: str = BACKUP_SUFFIX) -> list[Path]:
    """Backups of ``target`` sorted oldest first (timestamps sort lexically)."""
    prefix = f"{target.name}."
    if not target.parent.exists():
        return []
    return sorted(
        p for p in target.parent.iterdir()
        if p.name.startswith(prefix) and p.name.endswith(suffix)
    )


def prune_backups(target: Path, keep: int, suffix: str = BACKUP_SUFFIX) -> list[Path]:
    """Delete all but the newest ``keep`` backups of ``target`` ending in ``suffix``.

    Returns:
        The backup paths that were removed.
    """
    backups = list_backups(target, suffix)
    stale = backups[:-keep] if keep > 0 else backups
    removed = []
    for path in stale:
        try:
            path.unlink()
            removed.append(path)
        except OSError as e:
            logger.warning(f"Could not remove old backup {path}: {e}")
    return removed


def write_with_backup(target: str | Path, content: str, keep_backups: int | None = None) -> Path | None:
    """Back up the current file (if any) and atomically replace it.

    Args:
        target: File to write
        content: New text content (written as UTF-8)
        keep_backups: If set, prune older backups down to this many

    Returns:
        Path of the backup that was created, or None when there was no previous file.
    """
    target = Path(target)
    target.parent.mkdir(parents=True, exist_ok=True)

    backup: Path | None = None
    if target.exists():
        backup = backup_path_for(target)
        shutil.copy2(target, backup)

    atomic_write(target, content.encode("utf-8"))

    if keep_backups is not None:
        prune_backups(target, keep_backups)

    return backup
