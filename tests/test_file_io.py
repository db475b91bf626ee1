"""Tests for atomic writes and timestamped backups."""

import os
import sys
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from bitcoind_manager.core.file_io import (
    CORRUPT_SUFFIX,
    atomic_write,
    backup_path_for,
    list_backups,
    prune_backups,
    write_with_backup,
)


class TestAtomicWrite:
    """Tests for atomic_write function."""

    def test_basic_write(self, tmp_path):
        target = tmp_path / "test.txt"
        atomic_write(str(target), b"hello world")
        assert target.read_bytes() == b"hello world"

    def test_overwrite_existing(self, tmp_path):
        target = tmp_path / "test.txt"
        target.write_bytes(b"old")
        atomic_write(target, b"new")
        assert target.read_bytes() == b"new"

    def test_no_temp_files_left(self, tmp_path):
        atomic_write(tmp_path / "test.txt", b"data")
        assert [p.name for p in tmp_path.iterdir()] == ["test.txt"]

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_new_file_is_world_readable(self, tmp_path):
        target = tmp_path / "test.txt"
        atomic_write(target, b"data")
        assert target.stat().st_mode & 0o777 == 0o644

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_existing_mode_preserved(self, tmp_path):
        target = tmp_path / "test.txt"
        target.write_bytes(b"old")
        os.chmod(target, 0o600)
        atomic_write(target, b"new")
        assert target.stat().st_mode & 0o777 == 0o600

    def test_failure_keeps_old_content_and_cleans_up(self, tmp_path):
        target = tmp_path / "test.txt"
        target.write_bytes(b"old")
        with patch("bitcoind_manager.core.file_io._replace_with_retry", side_effect=OSError("boom")):
            with pytest.raises(OSError, match="boom"):
                atomic_write(target, b"new")
        assert target.read_bytes() == b"old"
        assert [p.name for p in tmp_path.iterdir()] == ["test.txt"]


class TestBackups:
    """Backup naming, listing and pruning."""

    def test_backup_name(self, tmp_path):
        moment = datetime(2025, 1, 2, 3, 4, 5, 6, tzinfo=timezone.utc)
        path = backup_path_for(tmp_path / "settings.json", moment)
        assert path.name == "settings.json.20250102T030405000006Z.bak"

    def test_write_with_backup_first_write(self, tmp_path):
        target = tmp_path / "sub" / "settings.json"
        assert write_with_backup(target, "{}\n") is None
        assert target.read_text() == "{}\n"

    def test_write_with_backup_keeps_previous(self, tmp_path):
        target = tmp_path / "settings.json"
        target.write_text("old")
        backup = write_with_backup(target, "new")
        assert backup is not None
        assert backup.read_text() == "old"
        assert target.read_text() == "new"
        assert list_backups(target) == [backup]

    def test_list_backups_ignores_other_files(self, tmp_path):
        target = tmp_path / "bitcoin.conf"
        (tmp_path / "bitcoin.conf.20250101T000000000000Z.bak").write_text("a")
        (tmp_path / "umbrel-bitcoin.conf.20250101T000000000000Z.bak").write_text("b")
        (tmp_path / "bitcoin.conf.corrupt").write_text("c")
        assert [p.name for p in list_backups(target)] == ["bitcoin.conf.20250101T000000000000Z.bak"]

    def test_prune_keeps_newest(self, tmp_path):
        target = tmp_path / "settings.json"
        names = [f"settings.json.2025010{i}T000000000000Z.bak" for i in range(1, 6)]
        for name in names:
            (tmp_path / name).write_text(name)

        removed = prune_backups(target, keep=2)

        assert [p.name for p in removed] == names[:3]
        assert [p.name for p in list_backups(target)] == names[3:]

    def test_write_with_backup_prunes(self, tmp_path):
        target = tmp_path / "settings.json"
        for i in range(1, 4):
            (tmp_path / f"settings.json.2024010{i}T000000000000Z.bak").write_text("x")
        target.write_text("old")
        write_with_backup(target, "new", keep_backups=1)
        remaining = list_backups(target)
        assert len(remaining) == 1
        assert remaining[0].read_text() == "old"

    def test_corrupt_suffix_listed_and_pruned_separately(self, tmp_path):
        target = tmp_path / "settings.json"
        (tmp_path / "settings.json.20250101T000000000000Z.bak").write_text("b")
        corrupt = [f"settings.json.2025010{i}T000000000000Z.corrupt" for i in range(1, 4)]
        for name in corrupt:
            (tmp_path / name).write_text("{oops")

        assert [p.name for p in list_backups(target, CORRUPT_SUFFIX)] == corrupt
        removed = prune_backups(target, keep=1, suffix=CORRUPT_SUFFIX)

        assert [p.name for p in removed] == corrupt[:2]
        assert [p.name for p in list_backups(target, CORRUPT_SUFFIX)] == corrupt[2:]
        assert [p.name for p in list_backups(target)] == ["settings.json.20250101T000000000000Z.bak"]
