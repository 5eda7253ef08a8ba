# tests/unit/test_sync/test_discovery.py
"""Tests for sync source discovery."""

import os

import pytest


def _snapshot(folder, backup_mtime=None, content=True):
    folder.mkdir(parents=True, exist_ok=True)
    backup = folder / "SUSDB.bak"
    backup.write_bytes(b"backup")
    if backup_mtime is not None:
        os.utime(backup, (backup_mtime, backup_mtime))
    if content:
        (folder / "WsusContent" / "0A").mkdir(parents=True, exist_ok=True)
        (folder / "WsusContent" / "0A" / "file.cab").write_bytes(b"cab")
    return folder


class TestDiscoverSource:
    """Flat vs. archived layouts."""

    def test_flat_layout(self, tmp_path):
        from patchkeeper.services.sync import discover_source

        _snapshot(tmp_path)

        source = discover_source(tmp_path)

        assert source.layout == "flat"
        assert source.folder == tmp_path
        assert source.backup_file.name == "SUSDB.bak"
        assert source.content_dir == tmp_path / "WsusContent"

    def test_flat_layout_content_only(self, tmp_path):
        from patchkeeper.services.sync import discover_source

        (tmp_path / "WsusContent").mkdir()

        source = discover_source(tmp_path)

        assert source.layout == "flat"
        assert source.backup_file is None

    def test_archive_picks_newest_backup_folder(self, tmp_path):
        """The folder holding the newest backup wins, and its content comes with it."""
        from patchkeeper.services.sync import discover_source

        _snapshot(tmp_path / "2025" / "Dec" / "20", backup_mtime=1_700_000_000)
        newest = _snapshot(tmp_path / "2026" / "Jan" / "9", backup_mtime=1_800_000_000)
        _snapshot(tmp_path / "2026" / "Jan" / "2", backup_mtime=1_750_000_000)

        source = discover_source(tmp_path)

        assert source.layout == "archive"
        assert source.folder == newest
        assert source.backup_file == newest / "SUSDB.bak"
        assert source.content_dir == newest / "WsusContent"

    def test_missing_root_is_a_precondition_failure(self, tmp_path):
        from patchkeeper.errors import SyncPreconditionError
        from patchkeeper.services.sync import discover_source

        with pytest.raises(SyncPreconditionError):
            discover_source(tmp_path / "not-mounted")

    def test_empty_root_has_no_source(self, tmp_path):
        from patchkeeper.errors import SourceNotFoundError
        from patchkeeper.services.sync import discover_source

        (tmp_path / "2026" / "Jan").mkdir(parents=True)

        with pytest.raises(SourceNotFoundError):
            discover_source(tmp_path)


class TestFindBackupFile:
    """Tests for find_backup_file()."""

    def test_newest_of_several(self, tmp_path):
        from patchkeeper.services.sync.discovery import find_backup_file

        old = tmp_path / "SUSDB_20260101.bak"
        new = tmp_path / "SUSDB_20260102.bak"
        old.write_bytes(b"a")
        new.write_bytes(b"b")
        os.utime(old, (1_000_000, 1_000_000))
        os.utime(new, (2_000_000, 2_000_000))

        assert find_backup_file(tmp_path) == new

    def test_none_when_absent(self, tmp_path):
        from patchkeeper.services.sync.discovery import find_backup_file

        assert find_backup_file(tmp_path) is None
