# tests/unit/test_sync/test_copier.py
"""Tests for the newer-only copiers."""

import os
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest


def _write(path: Path, data: bytes = b"data", mtime: float | None = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def _native(**kwargs):
    from patchkeeper.services.sync import NativeCopier

    kwargs.setdefault("workers", 4)
    kwargs.setdefault("retries", 0)
    kwargs.setdefault("retry_wait_seconds", 0)
    return NativeCopier(**kwargs)


class TestInterpretRobocopyExit:
    """Exit code bands."""

    @pytest.mark.parametrize(
        "code,expected",
        [(0, "success"), (1, "success"), (3, "success"), (4, "partial"), (7, "partial"), (8, "failed"), (16, "failed")],
    )
    def test_bands(self, code, expected):
        from patchkeeper.services.sync import interpret_robocopy_exit

        assert interpret_robocopy_exit(code).value == expected


class TestNeedsCopy:
    """The newer-only rule."""

    def test_missing_destination(self, tmp_path):
        from patchkeeper.services.sync.copier import needs_copy

        src = _write(tmp_path / "src.bin")

        assert needs_copy(src, tmp_path / "missing.bin") == True

    def test_older_destination(self, tmp_path):
        from patchkeeper.services.sync.copier import needs_copy

        src = _write(tmp_path / "src.bin", mtime=2_000_000)
        dst = _write(tmp_path / "dst.bin", mtime=1_000_000)

        assert needs_copy(src, dst) == True

    def test_equal_or_newer_destination_is_left_alone(self, tmp_path):
        from patchkeeper.services.sync.copier import needs_copy

        src = _write(tmp_path / "src.bin", mtime=2_000_000)
        same = _write(tmp_path / "same.bin", mtime=2_000_000)
        newer = _write(tmp_path / "newer.bin", mtime=3_000_000)

        assert needs_copy(src, same) == False
        assert needs_copy(src, newer) == False

    def test_truncated_destination_timestamp_counts_as_equal(self, tmp_path):
        from patchkeeper.services.sync.copier import needs_copy

        src = _write(tmp_path / "src.bin", mtime=2_000_000.7)
        fat_copy = _write(tmp_path / "fat.bin", mtime=2_000_000)
        exfat_copy = _write(tmp_path / "exfat.bin", mtime=2_000_000.69)

        assert needs_copy(src, fat_copy) == False
        assert needs_copy(src, exfat_copy) == False

    def test_source_beyond_tolerance_is_copied(self, tmp_path):
        from patchkeeper.services.sync.copier import needs_copy

        src = _write(tmp_path / "src.bin", mtime=2_000_003)
        dst = _write(tmp_path / "dst.bin", mtime=2_000_000)

        assert needs_copy(src, dst) == True


class TestNativeCopier:
    """Pure-Python tree copy."""

    def test_copies_tree_and_second_run_copies_nothing(self, tmp_path):
        src = tmp_path / "src"
        _write(src / "a.cab", b"aaaa")
        _write(src / "sub" / "b.cab", b"bb")
        _write(src / "sub" / "deeper" / "c.cab", b"c")
        dst = tmp_path / "dst"

        first = _native().copy_tree(src, dst)
        second = _native().copy_tree(src, dst)

        assert first.files_copied == 3
        assert first.bytes_copied == 7
        assert (dst / "sub" / "deeper" / "c.cab").read_bytes() == b"c"
        assert second.files_copied == 0
        assert second.files_skipped == 3
        assert second.status.value == "success"

    def test_newer_destination_never_overwritten(self, tmp_path):
        src = tmp_path / "src"
        dst = tmp_path / "dst"
        _write(src / "a.cab", b"old source", mtime=1_000_000)
        _write(dst / "a.cab", b"newer dest", mtime=2_000_000)

        outcome = _native().copy_tree(src, dst)

        assert outcome.files_copied == 0
        assert (dst / "a.cab").read_bytes() == b"newer dest"

    def test_updated_source_is_recopied(self, tmp_path):
        src = tmp_path / "src"
        dst = tmp_path / "dst"
        _write(src / "a.cab", b"v1", mtime=1_000_000)
        _native().copy_tree(src, dst)
        _write(src / "a.cab", b"v2", mtime=2_000_000)

        outcome = _native().copy_tree(src, dst)

        assert outcome.files_copied == 1
        assert (dst / "a.cab").read_bytes() == b"v2"

    def test_copy_file_into_directory(self, tmp_path):
        backup = _write(tmp_path / "src" / "SUSDB.bak", b"backup")
        dst = tmp_path / "dst"
        dst.mkdir()

        outcome = _native().copy_file(backup, dst)

        assert outcome.files_copied == 1
        assert (dst / "SUSDB.bak").read_bytes() == b"backup"

    def test_failed_file_is_counted_and_others_still_copy(self, tmp_path):
        import shutil

        src = tmp_path / "src"
        _write(src / "good.cab")
        _write(src / "bad.cab")
        real_copy2 = shutil.copy2

        def flaky_copy2(source, destination, *args, **kwargs):
            if Path(source).name == "bad.cab":
                raise PermissionError("in use")
            return real_copy2(source, destination, *args, **kwargs)

        with patch("patchkeeper.services.sync.copier.shutil.copy2", side_effect=flaky_copy2):
            outcome = _native().copy_tree(src, tmp_path / "dst")

        assert outcome.files_copied == 1
        assert outcome.files_failed == 1
        assert outcome.status.value == "partial"
        assert outcome.ok == True

    def test_retries_transient_failures(self, tmp_path):
        import shutil

        src = tmp_path / "src"
        _write(src / "a.cab")
        real_copy2 = shutil.copy2
        attempts = []

        def fail_once(source, destination, *args, **kwargs):
            attempts.append(source)
            if len(attempts) == 1:
                raise OSError("sharing violation")
            return real_copy2(source, destination, *args, **kwargs)

        with patch("patchkeeper.services.sync.copier.shutil.copy2", side_effect=fail_once):
            outcome = _native(retries=2).copy_tree(src, tmp_path / "dst")

        assert len(attempts) == 2
        assert outcome.files_copied == 1
        assert outcome.files_failed == 0

    def test_rerun_after_coarse_timestamp_copy_copies_nothing(self, tmp_path):
        src = tmp_path / "src"
        dst = tmp_path / "dst"
        _write(src / "a.cab", b"payload", mtime=1_500_000.9)
        _native().copy_tree(src, dst)
        # Transport drive keeps whole seconds only
        os.utime(dst / "a.cab", (1_500_000, 1_500_000))

        outcome = _native().copy_tree(src, dst)

        assert outcome.files_copied == 0
        assert outcome.files_skipped == 1

    def test_age_filter_limits_tree(self, tmp_path):
        import time

        from patchkeeper.services.sync import AgeFilter

        now = time.time()
        src = tmp_path / "src"
        _write(src / "old.cab", mtime=now - 40 * 86400)
        _write(src / "sub" / "new.cab", mtime=now - 2 * 86400)
        dst = tmp_path / "dst"

        outcome = _native().copy_tree(src, dst, age_filter=AgeFilter(max_age_days=10))

        assert outcome.files_copied == 1
        assert (dst / "sub" / "new.cab").exists()
        assert not (dst / "old.cab").exists()

    def test_cancel_leaves_partial_status(self, tmp_path):
        import threading

        src = tmp_path / "src"
        _write(src / "a.cab")
        cancel = threading.Event()
        cancel.set()

        outcome = _native(cancel_event=cancel).copy_tree(src, tmp_path / "dst")

        assert outcome.files_copied == 0
        assert outcome.status.value == "partial"


class TestRobocopyCopier:
    """Command line and exit code handling (subprocess mocked)."""

    def test_tree_arguments(self, tmp_path):
        from patchkeeper.services.sync import RobocopyCopier

        with patch("patchkeeper.services.sync.copier.subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="")
            outcome = RobocopyCopier(workers=16, retries=2, retry_wait_seconds=5).copy_tree(
                tmp_path / "src", tmp_path / "dst"
            )

        args = mock_run.call_args[0][0]
        assert args[:4] == ["robocopy", str(tmp_path / "src"), str(tmp_path / "dst"), "/E"]
        for flag in ("/XO", "/FFT", "/MT:16", "/R:2", "/W:5", "/NP", "/NDL", "/NFL"):
            assert flag in args
        assert outcome.status.value == "success"
        assert outcome.exit_code == 1

    def test_file_arguments(self, tmp_path):
        from patchkeeper.services.sync import RobocopyCopier

        with patch("patchkeeper.services.sync.copier.subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
            RobocopyCopier().copy_file(tmp_path / "src" / "SUSDB.bak", tmp_path / "dst")

        args = mock_run.call_args[0][0]
        assert args[1:4] == [str(tmp_path / "src"), str(tmp_path / "dst"), "SUSDB.bak"]
        assert "/E" not in args

    def test_failure_exit_code(self, tmp_path):
        from patchkeeper.services.sync import RobocopyCopier

        with patch("patchkeeper.services.sync.copier.subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=8, stdout="ERROR 5 Access is denied.", stderr="")
            outcome = RobocopyCopier().copy_tree(tmp_path / "src", tmp_path / "dst")

        assert outcome.ok == False
        assert "Access is denied" in outcome.errors[0]

    def test_missing_executable(self, tmp_path):
        from patchkeeper.services.sync import RobocopyCopier

        with patch("patchkeeper.services.sync.copier.subprocess.run", side_effect=FileNotFoundError("robocopy")):
            outcome = RobocopyCopier().copy_tree(tmp_path / "src", tmp_path / "dst")

        assert outcome.status.value == "failed"


class TestCreateCopier:
    """Copier selection."""

    def test_auto_prefers_robocopy_when_available(self):
        from patchkeeper.services.sync import create_copier

        with patch("patchkeeper.services.sync.copier.shutil.which", return_value="C:/Windows/robocopy.exe"):
            assert create_copier("auto").name == "robocopy"

    def test_auto_falls_back_to_native(self):
        from patchkeeper.services.sync import create_copier

        with patch("patchkeeper.services.sync.copier.shutil.which", return_value=None):
            assert create_copier("auto").name == "native"

    def test_unknown_tool(self):
        from patchkeeper.services.sync import create_copier

        with pytest.raises(ValueError):
            create_copier("rsync")


class TestAgeFilter:
    """Age windows in days."""

    def test_matches(self):
        from patchkeeper.services.sync import AgeFilter

        now = 10_000_000.0
        old, recent = now - 40 * 86400, now - 2 * 86400

        assert AgeFilter(min_age_days=30).matches(old, now) == True
        assert AgeFilter(min_age_days=30).matches(recent, now) == False
        assert AgeFilter(max_age_days=30).matches(recent, now) == True
        assert AgeFilter(max_age_days=30).matches(old, now) == False

    def test_robocopy_flags(self, tmp_path):
        from patchkeeper.services.sync import AgeFilter, RobocopyCopier

        with patch("patchkeeper.services.sync.copier.subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
            RobocopyCopier().copy_tree(tmp_path / "src", tmp_path / "dst", age_filter=AgeFilter(min_age_days=30))
            RobocopyCopier().copy_tree(tmp_path / "src", tmp_path / "dst", age_filter=AgeFilter(max_age_days=7))

        first, second = (c[0][0] for c in mock_run.call_args_list)
        assert "/MINAGE:30" in first
        assert "/MAXAGE:7" in second
        assert not any(a.startswith("/MAXAGE") for a in first)
