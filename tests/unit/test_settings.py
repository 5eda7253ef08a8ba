# tests/unit/test_settings.py
"""Tests for configuration loading and validation."""

import pytest
from pydantic import ValidationError


class TestSettingsDefaults:
    """Defaults match the documented configuration."""

    def test_defaults(self, monkeypatch):
        from patchkeeper.config import Settings

        monkeypatch.delenv("STORE_URL", raising=False)
        settings = Settings(_env_file=None)

        assert settings.STORE_URL.startswith("mssql+pyodbc://")
        assert settings.MUTATION_BATCH_SIZE == 10000
        assert settings.MUTATION_BATCH_DELAY_SECONDS == 1.0
        assert settings.MUTATION_PROGRESS_EVERY == 50000
        assert settings.INDEX_FRAGMENTATION_FLOOR == 10.0
        assert settings.INDEX_REBUILD_THRESHOLD == 30.0
        assert settings.INDEX_MIN_PAGE_COUNT == 1000
        assert settings.BACKUP_RETENTION_DAYS == 90
        assert settings.DECLINE_AGE_MONTHS == 6
        assert settings.AUTO_APPROVE_CAP == 100
        assert settings.COPY_TOOL == "auto"

    def test_environment_overrides(self, monkeypatch):
        from patchkeeper.config import Settings

        monkeypatch.setenv("MUTATION_BATCH_SIZE", "500")
        monkeypatch.setenv("COPY_TOOL", "Native")
        monkeypatch.setenv("LOG_JSON", "true")

        settings = Settings(_env_file=None)

        assert settings.MUTATION_BATCH_SIZE == 500
        assert settings.COPY_TOOL == "native"
        assert settings.LOG_JSON == True


class TestSettingsValidation:
    """Fail fast on bad configuration."""

    def test_bare_mssql_url_gets_driver(self):
        from patchkeeper.config import Settings

        settings = Settings(_env_file=None, STORE_URL="mssql://@server/SUSDB")

        assert settings.STORE_URL == "mssql+pyodbc://@server/SUSDB"

    @pytest.mark.parametrize("field", ["MUTATION_BATCH_SIZE", "AUTO_APPROVE_CAP", "COPY_WORKERS"])
    def test_rejects_non_positive(self, field):
        from patchkeeper.config import Settings

        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: 0})

    def test_rejects_unknown_copy_tool(self):
        from patchkeeper.config import Settings

        with pytest.raises(ValidationError):
            Settings(_env_file=None, COPY_TOOL="rsync")

    def test_rebuild_threshold_not_below_floor(self):
        from patchkeeper.config import Settings

        with pytest.raises(ValidationError):
            Settings(_env_file=None, INDEX_FRAGMENTATION_FLOOR=40.0, INDEX_REBUILD_THRESHOLD=30.0)

    def test_export_mode_is_normalized(self):
        from patchkeeper.config import Settings

        settings = Settings(_env_file=None, EXPORT_MODE=" Differential ")

        assert settings.EXPORT_MODE == "differential"

    def test_rejects_unknown_export_mode_and_negative_window(self):
        from patchkeeper.config import Settings

        with pytest.raises(ValidationError):
            Settings(_env_file=None, EXPORT_MODE="incremental")
        with pytest.raises(ValidationError):
            Settings(_env_file=None, EXPORT_DAYS=-1)

    def test_rejects_shrink_target_out_of_range(self):
        from patchkeeper.config import Settings

        with pytest.raises(ValidationError):
            Settings(_env_file=None, SHRINK_TARGET_FREE_PERCENT=101)


class TestDerivedSettings:
    """Parsed list settings and paths."""

    def test_run_marker_defaults_into_backup_dir(self, tmp_path):
        from patchkeeper.config import Settings

        settings = Settings(_env_file=None, BACKUP_DIR=str(tmp_path))

        assert settings.run_marker_path == tmp_path / ".maintenance.lock"

    def test_explicit_run_marker(self, tmp_path):
        from patchkeeper.config import Settings

        settings = Settings(_env_file=None, RUN_MARKER_PATH=str(tmp_path / "x.lock"))

        assert settings.run_marker_path == tmp_path / "x.lock"

    def test_get_settings_is_cached(self):
        from patchkeeper.config import get_settings

        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()
