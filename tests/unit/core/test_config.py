"""Tests for settings models and Dynaconf loading."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from waypoint.contracts import TrustLevel
from waypoint.core.config import WatchdogSettings, WaypointSettings, load_settings


class TestSettingsModels:
    def test_defaults(self) -> None:
        settings = WaypointSettings()
        assert settings.checkpoint.keep_count == 5
        assert settings.checkpoint.default_trust_level == TrustLevel.LOCAL
        assert settings.watchdog.grace_period_ms == 5000
        assert settings.watchdog.hard_timeout_grace_seconds == 30.0
        assert settings.stage.default_max_duration_seconds == 240
        assert settings.stage.max_retries == 1
        assert settings.logging.level == "INFO"

    def test_frozen(self) -> None:
        settings = WaypointSettings()
        with pytest.raises(ValidationError):
            settings.runtime_dir = Path("elsewhere")  # type: ignore[misc]

    @pytest.mark.parametrize("field", [{"grace_period_ms": 50}, {"poll_interval_seconds": 0}])
    def test_watchdog_bounds(self, field: dict[str, float]) -> None:
        with pytest.raises(ValidationError):
            WatchdogSettings(**field)

    def test_project_root_must_exist(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError, match="not a directory"):
            WaypointSettings(project_root=tmp_path / "missing")

    def test_project_paths_uses_configured_root(self, project_root: Path) -> None:
        paths = WaypointSettings(project_root=project_root, runtime_dir=Path("locks")).project_paths()
        assert paths.root == project_root.resolve()
        assert paths.runtime_dir == project_root.resolve() / "locks"


class TestLoadSettings:
    def test_load_from_yaml_file(self, tmp_path: Path) -> None:
        config_file = tmp_path / "waypoint.yaml"
        config_file.write_text("""
project_root: "."
checkpoint:
  keep_count: 3
  default_trust_level: imported
watchdog:
  grace_period_ms: 2000
logging:
  level: DEBUG
""")
        settings = load_settings(config_file)
        assert settings.project_root == tmp_path.resolve()
        assert settings.checkpoint.keep_count == 3
        assert settings.checkpoint.default_trust_level == TrustLevel.IMPORTED
        assert settings.watchdog.grace_period_ms == 2000
        assert settings.watchdog.poll_interval_seconds == 5.0
        assert settings.logging.level == "DEBUG"

    def test_load_with_env_override(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config_file = tmp_path / "waypoint.yaml"
        config_file.write_text("""
watchdog:
  grace_period_ms: 2000
""")
        monkeypatch.setenv("WAYPOINT_WATCHDOG__GRACE_PERIOD_MS", "3000")

        settings = load_settings(config_file)
        assert settings.watchdog.grace_period_ms == 3000

    def test_env_var_expansion(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config_file = tmp_path / "waypoint.yaml"
        config_file.write_text("""
runtime_dir: "${LOCK_DIR:-/tmp/waypoint-locks}"
logging:
  level: "${LOG_LEVEL}"
""")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.delenv("LOCK_DIR", raising=False)
        settings = load_settings(config_file)
        assert settings.runtime_dir == Path("/tmp/waypoint-locks")
        assert settings.logging.level == "WARNING"

    def test_unset_reference_without_default(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config_file = tmp_path / "waypoint.yaml"
        config_file.write_text('runtime_dir: "${LOCK_DIR_NOT_SET}"\n')
        monkeypatch.delenv("LOCK_DIR_NOT_SET", raising=False)
        with pytest.raises(ValueError, match="LOCK_DIR_NOT_SET is not set"):
            load_settings(config_file)

    def test_load_validates_schema(self, tmp_path: Path) -> None:
        config_file = tmp_path / "waypoint.yaml"
        config_file.write_text("""
checkpoint:
  keep_count: 0
""")
        with pytest.raises(ValidationError):
            load_settings(config_file)

    def test_load_missing_file_raises_file_not_found(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_settings(tmp_path / "nonexistent.yaml")
