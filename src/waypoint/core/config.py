"""
Configuration schema and loading for Waypoint.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.

Example waypoint.yaml:
    project_root: /data/projects/churn
    checkpoint:
      keep_count: 5
    watchdog:
      poll_interval_seconds: 5
      grace_period_ms: 5000
    logging:
      level: INFO
      json_output: true
"""

import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from waypoint.contracts.enums import TrustLevel
from waypoint.contracts.stage import DEFAULT_MAX_DURATION_SECONDS
from waypoint.core.paths import ProjectPaths, detect_project_root


class CheckpointSettings(BaseModel):
    """Checkpoint retention and verification."""

    model_config = {"frozen": True}

    keep_count: int = Field(default=5, ge=1, description="Checkpoints retained per run by prune()")
    default_trust_level: TrustLevel = Field(
        default=TrustLevel.LOCAL,
        description="Trust level applied to manifests that do not declare one",
    )


class WatchdogSettings(BaseModel):
    """Stage timeout detection and interrupt escalation.

    Escalation timing for grace period G:
    - interrupt, wait up to G
    - terminate, wait up to max(G/2, 1000ms)
    - kill, wait up to 1000ms
    """

    model_config = {"frozen": True}

    poll_interval_seconds: float = Field(default=5.0, gt=0, le=60, description="Watchdog polling cadence")
    hard_timeout_grace_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Seconds past max duration before escalation starts",
    )
    grace_period_ms: int = Field(default=5000, ge=100, description="Wait after the interrupt signal")


class StageSettings(BaseModel):
    """Defaults for stage delegation."""

    model_config = {"frozen": True}

    default_max_duration_seconds: int = Field(default=DEFAULT_MAX_DURATION_SECONDS, ge=30, le=600)
    max_retries: int = Field(default=1, ge=0, le=5, description="Extra attempts for failed retryable stages")
    retry_delay_seconds: float = Field(default=1.0, ge=0, le=60, description="Pause before retrying a failed stage")


class SessionLockSettings(BaseModel):
    """Session lock preventing concurrent orchestrators on one run."""

    model_config = {"frozen": True}

    stale_after_seconds: float = Field(default=300.0, gt=0, description="Age after which a lock is considered abandoned")


class LoggingSettings(BaseModel):
    """Log output configuration."""

    model_config = {"frozen": True}

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_output: bool = False


class WaypointSettings(BaseModel):
    """Top-level Waypoint configuration.

    All settings are validated and frozen after construction. Every section
    has defaults, so WaypointSettings() is a usable configuration.
    """

    model_config = {"frozen": True}

    project_root: Path | None = Field(
        default=None,
        description="Project root (default: detected from WAYPOINT_PROJECT_ROOT, waypoint.yaml, .git or cwd)",
    )
    runtime_dir: Path = Field(
        default=Path(".waypoint/runtime"),
        description="Session lock directory, relative to the project root unless absolute",
    )
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    watchdog: WatchdogSettings = Field(default_factory=WatchdogSettings)
    stage: StageSettings = Field(default_factory=StageSettings)
    session_lock: SessionLockSettings = Field(default_factory=SessionLockSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @model_validator(mode="after")
    def validate_project_root_exists(self) -> "WaypointSettings":
        if self.project_root is not None and not self.project_root.is_dir():
            raise ValueError(f"project_root {self.project_root} is not a directory")
        return self

    def project_paths(self) -> ProjectPaths:
        """Build the path resolver for this configuration."""
        root = self.project_root if self.project_root is not None else detect_project_root()
        return ProjectPaths(root, runtime_dir=self.runtime_dir)


# ${VAR} or ${VAR:-default}
_ENV_REFERENCE = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

# Dynaconf bookkeeping that as_dict() reports alongside real settings
_DYNACONF_KEYS = frozenset({"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"})


def _substitute(text: str, environ: Mapping[str, str]) -> str:
    def lookup(match: re.Match[str]) -> str:
        name, default = match.group(1), match.group(2)
        if name in environ:
            return environ[name]
        if default is None:
            raise ValueError(f"Config references ${{{name}}} but {name} is not set and has no default")
        return default

    return _ENV_REFERENCE.sub(lookup, text)


def _normalize_raw(value: Any, environ: Mapping[str, str]) -> Any:
    """Lowercase keys and expand ${VAR} references, recursively.

    Dynaconf reports keys uppercased; the pydantic schema is lowercase.
    """
    if isinstance(value, dict):
        return {str(k).lower(): _normalize_raw(v, environ) for k, v in value.items()}
    if isinstance(value, list):
        return [_normalize_raw(item, environ) for item in value]
    if isinstance(value, str):
        return _substitute(value, environ)
    return value


def load_settings(config_path: Path) -> WaypointSettings:
    """Read waypoint.yaml, apply WAYPOINT_* overrides and validate.

    Overrides beat the file, the file beats schema defaults. Nested keys use
    a double underscore: WAYPOINT_WATCHDOG__GRACE_PERIOD_MS=2000.

    Raises:
        FileNotFoundError: If config_path does not exist
        ValueError: If a ${VAR} reference has no value and no default
        ValidationError: If the merged settings fail validation
    """
    from dynaconf import Dynaconf

    # Dynaconf treats a missing settings file as empty
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="WAYPOINT",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    loaded = {k: v for k, v in dynaconf_settings.as_dict().items() if k not in _DYNACONF_KEYS}
    raw_config: dict[str, Any] = _normalize_raw(loaded, os.environ)

    # Relative project_root is relative to the config file, not the cwd
    project_root = raw_config.get("project_root")
    if isinstance(project_root, str) and not Path(project_root).is_absolute():
        raw_config["project_root"] = str((config_path.parent / project_root).resolve())

    return WaypointSettings(**raw_config)
