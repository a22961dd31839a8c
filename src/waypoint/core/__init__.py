# src/waypoint/core/__init__.py
"""Core infrastructure: Canonical hashing, Paths, Configuration, Checkpoint, Logging."""

from waypoint.core.canonical import (
    canonical_json,
    compute_manifest_sha256,
    stable_hash,
    verify_manifest_seal,
)
from waypoint.core.checkpoint import CheckpointManager, generate_rehydration_code, validate_manifest
from waypoint.core.config import (
    CheckpointSettings,
    LoggingSettings,
    SessionLockSettings,
    StageSettings,
    WatchdogSettings,
    WaypointSettings,
    load_settings,
)
from waypoint.core.locking import SessionLock
from waypoint.core.logging import configure_from_settings, configure_logging, get_logger
from waypoint.core.notebook import FilesystemNotebookStore
from waypoint.core.paths import ProjectPaths, detect_project_root

__all__ = [
    "CheckpointManager",
    "CheckpointSettings",
    "FilesystemNotebookStore",
    "LoggingSettings",
    "ProjectPaths",
    "SessionLock",
    "SessionLockSettings",
    "StageSettings",
    "WatchdogSettings",
    "WaypointSettings",
    "canonical_json",
    "compute_manifest_sha256",
    "configure_from_settings",
    "configure_logging",
    "detect_project_root",
    "generate_rehydration_code",
    "get_logger",
    "load_settings",
    "stable_hash",
    "validate_manifest",
    "verify_manifest_seal",
]
