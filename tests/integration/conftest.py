"""Shared fixtures for integration tests.

Integration scenarios go through the public surface only: CheckpointManager
and ResearchRun over a real project tree under tmp_path.
"""

from pathlib import Path

import pytest

from waypoint.core.config import StageSettings, WatchdogSettings, WaypointSettings


@pytest.fixture
def settings(project_root: Path) -> WaypointSettings:
    return WaypointSettings(
        project_root=project_root,
        watchdog=WatchdogSettings(poll_interval_seconds=5, hard_timeout_grace_seconds=0, grace_period_ms=1000),
        stage=StageSettings(max_retries=0, retry_delay_seconds=0),
    )
