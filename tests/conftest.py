# tests/conftest.py
"""Shared test fixtures.

Every test that touches the filesystem gets its own project root under
tmp_path; nothing reads the real working directory or WAYPOINT_* variables.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

import os
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog
from hypothesis import Verbosity, settings

from waypoint.contracts.checkpoint import PythonEnvMetadata
from waypoint.core.checkpoint.manager import CheckpointManager
from waypoint.core.paths import ProjectPaths
from waypoint.engine.clock import MockClock

# =============================================================================
# Hypothesis Configuration
# =============================================================================

# No deadlines: many examples write checkpoint trees to disk
settings.register_profile("ci", max_examples=100, deadline=None)
settings.register_profile("nightly", max_examples=1000, deadline=None)
settings.register_profile("debug", max_examples=10, verbosity=Verbosity.verbose, deadline=None)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Strip WAYPOINT_* overrides and reset structlog context between tests."""
    for name in list(os.environ):
        if name.startswith("WAYPOINT_"):
            monkeypatch.delenv(name)
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()


# =============================================================================
# Project fixtures
# =============================================================================


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def paths(project_root: Path) -> ProjectPaths:
    return ProjectPaths(project_root)


@pytest.fixture
def manager(paths: ProjectPaths) -> CheckpointManager:
    return CheckpointManager(paths)


@pytest.fixture
def python_env() -> PythonEnvMetadata:
    return PythonEnvMetadata(
        python_path="/usr/bin/python3",
        packages=["pandas==2.0.0", "numpy==1.24.0"],
        platform="linux",
    )


@pytest.fixture
def clock() -> MockClock:
    return MockClock(start=1000.0)
