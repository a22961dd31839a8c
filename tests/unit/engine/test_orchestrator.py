"""Tests for ResearchRun: session lock, resume with rehydration, stage retries."""

from pathlib import Path

import pytest
import structlog
from structlog.testing import capture_logs

from waypoint.contracts import RehydrationError, SessionLockedError, StageEnvelope, StageState
from waypoint.contracts.checkpoint import PythonEnvMetadata
from waypoint.contracts.session import OutputCallback
from waypoint.contracts.stage import ExecutionOutput
from waypoint.core.config import CheckpointSettings, StageSettings, WatchdogSettings, WaypointSettings
from waypoint.core.paths import ProjectPaths
from waypoint.engine.clock import MockClock
from waypoint.engine.orchestrator import ResearchRun
from tests.fixtures.checkpoints import manifest_dict, write_manifest
from tests.fixtures.sessions import FakeSession, fail_with, hang, run_prints

SETTINGS = WaypointSettings(
    watchdog=WatchdogSettings(poll_interval_seconds=5, hard_timeout_grace_seconds=0, grace_period_ms=1000),
    stage=StageSettings(max_retries=2, retry_delay_seconds=0),
)


def _run(session: FakeSession, paths: ProjectPaths, clock: MockClock, python_env: PythonEnvMetadata, settings: WaypointSettings = SETTINGS) -> ResearchRun:
    return ResearchRun(
        session,
        report_title="churn",
        run_id="run-001",
        settings=settings,
        paths=paths,
        python_env=python_env,
        clock=clock,
    )


def _envelope(stage_id: str = "S02_eda_analysis", **overrides: object) -> StageEnvelope:
    fields: dict[str, object] = {"stageId": stage_id, "goal": "Explore churn drivers by segment", "maxDurationSec": 30, "checkpointAfter": False}
    fields.update(overrides)
    return StageEnvelope.model_validate(fields)


class TestContext:
    def test_second_orchestrator_is_refused(self, paths: ProjectPaths, clock: MockClock, python_env: PythonEnvMetadata) -> None:
        with _run(FakeSession(), paths, clock, python_env):
            with pytest.raises(SessionLockedError):
                _run(FakeSession(), paths, clock, python_env).__enter__()
        assert not paths.session_lock_path("churn", "run-001").exists()

    def test_binds_run_context(self, paths: ProjectPaths, clock: MockClock, python_env: PythonEnvMetadata) -> None:
        with _run(FakeSession(), paths, clock, python_env):
            assert structlog.contextvars.get_contextvars() == {"report_title": "churn", "run_id": "run-001"}
        assert structlog.contextvars.get_contextvars() == {}

    def test_rejects_unsafe_identity(self, paths: ProjectPaths, clock: MockClock, python_env: PythonEnvMetadata) -> None:
        from waypoint.contracts import PathConfinementViolation

        with pytest.raises(PathConfinementViolation):
            ResearchRun(FakeSession(), report_title="../churn", run_id="run-001", paths=paths, clock=clock)


class TestResume:
    def test_fresh_run(self, paths: ProjectPaths, clock: MockClock, python_env: PythonEnvMetadata) -> None:
        session = FakeSession()
        with _run(session, paths, clock, python_env) as run:
            result = run.resume()
        assert not result.found
        assert session.executed == []
        assert run.should_run("S01_load_data")

    def test_rehydrates_from_latest_checkpoint(self, paths: ProjectPaths, clock: MockClock, python_env: PythonEnvMetadata) -> None:
        write_manifest(paths, manifest_dict("churn", "run-001", "ckpt-001", stage_id="S01_load_data"))
        session = FakeSession()

        with _run(session, paths, clock, python_env) as run:
            result = run.resume()

        assert result.found
        assert result.next_stage_id == "S02_"
        assert session.executed == ['print("[REHYDRATED:from=ckpt-001]")']
        assert run.resumed_from is result
        assert not run.should_run("S01_load_data")
        assert run.should_run("S02_eda_analysis")

    def test_rehydration_error(self, paths: ProjectPaths, clock: MockClock, python_env: PythonEnvMetadata) -> None:
        write_manifest(paths, manifest_dict("churn", "run-001", "ckpt-001"))
        session = FakeSession(fail_with("ModuleNotFoundError: No module named 'pandas'"))
        with _run(session, paths, clock, python_env) as run, pytest.raises(RehydrationError, match="pandas"):
            run.resume()

    def test_missing_marker(self, paths: ProjectPaths, clock: MockClock, python_env: PythonEnvMetadata) -> None:
        write_manifest(paths, manifest_dict("churn", "run-001", "ckpt-001"))

        def silent(session: FakeSession, code: str, on_output: OutputCallback | None) -> ExecutionOutput:
            return ExecutionOutput(stdout="")

        with _run(FakeSession(silent), paths, clock, python_env) as run, pytest.raises(RehydrationError, match="expected REHYDRATED marker"):
            run.resume()

    def test_out_of_sequence_stage_warns(self, paths: ProjectPaths, clock: MockClock, python_env: PythonEnvMetadata) -> None:
        write_manifest(paths, manifest_dict("churn", "run-001", "ckpt-001", stage_id="S01_load_data"))
        with _run(FakeSession(), paths, clock, python_env) as run:
            run.resume()
            with capture_logs() as logs:
                run.run_stage(_envelope("S03_fit_model"), "pass")
        warning = next(entry for entry in logs if entry["event"] == "stage_out_of_sequence")
        assert warning["expected_prefix"] == "S02_"


class TestRunStage:
    def test_success_first_time(self, paths: ProjectPaths, clock: MockClock, python_env: PythonEnvMetadata) -> None:
        with _run(FakeSession(), paths, clock, python_env) as run:
            result = run.run_stage(_envelope(), 'print("ok")')
        assert result.state == StageState.COMPLETED
        assert result.attempts == 1

    def test_failed_stage_is_retried(self, paths: ProjectPaths, clock: MockClock, python_env: PythonEnvMetadata) -> None:
        session = FakeSession(fail_with("ConnectionError: warehouse"), fail_with("ConnectionError: warehouse"), run_prints)
        with _run(session, paths, clock, python_env) as run:
            result = run.run_stage(_envelope(), 'print("ok")')
        assert result.state == StageState.COMPLETED
        assert result.attempts == 3
        assert len(session.executed) == 3

    def test_retries_exhausted(self, paths: ProjectPaths, clock: MockClock, python_env: PythonEnvMetadata) -> None:
        session = FakeSession(fail_with("ValueError: bad"))
        with _run(session, paths, clock, python_env) as run:
            result = run.run_stage(_envelope(), "x")
        assert result.state == StageState.BLOCKED
        assert result.attempts == 3
        assert result.error == "ValueError: bad"

    def test_non_retryable_stage(self, paths: ProjectPaths, clock: MockClock, python_env: PythonEnvMetadata) -> None:
        session = FakeSession(fail_with("ValueError: bad"))
        with _run(session, paths, clock, python_env) as run:
            result = run.run_stage(_envelope(retryable=False), "x")
        assert result.attempts == 1
        assert len(session.executed) == 1

    def test_timed_out_stage_is_not_retried(self, paths: ProjectPaths, clock: MockClock, python_env: PythonEnvMetadata) -> None:
        session = FakeSession(hang)
        with _run(session, paths, clock, python_env) as run:
            result = run.run_stage(_envelope(), "while True: pass")
        assert result.state == StageState.RESUMABLE
        assert result.attempts == 1
        assert len(session.executed) == 1


def test_prune_applies_keep_count(paths: ProjectPaths, clock: MockClock, python_env: PythonEnvMetadata) -> None:
    for minute in range(3):
        write_manifest(paths, manifest_dict("churn", "run-001", f"ckpt-00{minute}", created_at=f"2024-01-01T10:0{minute}:00Z"))
    settings = SETTINGS.model_copy(update={"checkpoint": CheckpointSettings(keep_count=1)})

    with _run(FakeSession(), paths, clock, python_env, settings) as run:
        run.prune()

    assert [c.checkpoint_id for c in run.manager.list_checkpoints("churn")] == ["ckpt-002"]


def test_uses_configured_project_root(project_root: Path, clock: MockClock) -> None:
    run = ResearchRun(FakeSession(), report_title="churn", run_id="run-001", settings=WaypointSettings(project_root=project_root), clock=clock)
    assert run.manager.paths.root == project_root.resolve()
