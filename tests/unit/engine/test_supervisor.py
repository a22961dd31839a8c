"""Tests for stage supervision: markers, timeouts, escalation and checkpoint-after."""

import ast
from pathlib import Path

from waypoint.contracts import CheckpointStatus, EmergencyReason, StageEnvelope, StageState, TerminationSignal
from waypoint.contracts.checkpoint import PythonEnvMetadata
from waypoint.contracts.session import OutputCallback
from waypoint.contracts.stage import ExecutionOutput
from waypoint.core.checkpoint.manager import CheckpointManager
from waypoint.core.config import WatchdogSettings
from waypoint.engine.clock import MockClock
from waypoint.engine.supervisor import StageSupervisor, wrap_stage_code
from tests.fixtures.checkpoints import write_artifact
from tests.fixtures.sessions import FakeSession, fail_with, hang

OUTPUT = "reports/churn/run-001/S01_load_data/customers.parquet"
FAST_WATCHDOG = WatchdogSettings(poll_interval_seconds=5, hard_timeout_grace_seconds=0, grace_period_ms=1000)


def _envelope(**overrides: object) -> StageEnvelope:
    fields: dict[str, object] = {"stageId": "S01_load_data", "goal": "Load the raw customer extract", "maxDurationSec": 30}
    fields.update(overrides)
    return StageEnvelope.model_validate(fields)


def _supervisor(
    session: FakeSession,
    manager: CheckpointManager,
    clock: MockClock,
    python_env: PythonEnvMetadata,
    settings: WatchdogSettings = FAST_WATCHDOG,
) -> StageSupervisor:
    return StageSupervisor(
        session,
        manager,
        report_title="churn",
        run_id="run-001",
        research_session_id="ses_test",
        watchdog_settings=settings,
        python_env=python_env,
        clock=clock,
    )


class TestWrapStageCode:
    def test_markers_surround_code(self) -> None:
        wrapped = wrap_stage_code(_envelope(), "df = load()")
        lines = wrapped.splitlines()
        assert lines[2] == 'print("[STAGE:begin:id=S01_load_data] Load the raw customer extract", flush=True)'
        assert lines[3] == "df = load()"
        assert lines[4].startswith('print("[STAGE:end:id=S01_load_data:duration=" + str(round(')
        assert lines[4].endswith('+ "s] Complete", flush=True)')

    def test_is_valid_python(self) -> None:
        ast.parse(wrap_stage_code(_envelope(goal='Quote "this" goal properly'), "x = 1\nif x:\n    y = 2"))


class TestCompletedStage:
    def test_checkpoint_after_records_outputs(
        self, manager: CheckpointManager, project_root: Path, clock: MockClock, python_env: PythonEnvMetadata
    ) -> None:
        write_artifact(project_root, OUTPUT, b"PAR1")
        session = FakeSession()
        result = _supervisor(session, manager, clock, python_env).request_stage(
            _envelope(outputs={"customers": OUTPUT}), 'print("rows=10")'
        )

        assert result.state == StageState.COMPLETED
        assert result.succeeded
        assert "[STAGE:begin:id=S01_load_data]" in result.stdout
        assert "rows=10" in result.stdout
        assert result.checkpoint_id is not None
        assert result.checkpoint_id.startswith("ckpt-s01_load_data-")
        assert result.history == [StageState.PENDING, StageState.RUNNING, StageState.COMPLETED]

        report = manager.validate("churn", "run-001", result.checkpoint_id)
        assert report.valid
        assert report.manifest is not None
        assert [a.relative_path for a in report.manifest.artifacts] == [OUTPUT]
        assert report.manifest.research_session_id == "ses_test"
        assert report.manifest.execution_count == 1

    def test_missing_output_reported_not_raised(self, manager: CheckpointManager, clock: MockClock, python_env: PythonEnvMetadata) -> None:
        result = _supervisor(FakeSession(), manager, clock, python_env).request_stage(_envelope(outputs={"customers": OUTPUT}), "pass")
        assert result.state == StageState.COMPLETED
        assert result.checkpoint_id is None
        assert result.checkpoint_error == f"Artifact not found: {OUTPUT}"

    def test_corrupt_notebook_reported_not_raised(
        self, manager: CheckpointManager, project_root: Path, clock: MockClock, python_env: PythonEnvMetadata
    ) -> None:
        write_artifact(project_root, OUTPUT, b"PAR1")
        (project_root / "notebooks").mkdir()
        (project_root / "notebooks" / "churn.ipynb").write_text("{ invalid json", encoding="utf-8")

        result = _supervisor(FakeSession(), manager, clock, python_env).request_stage(_envelope(outputs={"customers": OUTPUT}), "pass")

        assert result.state == StageState.COMPLETED
        assert result.checkpoint_id is None
        assert result.checkpoint_error is not None
        assert result.checkpoint_error.startswith("Notebook notebooks/churn.ipynb is unusable")
        assert manager.list_checkpoints("churn") == []

    def test_no_checkpoint_when_disabled(self, manager: CheckpointManager, clock: MockClock, python_env: PythonEnvMetadata) -> None:
        result = _supervisor(FakeSession(), manager, clock, python_env).request_stage(_envelope(checkpointAfter=False), "pass")
        assert result.checkpoint_id is None
        assert manager.list_checkpoints("churn") == []

    def test_output_counts_as_activity(self, manager: CheckpointManager, clock: MockClock, python_env: PythonEnvMetadata) -> None:
        def chatty(session: FakeSession, code: str, on_output: OutputCallback | None) -> ExecutionOutput:
            assert on_output is not None
            on_output("[STAGE:progress:id=S01_load_data] half way\n", "")
            return ExecutionOutput(stdout="[STAGE:progress:id=S01_load_data] half way\n")

        result = _supervisor(FakeSession(chatty), manager, clock, python_env).request_stage(_envelope(checkpointAfter=False), "pass")
        assert result.state == StageState.COMPLETED
        assert "half way" in result.stdout


class TestFailedStage:
    def test_error_without_checkpoint_blocks(self, manager: CheckpointManager, clock: MockClock, python_env: PythonEnvMetadata) -> None:
        session = FakeSession(fail_with("KeyError: 'churned'"))
        result = _supervisor(session, manager, clock, python_env).request_stage(_envelope(), "df['churned']")
        assert result.state == StageState.BLOCKED
        assert result.error == "KeyError: 'churned'"
        assert "Traceback" in result.stderr
        assert result.history == [StageState.PENDING, StageState.RUNNING, StageState.FAILED, StageState.BLOCKED]
        assert result.terminated_by is None

    def test_error_with_earlier_checkpoint_is_resumable(
        self, manager: CheckpointManager, clock: MockClock, python_env: PythonEnvMetadata
    ) -> None:
        manager.save(report_title="churn", run_id="run-001", checkpoint_id="ckpt-001", stage_id="S01_load_data", python_env=python_env)
        session = FakeSession(fail_with("ValueError: bad"))
        result = _supervisor(session, manager, clock, python_env).request_stage(_envelope(stageId="S02_eda_analysis"), "x")
        assert result.state == StageState.RESUMABLE

    def test_session_exception_is_a_failure(self, manager: CheckpointManager, clock: MockClock, python_env: PythonEnvMetadata) -> None:
        def broken(session: FakeSession, code: str, on_output: OutputCallback | None) -> ExecutionOutput:
            raise ConnectionError("kernel pipe closed")

        result = _supervisor(FakeSession(broken), manager, clock, python_env).request_stage(_envelope(), "x")
        assert result.state == StageState.BLOCKED
        assert result.error == "ConnectionError: kernel pipe closed"


class TestStoppedStage:
    def test_hard_timeout_escalates_with_emergency_checkpoint(
        self, manager: CheckpointManager, clock: MockClock, python_env: PythonEnvMetadata
    ) -> None:
        session = FakeSession(hang)
        result = _supervisor(session, manager, clock, python_env).request_stage(_envelope(), "while True: pass")

        assert result.state == StageState.RESUMABLE
        assert result.terminated_by == TerminationSignal.SIGINT
        assert session.signals == ["interrupt"]
        assert result.stderr == "KeyboardInterrupt\n"
        assert result.history == [
            StageState.PENDING,
            StageState.RUNNING,
            StageState.INTERRUPTING,
            StageState.INTERRUPTED,
            StageState.RESUMABLE,
        ]
        assert result.duration_seconds >= 30

        assert result.checkpoint_id is not None
        report = manager.validate("churn", "run-001", result.checkpoint_id)
        assert report.valid
        assert report.manifest is not None
        assert report.manifest.status == CheckpointStatus.INTERRUPTED
        assert report.manifest.reason == EmergencyReason.TIMEOUT

    def test_stubborn_stage_is_killed(self, manager: CheckpointManager, clock: MockClock, python_env: PythonEnvMetadata) -> None:
        session = FakeSession(hang, ignores=frozenset({"interrupt", "terminate"}))
        result = _supervisor(session, manager, clock, python_env).request_stage(_envelope(), "while True: pass")
        assert result.terminated_by == TerminationSignal.SIGKILL
        assert result.termination_time_ms is not None
        assert result.termination_time_ms <= 3000

    def test_abort(self, manager: CheckpointManager, clock: MockClock, python_env: PythonEnvMetadata) -> None:
        settings = WatchdogSettings(poll_interval_seconds=5, hard_timeout_grace_seconds=30, grace_period_ms=1000)
        supervisor: StageSupervisor

        def aborting(session: FakeSession, code: str, on_output: OutputCallback | None) -> ExecutionOutput:
            supervisor.abort()
            return hang(session, code, on_output)

        supervisor = _supervisor(FakeSession(aborting), manager, clock, python_env, settings)
        result = supervisor.request_stage(_envelope(maxDurationSec=600), "train()")

        assert result.state == StageState.RESUMABLE
        assert result.checkpoint_id is not None
        report = manager.validate("churn", "run-001", result.checkpoint_id)
        assert report.manifest is not None
        assert report.manifest.reason == EmergencyReason.ABORT

    def test_quiet_stage_within_limit_is_left_alone(
        self, manager: CheckpointManager, clock: MockClock, python_env: PythonEnvMetadata
    ) -> None:
        def slow(session: FakeSession, code: str, on_output: OutputCallback | None) -> ExecutionOutput:
            # Quiet for 20s of mock time, well inside the limit
            while clock.monotonic() < 1020.0:
                session.stopped.wait(0.001)
            return ExecutionOutput(stdout="done\n")

        session = FakeSession(slow)
        result = _supervisor(session, manager, clock, python_env).request_stage(_envelope(checkpointAfter=False, maxDurationSec=120), "x")
        assert result.state == StageState.COMPLETED
        assert session.signals == []


def test_execute_counts_executions(manager: CheckpointManager, clock: MockClock, python_env: PythonEnvMetadata) -> None:
    session = FakeSession()
    supervisor = _supervisor(session, manager, clock, python_env)
    output = supervisor.execute('print("[REHYDRATED:from=ckpt-001]")')
    assert output.stdout == "[REHYDRATED:from=ckpt-001]\n"
    assert supervisor.execution_count == 1
    assert session.executed == ['print("[REHYDRATED:from=ckpt-001]")']

