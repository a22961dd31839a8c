"""StageSupervisor: run one stage under a watchdog.

request_stage() is the boundary between orchestrator and executor:

    result = supervisor.request_stage(envelope, code)

The stage code runs on a worker thread through InterpreterSession.execute().
The calling thread polls the watchdog; on a hard timeout (or abort()) it
escalates signals against the session, asking the checkpoint manager for an
emergency checkpoint first. A completed stage with checkpointAfter set is
checkpointed from the envelope's declared outputs.
"""

import json
import threading
import uuid
from dataclasses import dataclass, field

import structlog

from waypoint.contracts.checkpoint import PythonEnvMetadata
from waypoint.contracts.enums import EmergencyReason, StageState, WatchdogVerdict
from waypoint.contracts.errors import CheckpointError
from waypoint.contracts.session import InterpreterSession
from waypoint.contracts.stage import ExecutionOutput, StageEnvelope, StageResult
from waypoint.core.checkpoint.manager import CheckpointManager, current_python_env
from waypoint.core.config import WatchdogSettings
from waypoint.core.markers import stage_marker
from waypoint.engine.clock import DEFAULT_CLOCK, Clock
from waypoint.engine.escalation import EscalationPolicy, EscalationResult, InterruptEscalator
from waypoint.engine.lifecycle import StageLifecycle
from waypoint.engine.watchdog import Watchdog

logger = structlog.get_logger(__name__)

# Bound on waiting for execute() to return after its process was stopped
_WORKER_JOIN_SECONDS = 2.0


def wrap_stage_code(envelope: StageEnvelope, code: str) -> str:
    """Surround stage code with STAGE begin/end markers.

    The end marker reports the duration measured inside the interpreter.
    """
    begin = stage_marker("begin", envelope.stage_id, envelope.goal)
    end_prefix = stage_marker("end", envelope.stage_id)[:-1] + ":duration="
    return "\n".join(
        [
            "import time as _waypoint_time",
            "_waypoint_stage_started = _waypoint_time.monotonic()",
            f"print({json.dumps(begin)}, flush=True)",
            code,
            f"print({json.dumps(end_prefix)} + str(round(_waypoint_time.monotonic() - _waypoint_stage_started)) + \"s] Complete\", flush=True)",
        ]
    )


@dataclass
class _Execution:
    """State shared between the worker thread and the supervisor."""

    done: threading.Event = field(default_factory=threading.Event)
    output: ExecutionOutput | None = None
    exception: BaseException | None = None
    streamed_stdout: list[str] = field(default_factory=list)
    streamed_stderr: list[str] = field(default_factory=list)


class StageSupervisor:
    """Delegates stages to one interpreter session, one at a time.

    Example:
        supervisor = StageSupervisor(session, manager, report_title="churn", run_id="run-001")
        result = supervisor.request_stage(envelope, "df = pd.read_parquet(...)")
        if result.state == StageState.RESUMABLE:
            ...  # resume from the emergency checkpoint
    """

    def __init__(
        self,
        session: InterpreterSession,
        manager: CheckpointManager,
        *,
        report_title: str,
        run_id: str,
        research_session_id: str = "",
        watchdog_settings: WatchdogSettings | None = None,
        python_env: PythonEnvMetadata | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._session = session
        self._manager = manager
        self._report_title = report_title
        self._run_id = run_id
        self._research_session_id = research_session_id
        self._settings = watchdog_settings if watchdog_settings is not None else WatchdogSettings()
        self._python_env = python_env
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._escalator = InterruptEscalator(self._clock)
        self._abort = threading.Event()
        self._execution_count = 0

    @property
    def execution_count(self) -> int:
        return self._execution_count

    def abort(self) -> None:
        """Stop the running stage as soon as the supervisor next polls."""
        self._abort.set()

    def _run(self, code: str, execution: _Execution, watchdog: Watchdog) -> None:
        def on_output(stdout: str, stderr: str) -> None:
            if stdout:
                execution.streamed_stdout.append(stdout)
            if stderr:
                execution.streamed_stderr.append(stderr)
            watchdog.record_output(stdout + stderr)

        try:
            execution.output = self._session.execute(code, on_output=on_output)
        except Exception as e:
            # Surfaced to the supervisor thread as a failed stage
            execution.exception = e
        finally:
            execution.done.set()

    def execute(self, code: str) -> ExecutionOutput:
        """Run code directly, without stage markers or a watchdog (rehydration)."""
        self._execution_count += 1
        return self._session.execute(code)

    def request_stage(self, envelope: StageEnvelope, code: str) -> StageResult:
        """Run one stage to completion, failure or forced stop.

        Never raises for stage failures; they are reported in the StageResult.
        """
        lifecycle = StageLifecycle(envelope.stage_id)
        watchdog = Watchdog(
            envelope.max_duration_sec,
            hard_timeout_grace_seconds=self._settings.hard_timeout_grace_seconds,
            clock=self._clock,
            stage_id=envelope.stage_id,
        )
        execution = _Execution()
        self._abort.clear()

        lifecycle.transition(StageState.RUNNING)
        self._execution_count += 1
        started = self._clock.monotonic()
        watchdog.start()
        logger.info("stage_started", stage_id=envelope.stage_id, max_duration_sec=envelope.max_duration_sec)

        worker = threading.Thread(
            target=self._run,
            args=(wrap_stage_code(envelope, code), execution, watchdog),
            name=f"waypoint-stage-{envelope.stage_id}",
            daemon=True,
        )
        worker.start()

        escalation: EscalationResult | None = None
        while not self._clock.wait_event(execution.done, self._settings.poll_interval_seconds):
            reason: EmergencyReason | None = None
            if self._abort.is_set():
                reason = EmergencyReason.ABORT
            elif watchdog.poll() == WatchdogVerdict.HARD_TIMEOUT:
                reason = EmergencyReason.TIMEOUT
            if reason is not None:
                lifecycle.transition(StageState.INTERRUPTING)
                escalation = self._escalate(envelope, reason)
                execution.done.wait(_WORKER_JOIN_SECONDS)
                lifecycle.transition(StageState.INTERRUPTED)
                break

        duration = self._clock.monotonic() - started
        if escalation is not None:
            return self._interrupted_result(envelope, lifecycle, execution, escalation, duration)
        return self._finished_result(envelope, lifecycle, execution, duration)

    def _escalate(self, envelope: StageEnvelope, reason: EmergencyReason) -> EscalationResult:
        def emergency_checkpoint() -> str | None:
            manifest = self._manager.emergency(
                report_title=self._report_title,
                run_id=self._run_id,
                stage_id=envelope.stage_id,
                reason=reason,
                python_env=self._python_env,
                execution_count=self._execution_count,
                research_session_id=self._research_session_id,
            )
            return manifest.checkpoint_id

        logger.warning("stage_escalation_started", stage_id=envelope.stage_id, reason=reason.value)
        return self._escalator.escalate(
            self._session,
            EscalationPolicy.from_settings(self._settings),
            on_escalation=emergency_checkpoint,
        )

    def _has_valid_checkpoint(self) -> bool:
        return self._manager.resume(self._report_title, self._run_id).found

    def _interrupted_result(
        self,
        envelope: StageEnvelope,
        lifecycle: StageLifecycle,
        execution: _Execution,
        escalation: EscalationResult,
        duration: float,
    ) -> StageResult:
        # Prefer what execute() returned, then what was streamed, then the drained pipes
        output = execution.output
        stdout = output.stdout if output is not None else "".join(execution.streamed_stdout) or (escalation.partial_stdout or "")
        stderr = output.stderr if output is not None else "".join(execution.streamed_stderr) or (escalation.partial_stderr or "")
        state = lifecycle.settle(has_valid_checkpoint=self._has_valid_checkpoint())
        logger.warning(
            "stage_interrupted",
            stage_id=envelope.stage_id,
            terminated_by=escalation.terminated_by.value,
            termination_time_ms=escalation.termination_time_ms,
            state=state.value,
        )
        return StageResult(
            stage_id=envelope.stage_id,
            state=state,
            stdout=stdout,
            stderr=stderr,
            error=f"stage stopped by {escalation.terminated_by.value} after {round(duration)}s",
            duration_seconds=duration,
            terminated_by=escalation.terminated_by,
            termination_time_ms=escalation.termination_time_ms,
            checkpoint_id=escalation.emergency_checkpoint_id,
            history=lifecycle.history,
        )

    def _finished_result(
        self,
        envelope: StageEnvelope,
        lifecycle: StageLifecycle,
        execution: _Execution,
        duration: float,
    ) -> StageResult:
        output = execution.output
        if execution.exception is not None or output is None:
            error = f"{type(execution.exception).__name__}: {execution.exception}" if execution.exception is not None else "execute() returned nothing"
            output = ExecutionOutput(stdout="".join(execution.streamed_stdout), stderr="".join(execution.streamed_stderr), error=error)

        if output.error is not None:
            lifecycle.transition(StageState.FAILED)
            state = lifecycle.settle(has_valid_checkpoint=self._has_valid_checkpoint())
            logger.warning("stage_failed", stage_id=envelope.stage_id, error=output.error, state=state.value)
            return StageResult(
                stage_id=envelope.stage_id,
                state=state,
                stdout=output.stdout,
                stderr=output.stderr,
                error=output.error,
                duration_seconds=duration,
                history=lifecycle.history,
            )

        lifecycle.transition(StageState.COMPLETED)
        checkpoint_id: str | None = None
        checkpoint_error: str | None = None
        if envelope.checkpoint_after:
            try:
                checkpoint_id = self._checkpoint_after(envelope)
            except (CheckpointError, OSError) as e:
                checkpoint_error = str(e)
                logger.error("stage_checkpoint_failed", stage_id=envelope.stage_id, error=checkpoint_error)

        logger.info("stage_completed", stage_id=envelope.stage_id, duration_seconds=round(duration, 2), checkpoint_id=checkpoint_id)
        return StageResult(
            stage_id=envelope.stage_id,
            state=StageState.COMPLETED,
            stdout=output.stdout,
            stderr=output.stderr,
            duration_seconds=duration,
            checkpoint_id=checkpoint_id,
            checkpoint_error=checkpoint_error,
            history=lifecycle.history,
        )

    def _checkpoint_after(self, envelope: StageEnvelope) -> str:
        artifacts = [self._manager.describe_artifact(path) for path in envelope.outputs.values()]
        checkpoint_id = f"ckpt-{envelope.stage_id.lower()}-{uuid.uuid4().hex[:8]}"
        manifest = self._manager.save(
            report_title=self._report_title,
            run_id=self._run_id,
            checkpoint_id=checkpoint_id,
            stage_id=envelope.stage_id,
            python_env=self._python_env if self._python_env is not None else current_python_env(),
            artifacts=artifacts,
            execution_count=self._execution_count,
            research_session_id=self._research_session_id,
        )
        return manifest.checkpoint_id
