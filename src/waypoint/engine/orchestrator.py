"""ResearchRun: explicit handle for one (reportTitle, runId) research run.

Owns everything a run needs and nothing process-wide:

    with ResearchRun(session, report_title="churn", run_id="run-001", settings=settings) as run:
        resumed = run.resume()            # rehydrates the session if a checkpoint verifies
        for envelope, code in plan:
            if run.should_run(envelope.stage_id):
                result = run.run_stage(envelope, code)

Entering the context acquires the session lock, so a second orchestrator on
the same run fails fast with SessionLockedError instead of interleaving
checkpoints.
"""

from dataclasses import replace
from types import TracebackType

import structlog
from tenacity import RetryCallState, Retrying, retry_if_result, stop_after_attempt, wait_fixed

from waypoint.contracts.checkpoint import PythonEnvMetadata, ResumeResult
from waypoint.contracts.enums import StageState
from waypoint.contracts.errors import RehydrationError
from waypoint.contracts.session import InterpreterSession, NotebookStore
from waypoint.contracts.stage import StageEnvelope, StageResult, stage_sequence
from waypoint.core.checkpoint.manager import CheckpointManager
from waypoint.core.config import WaypointSettings
from waypoint.core.locking import SessionLock
from waypoint.core.logging import bind_run_context, clear_run_context
from waypoint.core.markers import find_rehydrated
from waypoint.core.paths import ProjectPaths, validate_segment
from waypoint.engine.clock import Clock
from waypoint.engine.supervisor import StageSupervisor

logger = structlog.get_logger(__name__)


def _last_result(retry_state: RetryCallState) -> StageResult:
    # Out of attempts: hand back the final StageResult rather than a RetryError
    assert retry_state.outcome is not None
    result: StageResult = retry_state.outcome.result()
    return result


def _is_retryable_failure(result: StageResult) -> bool:
    # Stopped stages are not retried: the timeout would most likely repeat
    return StageState.FAILED in result.history and result.terminated_by is None


class ResearchRun:
    """One research run: lock, resume, rehydrate, delegate stages."""

    def __init__(
        self,
        session: InterpreterSession,
        *,
        report_title: str,
        run_id: str,
        settings: WaypointSettings | None = None,
        paths: ProjectPaths | None = None,
        research_session_id: str = "",
        python_env: PythonEnvMetadata | None = None,
        notebooks: NotebookStore | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.report_title = validate_segment(report_title, "report title")
        self.run_id = validate_segment(run_id, "run ID")
        self._settings = settings if settings is not None else WaypointSettings()
        self._paths = paths if paths is not None else self._settings.project_paths()

        self.manager = CheckpointManager(
            self._paths,
            notebooks,
            default_trust_level=self._settings.checkpoint.default_trust_level,
            keep_count=self._settings.checkpoint.keep_count,
        )
        self.supervisor = StageSupervisor(
            session,
            self.manager,
            report_title=report_title,
            run_id=run_id,
            research_session_id=research_session_id,
            watchdog_settings=self._settings.watchdog,
            python_env=python_env,
            clock=clock,
        )
        self._lock = SessionLock(
            self._paths.session_lock_path(report_title, run_id),
            stale_after_seconds=self._settings.session_lock.stale_after_seconds,
        )
        self.resumed_from: ResumeResult | None = None

    # -- context ---------------------------------------------------------------

    def __enter__(self) -> "ResearchRun":
        self._lock.acquire()
        bind_run_context(report_title=self.report_title, run_id=self.run_id)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        clear_run_context()
        self._lock.release()

    # -- resume ----------------------------------------------------------------

    def resume(self) -> ResumeResult:
        """Find the latest valid checkpoint of this run and rehydrate the session.

        Returns the resume result unchanged when nothing is found; the run
        then starts from its first stage.

        Raises:
            RehydrationError: If the rehydration code errors or never prints its marker
        """
        result = self.manager.resume(self.report_title, self.run_id)
        if not result.found or result.checkpoint is None:
            logger.info("run_starting_fresh", searched_count=result.searched_count)
            self.resumed_from = result
            return result

        checkpoint_id = result.checkpoint.checkpoint_id
        output = self.supervisor.execute("\n".join(result.rehydration_cells))
        if output.error is not None:
            raise RehydrationError(checkpoint_id, output.error)
        confirmed = find_rehydrated(output.stdout)
        if confirmed != checkpoint_id:
            raise RehydrationError(checkpoint_id, f"expected REHYDRATED marker for {checkpoint_id}, saw {confirmed!r}")

        logger.info(
            "run_rehydrated",
            checkpoint_id=checkpoint_id,
            stage_id=result.checkpoint.stage_id,
            next_stage_id=result.next_stage_id,
        )
        self.resumed_from = result
        return result

    def should_run(self, stage_id: str) -> bool:
        """False for stages at or before the checkpoint this run resumed from."""
        if self.resumed_from is None or self.resumed_from.checkpoint is None:
            return True
        return stage_sequence(stage_id) > stage_sequence(self.resumed_from.checkpoint.stage_id)

    # -- stages ----------------------------------------------------------------

    def run_stage(self, envelope: StageEnvelope, code: str) -> StageResult:
        """Delegate one stage, retrying a failed retryable stage.

        Stages stopped by the watchdog are not retried.
        """
        expected = self.resumed_from.next_stage_id if self.resumed_from is not None else None
        if expected is not None and not envelope.stage_id.startswith(expected):
            logger.warning("stage_out_of_sequence", stage_id=envelope.stage_id, expected_prefix=expected)

        max_attempts = 1 + self._settings.stage.max_retries if envelope.retryable else 1
        attempts = 0

        def attempt() -> StageResult:
            nonlocal attempts
            attempts += 1
            return self.supervisor.request_stage(envelope, code)

        retrying = Retrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_fixed(self._settings.stage.retry_delay_seconds),
            retry=retry_if_result(_is_retryable_failure),
            retry_error_callback=_last_result,
            before_sleep=lambda state: logger.warning(
                "stage_retrying",
                stage_id=envelope.stage_id,
                attempt=state.attempt_number,
                max_attempts=max_attempts,
            ),
        )
        result: StageResult = retrying(attempt)
        return replace(result, attempts=attempts)

    def prune(self) -> None:
        """Apply checkpoint retention to this run."""
        pruned = self.manager.prune(self.report_title, self.run_id)
        if pruned.deleted:
            logger.info("run_checkpoints_pruned", deleted=list(pruned.deleted), kept=list(pruned.kept))
