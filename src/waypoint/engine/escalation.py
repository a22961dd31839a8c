"""Interrupt escalation: stop a runaway stage in graduated, bounded steps.

For grace period G (milliseconds):

    1. request an emergency checkpoint (failures are logged, never block)
    2. interrupt           wait up to G
    3. terminate           wait up to max(G/2, 1000)
    4. kill                wait up to 1000

Total signalling time is therefore bounded by G + max(G/2, 1000) + 1000 ms.
The emergency checkpoint runs before the first signal, while the process
state it describes still exists, and is not counted against that bound.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from waypoint.contracts.enums import TerminationSignal
from waypoint.contracts.errors import ProcessUnresponsiveError
from waypoint.contracts.session import ProcessControl
from waypoint.engine.clock import DEFAULT_CLOCK, Clock

if TYPE_CHECKING:
    from waypoint.core.config import WatchdogSettings

logger = structlog.get_logger(__name__)

# Returns the emergency checkpoint ID, or None if none was written
EmergencyCallback = Callable[[], str | None]


@dataclass(frozen=True)
class EscalationPolicy:
    """Timing for one escalation.

    grace_period_ms is the wait after the interrupt; the terminate and kill
    waits are derived from it.
    """

    grace_period_ms: int = 5000
    kill_wait_ms: int = 1000
    poll_interval_ms: int = 50

    def __post_init__(self) -> None:
        if self.grace_period_ms <= 0:
            raise ValueError(f"grace_period_ms must be positive, got {self.grace_period_ms}")
        if self.kill_wait_ms <= 0:
            raise ValueError(f"kill_wait_ms must be positive, got {self.kill_wait_ms}")
        if self.poll_interval_ms <= 0:
            raise ValueError(f"poll_interval_ms must be positive, got {self.poll_interval_ms}")

    @property
    def sigterm_grace_ms(self) -> int:
        return max(self.grace_period_ms // 2, 1000)

    @property
    def max_total_ms(self) -> int:
        """Upper bound on signalling time."""
        return self.grace_period_ms + self.sigterm_grace_ms + self.kill_wait_ms

    @classmethod
    def from_settings(cls, settings: "WatchdogSettings") -> "EscalationPolicy":
        return cls(grace_period_ms=settings.grace_period_ms)


@dataclass(frozen=True)
class EscalationResult:
    """How the process was stopped.

    confirmed_dead is False only if the process outlived the kill wait; a
    process in uninterruptible sleep can do that on POSIX.

    termination_time_ms counts signalling only and stays within
    EscalationPolicy.max_total_ms. The emergency checkpoint written before
    the first signal is timed separately in emergency_checkpoint_ms.
    """

    terminated_by: TerminationSignal
    termination_time_ms: int
    partial_stdout: str | None = None
    partial_stderr: str | None = None
    emergency_checkpoint_id: str | None = None
    confirmed_dead: bool = True
    emergency_checkpoint_ms: int = 0


class InterruptEscalator:
    """Runs the escalation procedure against a ProcessControl.

    Example:
        escalator = InterruptEscalator()
        result = escalator.escalate(
            process_control_for(popen),
            EscalationPolicy(grace_period_ms=1000),
            on_escalation=lambda: manager.emergency(...).checkpoint_id,
        )
        result.terminated_by  # TerminationSignal.SIGTERM
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock if clock is not None else DEFAULT_CLOCK

    def _elapsed_ms(self, started: float) -> int:
        return int(round((self._clock.monotonic() - started) * 1000))

    def _wait_for_exit(self, control: ProcessControl, timeout_ms: int, poll_interval_ms: int) -> bool:
        deadline = self._clock.monotonic() + timeout_ms / 1000
        while control.is_alive():
            remaining = deadline - self._clock.monotonic()
            if remaining <= 0:
                return False
            self._clock.sleep(min(poll_interval_ms / 1000, remaining))
        return True

    def _request_emergency(self, on_escalation: EmergencyCallback | None) -> str | None:
        if on_escalation is None:
            return None
        try:
            return on_escalation()
        except Exception as e:
            # Termination must proceed even if the checkpoint cannot be written
            logger.error("emergency_checkpoint_failed", error=str(e), error_type=type(e).__name__)
            return None

    def _result(
        self,
        control: ProcessControl,
        terminated_by: TerminationSignal,
        started: float,
        checkpoint_id: str | None,
        *,
        confirmed_dead: bool = True,
        emergency_ms: int = 0,
    ) -> EscalationResult:
        elapsed = self._elapsed_ms(started)
        stdout, stderr = control.collect_output() if confirmed_dead else (None, None)
        logger.info(
            "escalation_complete",
            terminated_by=terminated_by.value,
            termination_time_ms=elapsed,
            emergency_checkpoint_ms=emergency_ms,
            confirmed_dead=confirmed_dead,
        )
        return EscalationResult(
            terminated_by=terminated_by,
            termination_time_ms=elapsed,
            partial_stdout=stdout,
            partial_stderr=stderr,
            emergency_checkpoint_id=checkpoint_id,
            confirmed_dead=confirmed_dead,
            emergency_checkpoint_ms=emergency_ms,
        )

    def escalate(
        self,
        control: ProcessControl,
        policy: EscalationPolicy | None = None,
        on_escalation: EmergencyCallback | None = None,
    ) -> EscalationResult:
        """Stop the process, stepping up signals until it exits.

        Never raises for an unresponsive process: a signal that cannot be
        delivered moves escalation to the next step.

        on_escalation runs to completion before the first signal, so the
        total wall time is emergency_checkpoint_ms + termination_time_ms.
        Only the second part is bounded by policy.max_total_ms.
        """
        policy = policy if policy is not None else EscalationPolicy()

        if not control.is_alive():
            return self._result(control, TerminationSignal.ALREADY_DEAD, self._clock.monotonic(), None)

        requested = self._clock.monotonic()
        checkpoint_id = self._request_emergency(on_escalation)
        started = self._clock.monotonic()
        emergency_ms = int(round((started - requested) * 1000))
        if emergency_ms > policy.grace_period_ms:
            logger.warning("emergency_checkpoint_slow", emergency_checkpoint_ms=emergency_ms, grace_period_ms=policy.grace_period_ms)

        if not control.is_alive():
            # Exited while the emergency checkpoint was being written
            return self._result(control, TerminationSignal.ALREADY_DEAD, started, checkpoint_id, emergency_ms=emergency_ms)

        steps: tuple[tuple[TerminationSignal, Callable[[], None], int], ...] = (
            (TerminationSignal.SIGINT, control.interrupt, policy.grace_period_ms),
            (TerminationSignal.SIGTERM, control.terminate, policy.sigterm_grace_ms),
            (TerminationSignal.SIGKILL, control.kill, policy.kill_wait_ms),
        )
        for signal_name, send, wait_ms in steps:
            try:
                send()
            except ProcessUnresponsiveError as e:
                logger.warning("escalation_signal_failed", signal=signal_name.value, error=str(e))
            else:
                logger.info("escalation_signal_sent", signal=signal_name.value, wait_ms=wait_ms)
            if self._wait_for_exit(control, wait_ms, policy.poll_interval_ms):
                return self._result(control, signal_name, started, checkpoint_id, emergency_ms=emergency_ms)

        logger.error("process_survived_kill", kill_wait_ms=policy.kill_wait_ms)
        return self._result(control, TerminationSignal.SIGKILL, started, checkpoint_id, confirmed_dead=False, emergency_ms=emergency_ms)
