"""Stage lifecycle state machine.

    PENDING -> RUNNING -> COMPLETED
                       -> INTERRUPTING -> INTERRUPTED -> RESUMABLE | BLOCKED
                       -> FAILED -> RESUMABLE | BLOCKED

RESUMABLE requires a valid checkpoint to resume from; without one the stage
is BLOCKED. Terminal states: COMPLETED, RESUMABLE, BLOCKED.
"""

import structlog

from waypoint.contracts.enums import StageState
from waypoint.contracts.errors import InvalidStageTransitionError

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: dict[StageState, frozenset[StageState]] = {
    StageState.PENDING: frozenset({StageState.RUNNING}),
    StageState.RUNNING: frozenset({StageState.COMPLETED, StageState.INTERRUPTING, StageState.FAILED}),
    StageState.INTERRUPTING: frozenset({StageState.INTERRUPTED}),
    StageState.INTERRUPTED: frozenset({StageState.RESUMABLE, StageState.BLOCKED}),
    StageState.FAILED: frozenset({StageState.RESUMABLE, StageState.BLOCKED}),
    StageState.COMPLETED: frozenset(),
    StageState.RESUMABLE: frozenset(),
    StageState.BLOCKED: frozenset(),
}


class StageLifecycle:
    """Tracks one stage's state and the path it took."""

    def __init__(self, stage_id: str) -> None:
        self.stage_id = stage_id
        self._state = StageState.PENDING
        self._history: list[StageState] = [StageState.PENDING]

    @property
    def state(self) -> StageState:
        return self._state

    @property
    def history(self) -> list[StageState]:
        return list(self._history)

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self._state]

    def transition(self, target: StageState) -> None:
        """Move to target.

        Raises:
            InvalidStageTransitionError: If target is not reachable from the current state
        """
        if target not in ALLOWED_TRANSITIONS[self._state]:
            raise InvalidStageTransitionError(f"Stage {self.stage_id}: cannot go from {self._state.value} to {target.value}")
        logger.debug("stage_transition", stage_id=self.stage_id, from_state=self._state.value, to_state=target.value)
        self._state = target
        self._history.append(target)

    def settle(self, *, has_valid_checkpoint: bool) -> StageState:
        """Resolve INTERRUPTED or FAILED into RESUMABLE or BLOCKED."""
        self.transition(StageState.RESUMABLE if has_valid_checkpoint else StageState.BLOCKED)
        return self._state
