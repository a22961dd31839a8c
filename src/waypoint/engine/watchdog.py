"""Stage watchdog: wall-clock timeout detection.

Polled by the supervisor at a fixed interval. A timeout only fires when the
stage has also gone quiet, meaning no output and no marker since the
previous poll:

    elapsed >= max_duration                  soft timeout (warned once)
    elapsed >= max_duration + grace          hard timeout (escalate)
    elapsed >= 2 * max_duration + grace      hard timeout even while active

The last rule keeps a chatty but runaway stage from postponing escalation
forever.
"""

import threading

import structlog

from waypoint.contracts.enums import MarkerKind, WatchdogVerdict
from waypoint.core.markers import iter_markers
from waypoint.engine.clock import DEFAULT_CLOCK, Clock

logger = structlog.get_logger(__name__)

DEFAULT_HARD_TIMEOUT_GRACE_SECONDS = 30.0


class Watchdog:
    """Timeout state for one running stage.

    record_output() may be called from the execution thread while poll()
    runs on the supervisor thread.
    """

    def __init__(
        self,
        max_duration_seconds: float,
        *,
        hard_timeout_grace_seconds: float = DEFAULT_HARD_TIMEOUT_GRACE_SECONDS,
        clock: Clock | None = None,
        stage_id: str | None = None,
    ) -> None:
        if max_duration_seconds <= 0:
            raise ValueError(f"max_duration_seconds must be positive, got {max_duration_seconds}")
        self._max_duration = max_duration_seconds
        self._grace = hard_timeout_grace_seconds
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._stage_id = stage_id
        self._lock = threading.Lock()
        self._started: float | None = None
        self._activity = False
        self._soft_warned = False
        self.last_progress: str | None = None

    @property
    def hard_timeout_seconds(self) -> float:
        return self._max_duration + self._grace

    @property
    def absolute_ceiling_seconds(self) -> float:
        return 2 * self._max_duration + self._grace

    @property
    def elapsed_seconds(self) -> float:
        if self._started is None:
            return 0.0
        return self._clock.monotonic() - self._started

    def start(self) -> None:
        with self._lock:
            self._started = self._clock.monotonic()
            self._activity = False
            self._soft_warned = False

    def record_output(self, text: str) -> None:
        """Note stage activity. Empty chunks do not count."""
        if not text:
            return
        progress = None
        for marker in iter_markers(text):
            if marker.kind == MarkerKind.STAGE and marker.subtype == "progress":
                progress = marker.content or str(marker.attributes)
        with self._lock:
            self._activity = True
            if progress is not None:
                self.last_progress = progress

    def poll(self) -> WatchdogVerdict:
        """Evaluate timeouts and reset the activity flag.

        Raises:
            RuntimeError: If called before start()
        """
        with self._lock:
            if self._started is None:
                raise RuntimeError("Watchdog.poll() called before start()")
            active = self._activity
            self._activity = False
            elapsed = self._clock.monotonic() - self._started

        if elapsed >= self.absolute_ceiling_seconds:
            logger.warning("watchdog_absolute_ceiling", stage_id=self._stage_id, elapsed_seconds=round(elapsed, 1))
            return WatchdogVerdict.HARD_TIMEOUT
        if active:
            return WatchdogVerdict.OK
        if elapsed >= self.hard_timeout_seconds:
            logger.warning("watchdog_hard_timeout", stage_id=self._stage_id, elapsed_seconds=round(elapsed, 1))
            return WatchdogVerdict.HARD_TIMEOUT
        if elapsed >= self._max_duration:
            if not self._soft_warned:
                self._soft_warned = True
                logger.warning(
                    "watchdog_soft_timeout",
                    stage_id=self._stage_id,
                    elapsed_seconds=round(elapsed, 1),
                    max_duration_seconds=self._max_duration,
                    last_progress=self.last_progress,
                )
            return WatchdogVerdict.SOFT_TIMEOUT
        return WatchdogVerdict.OK
