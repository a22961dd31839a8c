"""Stage supervision: watchdog, interrupt escalation, lifecycle, run orchestration."""

from waypoint.engine.clock import DEFAULT_CLOCK, Clock, MockClock, SystemClock
from waypoint.engine.escalation import EscalationPolicy, EscalationResult, InterruptEscalator
from waypoint.engine.lifecycle import StageLifecycle
from waypoint.engine.orchestrator import ResearchRun
from waypoint.engine.process import PosixProcessControl, WindowsProcessControl, process_control_for
from waypoint.engine.supervisor import StageSupervisor, wrap_stage_code
from waypoint.engine.watchdog import Watchdog

__all__ = [
    "DEFAULT_CLOCK",
    "Clock",
    "EscalationPolicy",
    "EscalationResult",
    "InterruptEscalator",
    "MockClock",
    "PosixProcessControl",
    "ResearchRun",
    "StageLifecycle",
    "StageSupervisor",
    "SystemClock",
    "Watchdog",
    "WindowsProcessControl",
    "process_control_for",
    "wrap_stage_code",
]
