"""All status codes, modes, and kinds used across subsystem boundaries.

Values that are persisted in checkpoint manifests are part of the on-disk
format. Renaming a value breaks every manifest already written.
"""

from enum import StrEnum


class CheckpointStatus(StrEnum):
    """Status recorded in a checkpoint manifest.

    Stored in checkpoint.json (status).
    """

    SAVED = "saved"
    INTERRUPTED = "interrupted"
    EMERGENCY = "emergency"


class EmergencyReason(StrEnum):
    """Why a checkpoint was taken outside the normal stage boundary.

    Stored in checkpoint.json (reason). Required when status is EMERGENCY.
    """

    TIMEOUT = "timeout"
    ABORT = "abort"
    ERROR = "error"


class RehydrationMode(StrEnum):
    """How state is rebuilt after a restart.

    Values:
        ARTIFACTS_ONLY: Reload persisted artifacts only
        WITH_VARS: Artifacts plus variables the stage chose to persist
    """

    ARTIFACTS_ONLY = "artifacts_only"
    WITH_VARS = "with_vars"


class TrustLevel(StrEnum):
    """Origin classification controlling path validation strictness.

    Values:
        LOCAL: Written on this machine; symlinks allowed if they stay in the project
        IMPORTED: Copied from elsewhere; no symlinks anywhere on artifact paths
        UNTRUSTED: Unknown origin; no symlinks and artifacts confined to the report directory
    """

    LOCAL = "local"
    IMPORTED = "imported"
    UNTRUSTED = "untrusted"


class StageState(StrEnum):
    """Lifecycle state of a supervised stage."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    INTERRUPTING = "interrupting"
    INTERRUPTED = "interrupted"
    FAILED = "failed"
    RESUMABLE = "resumable"
    BLOCKED = "blocked"


class TerminationSignal(StrEnum):
    """Which escalation step actually stopped a process."""

    SIGINT = "SIGINT"
    SIGTERM = "SIGTERM"
    SIGKILL = "SIGKILL"
    ALREADY_DEAD = "already_dead"


class WatchdogVerdict(StrEnum):
    """Result of a single watchdog poll."""

    OK = "ok"
    SOFT_TIMEOUT = "soft_timeout"
    HARD_TIMEOUT = "hard_timeout"


class MarkerKind(StrEnum):
    """Marker types this package emits and recognizes in interpreter output."""

    STAGE = "STAGE"
    CHECKPOINT = "CHECKPOINT"
    REHYDRATED = "REHYDRATED"
