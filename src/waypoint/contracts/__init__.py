"""Shared contracts for cross-boundary data types.

All models, dataclasses, enums and protocols that cross subsystem boundaries
are defined here. This package is a LEAF MODULE with no outbound dependencies
to core/engine. Settings classes are NOT re-exported here; import them from
waypoint.core.config.
"""

from waypoint.contracts.checkpoint import (
    CURRENT_MANIFEST_VERSION,
    ArtifactCheck,
    ArtifactEntry,
    CheckpointListing,
    CheckpointManifest,
    CheckpointValidation,
    NotebookReference,
    PruneResult,
    PythonEnvMetadata,
    RehydrationConfig,
    ResumeResult,
    SkippedCheckpoint,
)
from waypoint.contracts.enums import (
    CheckpointStatus,
    EmergencyReason,
    MarkerKind,
    RehydrationMode,
    StageState,
    TerminationSignal,
    TrustLevel,
    WatchdogVerdict,
)
from waypoint.contracts.errors import (
    ArtifactCorruptError,
    ArtifactMissingError,
    CheckpointError,
    CheckpointExistsError,
    CheckpointWriteError,
    InvalidStageTransitionError,
    ManifestCorruptError,
    ManifestValidationError,
    NotebookError,
    PathConfinementViolation,
    ProcessUnresponsiveError,
    RehydrationError,
    SessionLockedError,
)
from waypoint.contracts.results import Err, Ok, Result
from waypoint.contracts.session import InterpreterSession, NotebookStore, OutputCallback, ProcessControl
from waypoint.contracts.stage import (
    STAGE_ID_PATTERN,
    ExecutionOutput,
    StageEnvelope,
    StageResult,
    is_valid_stage_id,
    next_stage_prefix,
    stage_sequence,
)

__all__ = [
    "CURRENT_MANIFEST_VERSION",
    "STAGE_ID_PATTERN",
    "ArtifactCheck",
    "ArtifactCorruptError",
    "ArtifactEntry",
    "ArtifactMissingError",
    "CheckpointError",
    "CheckpointExistsError",
    "CheckpointListing",
    "CheckpointManifest",
    "CheckpointStatus",
    "CheckpointValidation",
    "CheckpointWriteError",
    "EmergencyReason",
    "Err",
    "ExecutionOutput",
    "InterpreterSession",
    "InvalidStageTransitionError",
    "ManifestCorruptError",
    "ManifestValidationError",
    "MarkerKind",
    "NotebookError",
    "NotebookReference",
    "NotebookStore",
    "Ok",
    "OutputCallback",
    "PathConfinementViolation",
    "ProcessControl",
    "ProcessUnresponsiveError",
    "PruneResult",
    "PythonEnvMetadata",
    "RehydrationConfig",
    "RehydrationError",
    "RehydrationMode",
    "Result",
    "ResumeResult",
    "SessionLockedError",
    "SkippedCheckpoint",
    "StageEnvelope",
    "StageResult",
    "StageState",
    "TerminationSignal",
    "TrustLevel",
    "WatchdogVerdict",
    "is_valid_stage_id",
    "next_stage_prefix",
    "stage_sequence",
]
