"""Exception taxonomy for checkpointing and stage supervision.

Checkpoint exceptions share the CheckpointError base so callers of save() and
emergency() can handle "my request failed" in one place. resume() never lets
these escape its candidate scan: a broken historical checkpoint is a reason to
try an older one, not a failure of the caller's request.
"""

from collections.abc import Sequence


class CheckpointError(Exception):
    """Base class for checkpoint subsystem failures."""

    pass


class ManifestValidationError(CheckpointError):
    """Raised when a manifest fails schema validation.

    Recoverable: reported to the caller, never written to disk.

    Attributes:
        errors: One human-readable entry per failing field
    """

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        super().__init__("Invalid checkpoint manifest: " + "; ".join(self.errors))


class ArtifactMissingError(CheckpointError):
    """Raised when a declared artifact does not exist."""

    def __init__(self, relative_path: str) -> None:
        self.relative_path = relative_path
        super().__init__(f"Artifact not found: {relative_path}")


class ArtifactCorruptError(CheckpointError):
    """Raised when an artifact's content does not match its declared hash or size."""

    def __init__(self, relative_path: str, detail: str) -> None:
        self.relative_path = relative_path
        self.detail = detail
        super().__init__(f"Artifact integrity check failed for {relative_path}: {detail}")


class ManifestCorruptError(CheckpointError):
    """Raised when checkpoint.json is unreadable, not JSON, or fails its seal."""

    pass


class CheckpointExistsError(CheckpointError):
    """Raised when saving over an existing manifest.

    Checkpoints are immutable once written; a later checkpoint supersedes,
    it never overwrites.
    """

    pass


class CheckpointWriteError(CheckpointError):
    """Raised when the manifest or its notebook cell cannot be written.

    The manifest write is atomic, so no partial checkpoint.json is left behind.
    """

    pass


class NotebookError(CheckpointError):
    """Raised when a notebook file is not valid nbformat 4 JSON."""

    def __init__(self, path: str, detail: str) -> None:
        self.path = path
        self.detail = detail
        super().__init__(f"Notebook {path} is unusable: {detail}")


class PathConfinementViolation(CheckpointError):
    """Raised when a path escapes the project tree or crosses a forbidden symlink.

    Always fatal for the path involved. There is no flag to bypass it.
    """

    pass


# =============================================================================
# Supervision
# =============================================================================


class ProcessUnresponsiveError(Exception):
    """Raised by process control when a signal cannot be delivered.

    The escalator absorbs this by moving to the next, stronger signal. It is
    never surfaced to the user as a bug.
    """

    pass


class InvalidStageTransitionError(Exception):
    """Raised when a stage lifecycle transition is not allowed."""

    pass


class SessionLockedError(Exception):
    """Raised when another live orchestrator holds the run's session lock."""

    def __init__(self, lock_path: str, owner_pid: int | None) -> None:
        self.lock_path = lock_path
        self.owner_pid = owner_pid
        super().__init__(f"Run is locked by pid {owner_pid} ({lock_path})")


class RehydrationError(CheckpointError):
    """Raised when rehydration code fails or does not confirm the checkpoint it restored."""

    def __init__(self, checkpoint_id: str, detail: str) -> None:
        self.checkpoint_id = checkpoint_id
        self.detail = detail
        super().__init__(f"Rehydration from {checkpoint_id} failed: {detail}")
