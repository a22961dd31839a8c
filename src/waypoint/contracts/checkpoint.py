"""Checkpoint manifest schema and resume/validation result contracts.

The manifest (checkpoint.json) is the durable unit of progress and the only
source of truth across a process restart. Field names on disk are camelCase;
the Python attributes are snake_case with aliases.

Manifests read from disk are untrusted. Validate them with
waypoint.core.checkpoint.validation.validate_manifest() before reading any
field.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, StrictInt, field_validator, model_validator

from waypoint.contracts.enums import CheckpointStatus, EmergencyReason, RehydrationMode, TrustLevel
from waypoint.contracts.stage import is_valid_stage_id

CURRENT_MANIFEST_VERSION = 1

# SHA-256 hex digest: exactly 64 lowercase hex characters
SHA256_HEX_PATTERN = r"^[a-f0-9]{64}$"

# Calendar date and clock time at minimum; the offset is checked by AwareDatetime
_ISO_TIMESTAMP = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}")

_MODEL_CONFIG = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")


class ArtifactEntry(BaseModel):
    """A file the checkpoint depends on, relative to the project root."""

    model_config = _MODEL_CONFIG

    relative_path: str = Field(min_length=1, alias="relativePath")
    sha256: str = Field(pattern=SHA256_HEX_PATTERN)
    size_bytes: int = Field(ge=0, strict=True, alias="sizeBytes")


class NotebookReference(BaseModel):
    """Where the checkpoint marker cell lives."""

    model_config = _MODEL_CONFIG

    path: str = Field(min_length=1)
    checkpoint_cell_id: str = Field(alias="checkpointCellId")


class PythonEnvMetadata(BaseModel):
    """Interpreter fingerprint used for reproducibility warnings."""

    model_config = _MODEL_CONFIG

    python_path: str = Field(alias="pythonPath")
    packages: list[str] = Field(default_factory=list)
    platform: str
    random_seeds: dict[str, StrictInt] | None = Field(default=None, alias="randomSeeds")


class RehydrationConfig(BaseModel):
    """Code that rebuilds interpreter state from this checkpoint."""

    model_config = _MODEL_CONFIG

    mode: RehydrationMode = RehydrationMode.ARTIFACTS_ONLY
    rehydration_cell_source: list[str] = Field(default_factory=list, alias="rehydrationCellSource")


class CheckpointManifest(BaseModel):
    """Schema of checkpoint.json.

    Field order here is the order written to disk. manifest_sha256 is last
    because it seals everything before it.
    """

    model_config = _MODEL_CONFIG

    checkpoint_id: str = Field(min_length=1, alias="checkpointId")
    research_session_id: str = Field(alias="researchSessionID")
    report_title: str = Field(min_length=1, alias="reportTitle")
    run_id: str = Field(min_length=1, alias="runId")
    stage_id: str = Field(alias="stageId")
    status: CheckpointStatus
    reason: EmergencyReason | None = None
    created_at: AwareDatetime = Field(alias="createdAt")
    execution_count: int = Field(ge=0, strict=True, alias="executionCount")
    notebook: NotebookReference
    python_env: PythonEnvMetadata = Field(alias="pythonEnv")
    artifacts: list[ArtifactEntry] = Field(default_factory=list)
    rehydration: RehydrationConfig
    trust_level: TrustLevel | None = Field(default=None, alias="trustLevel")
    manifest_version: StrictInt | None = Field(default=None, alias="manifestVersion")
    manifest_sha256: str | None = Field(default=None, pattern=SHA256_HEX_PATTERN, alias="manifestSha256")

    @field_validator("stage_id")
    @classmethod
    def validate_stage_id(cls, v: str) -> str:
        if not is_valid_stage_id(v):
            raise ValueError(f"stage ID {v!r} must match S<NN>_<verb>_<noun>")
        return v

    @field_validator("created_at", mode="before")
    @classmethod
    def require_iso_created_at(cls, v: Any) -> Any:
        # Must agree with the resume sort key, which only reads ISO strings
        if isinstance(v, datetime):
            return v
        if isinstance(v, str) and _ISO_TIMESTAMP.match(v):
            return v
        raise ValueError("createdAt must be an ISO-8601 timestamp string")

    @field_validator("manifest_version")
    @classmethod
    def validate_manifest_version(cls, v: int | None) -> int | None:
        # Absent means version 1 (manifests written before versioning)
        if v is not None and v != CURRENT_MANIFEST_VERSION:
            raise ValueError(f"unsupported manifest version {v} (supported: {CURRENT_MANIFEST_VERSION})")
        return v

    @model_validator(mode="after")
    def validate_emergency_reason(self) -> "CheckpointManifest":
        if self.status == CheckpointStatus.EMERGENCY and self.reason is None:
            raise ValueError("emergency checkpoints must record a reason (timeout, abort or error)")
        return self

    @property
    def effective_trust_level(self) -> TrustLevel:
        return self.trust_level if self.trust_level is not None else TrustLevel.LOCAL

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize with on-disk field names, omitting unset optional fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# Manager results (not persisted)
# =============================================================================


@dataclass(frozen=True)
class CheckpointListing:
    """One manifest found on disk. Cheap: contents are not validated."""

    report_title: str
    run_id: str
    checkpoint_id: str
    manifest_path: Path
    created_at: datetime
    stage_id: str | None = None
    status: str | None = None


@dataclass(frozen=True)
class ArtifactCheck:
    """Per-artifact verification outcome."""

    relative_path: str
    ok: bool
    reason: str | None = None


@dataclass
class CheckpointValidation:
    """Full verification report for one checkpoint."""

    checkpoint_id: str
    manifest_path: Path
    errors: list[str] = field(default_factory=list)
    seal_ok: bool = False
    artifacts: list[ArtifactCheck] = field(default_factory=list)
    manifest: CheckpointManifest | None = None

    @property
    def valid(self) -> bool:
        return self.manifest is not None and self.seal_ok and not self.errors and all(a.ok for a in self.artifacts)


@dataclass(frozen=True)
class SkippedCheckpoint:
    """A resume candidate that failed verification."""

    checkpoint_id: str
    run_id: str
    reasons: tuple[str, ...]


@dataclass
class ResumeResult:
    """Result of scanning for the latest valid checkpoint.

    found=False is a normal outcome ("nothing to resume"), not an error.
    """

    found: bool
    searched_count: int
    checkpoint: CheckpointManifest | None = None
    manifest_path: Path | None = None
    rehydration_cells: list[str] = field(default_factory=list)
    next_stage_id: str | None = None
    skipped: list[SkippedCheckpoint] = field(default_factory=list)
    environment_warnings: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.found and self.checkpoint is None:
            raise ValueError("found=True requires a checkpoint")
        if not self.found and self.checkpoint is not None:
            raise ValueError("found=False must not carry a checkpoint")


@dataclass(frozen=True)
class PruneResult:
    """Checkpoints removed and retained by a prune."""

    deleted: tuple[str, ...]
    kept: tuple[str, ...]
