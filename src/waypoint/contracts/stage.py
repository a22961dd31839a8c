"""Stage protocol contracts.

A stage is a bounded unit of work (at most ten minutes) with declared inputs
and outputs. Stage IDs follow ``S{NN}_{verb}_{noun}`` so that ordering and the
next stage can be derived from the ID alone:

    S01_load_data -> S02_ -> S03_ ...

The envelope is validated before a stage is delegated; an envelope that fails
validation never reaches the interpreter.
"""

import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from waypoint.contracts.enums import StageState, TerminationSignal

# S + two-digit sequence, a lowercase verb, then one or more noun words.
STAGE_ID_PATTERN = re.compile(r"^S(\d{2})_[a-z][a-z0-9]*_[a-z][a-z0-9_]*$")
_STAGE_PREFIX_PATTERN = re.compile(r"^S(\d{2})_")

DEFAULT_MAX_DURATION_SECONDS = 240


def is_valid_stage_id(stage_id: str) -> bool:
    """Whether stage_id follows the S{NN}_{verb}_{noun} convention."""
    return STAGE_ID_PATTERN.match(stage_id) is not None


def stage_sequence(stage_id: str) -> int:
    """Return the two-digit sequence number of a stage ID.

    Raises:
        ValueError: If stage_id does not start with S{NN}_
    """
    match = _STAGE_PREFIX_PATTERN.match(stage_id)
    if match is None:
        raise ValueError(f"Stage ID {stage_id!r} does not start with S<two digits>_")
    return int(match.group(1))


def next_stage_prefix(stage_id: str) -> str | None:
    """Prefix of the stage that follows stage_id.

    S02_eda_analysis -> "S03_", S09_final_step -> "S10_". Returns None after
    S99 because a three-digit prefix cannot form a valid stage ID.
    """
    sequence = stage_sequence(stage_id) + 1
    if sequence > 99:
        return None
    return f"S{sequence:02d}_"


def _check_relative_path(value: str) -> str:
    path = PurePosixPath(value)
    if not path.parts or path.is_absolute() or value.startswith("\\") or ":" in path.parts[0]:
        raise ValueError(f"path must be relative to the project root, got {value!r}")
    if ".." in path.parts:
        raise ValueError(f"path must not contain '..' segments, got {value!r}")
    return value


class StageEnvelope(BaseModel):
    """What the orchestrator hands to the executor for one stage.

    Example:
        StageEnvelope(
            stage_id="S02_eda_analysis",
            goal="Explore churn drivers in the cleaned customer table",
            inputs={"customers": "reports/churn/run-001/S01_load_data/clean.parquet"},
            outputs={"summary": "reports/churn/run-001/S02_eda_analysis/summary.json"},
        )
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    stage_id: str = Field(alias="stageId")
    goal: str = Field(min_length=10, max_length=200)
    inputs: dict[str, str] = Field(default_factory=dict)
    outputs: dict[str, str] = Field(default_factory=dict)
    max_duration_sec: int = Field(default=DEFAULT_MAX_DURATION_SECONDS, ge=30, le=600, alias="maxDurationSec")
    dependencies: tuple[str, ...] = ()
    retryable: bool = True
    checkpoint_after: bool = Field(default=True, alias="checkpointAfter")

    @field_validator("stage_id")
    @classmethod
    def validate_stage_id(cls, v: str) -> str:
        if not is_valid_stage_id(v):
            raise ValueError(f"stage ID {v!r} must match S<NN>_<verb>_<noun>, e.g. S02_eda_analysis")
        return v

    @field_validator("inputs", "outputs")
    @classmethod
    def validate_paths(cls, v: dict[str, str]) -> dict[str, str]:
        for path in v.values():
            _check_relative_path(path)
        return v

    @model_validator(mode="after")
    def validate_dependencies(self) -> "StageEnvelope":
        """Dependencies must be well-formed and earlier in the run."""
        own = stage_sequence(self.stage_id)
        for dep in self.dependencies:
            if not is_valid_stage_id(dep):
                raise ValueError(f"dependency {dep!r} is not a valid stage ID")
            if stage_sequence(dep) >= own:
                raise ValueError(f"dependency {dep!r} must come before {self.stage_id!r}")
        return self


@dataclass
class ExecutionOutput:
    """What the interpreter returns for one execute() call."""

    stdout: str = ""
    stderr: str = ""
    error: str | None = None


@dataclass
class StageResult:
    """Outcome of delegating one stage.

    terminated_by and termination_time_ms are only set when the stage had to
    be stopped by escalation.
    """

    stage_id: str
    state: StageState
    stdout: str = ""
    stderr: str = ""
    error: str | None = None
    duration_seconds: float = 0.0
    terminated_by: TerminationSignal | None = None
    termination_time_ms: int | None = None
    checkpoint_id: str | None = None
    checkpoint_error: str | None = None
    attempts: int = 1
    history: list[StageState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == StageState.COMPLETED
