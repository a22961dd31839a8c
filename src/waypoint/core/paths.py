# src/waypoint/core/paths.py
"""
Project layout and path confinement.

Layout (relative to the project root):

    reports/{reportTitle}/checkpoints/{runId}/{checkpointId}/checkpoint.json
    reports/{reportTitle}/{runId}/{stageId}/{artifactName}
    notebooks/{reportTitle}.ipynb

Every path that comes from a manifest or a caller is resolved through
ProjectPaths before it touches the filesystem. Paths that escape the project
tree raise PathConfinementViolation; there is no way to opt out.

Trust levels tighten the rules for checkpoints that did not originate here:

    local      '..' and symlinks allowed if the resolved path stays in the project
    imported   no '..' segments, no symlinked components
    untrusted  as imported, and artifacts must live under reports/{reportTitle}/
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path, PurePosixPath

from waypoint.contracts.enums import TrustLevel
from waypoint.contracts.errors import PathConfinementViolation

PROJECT_ROOT_ENV_VAR = "WAYPOINT_PROJECT_ROOT"
CONFIG_MARKER = "waypoint.yaml"
MANIFEST_FILENAME = "checkpoint.json"
LOCK_FILENAME = "session.lock"

# Report titles, run IDs, checkpoint IDs and stage IDs become single directory
# names. Leading dots are refused so '.', '..' and hidden names cannot appear.
_SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def validate_segment(value: str, what: str) -> str:
    """Ensure value is usable as exactly one path segment.

    Raises:
        PathConfinementViolation: If value is empty, contains separators, or starts with a dot
    """
    if not _SEGMENT_PATTERN.match(value):
        raise PathConfinementViolation(f"Invalid {what} {value!r}: must be a single path segment of letters, digits, '.', '_' or '-'")
    return value


def detect_project_root(start: Path | None = None, env: Mapping[str, str] | None = None) -> Path:
    """Find the project root.

    Precedence:
    1. WAYPOINT_PROJECT_ROOT, if it names an existing directory
    2. Nearest ancestor containing waypoint.yaml
    3. Nearest ancestor containing .git
    4. The start directory (cwd by default)
    """
    environ = os.environ if env is None else env
    override = environ.get(PROJECT_ROOT_ENV_VAR)
    if override:
        candidate = Path(override).expanduser()
        if candidate.is_dir():
            return candidate.resolve()

    origin = (start if start is not None else Path.cwd()).resolve()
    search = [origin, *origin.parents]
    for marker in (CONFIG_MARKER, ".git"):
        for directory in search:
            if (directory / marker).exists():
                return directory
    return origin


class ProjectPaths:
    """Resolves every Waypoint path against one project root.

    Instances are cheap value objects; pass them explicitly rather than
    relying on process-wide state.
    """

    def __init__(self, root: Path, runtime_dir: Path | None = None) -> None:
        """Initialize with a project root.

        Args:
            root: Project root directory
            runtime_dir: Where session locks live (default: {root}/.waypoint/runtime)
        """
        self.root = root.resolve()
        if runtime_dir is None:
            self.runtime_dir = self.root / ".waypoint" / "runtime"
        elif runtime_dir.is_absolute():
            self.runtime_dir = runtime_dir
        else:
            self.runtime_dir = self.root / runtime_dir

    def __repr__(self) -> str:
        return f"ProjectPaths(root={self.root!s})"

    # -- layout ---------------------------------------------------------------

    @property
    def reports_dir(self) -> Path:
        return self.root / "reports"

    @property
    def notebooks_dir(self) -> Path:
        return self.root / "notebooks"

    def report_dir(self, report_title: str) -> Path:
        return self.reports_dir / validate_segment(report_title, "report title")

    def checkpoints_dir(self, report_title: str) -> Path:
        return self.report_dir(report_title) / "checkpoints"

    def run_checkpoints_dir(self, report_title: str, run_id: str) -> Path:
        return self.checkpoints_dir(report_title) / validate_segment(run_id, "run ID")

    def checkpoint_dir(self, report_title: str, run_id: str, checkpoint_id: str) -> Path:
        return self.run_checkpoints_dir(report_title, run_id) / validate_segment(checkpoint_id, "checkpoint ID")

    def manifest_path(self, report_title: str, run_id: str, checkpoint_id: str) -> Path:
        return self.checkpoint_dir(report_title, run_id, checkpoint_id) / MANIFEST_FILENAME

    def artifact_dir(self, report_title: str, run_id: str, stage_id: str) -> Path:
        return self.report_dir(report_title) / validate_segment(run_id, "run ID") / validate_segment(stage_id, "stage ID")

    def artifact_path(self, report_title: str, run_id: str, stage_id: str, artifact_name: str) -> Path:
        return self.artifact_dir(report_title, run_id, stage_id) / validate_segment(artifact_name, "artifact name")

    def notebook_relative_path(self, report_title: str) -> str:
        return f"notebooks/{validate_segment(report_title, 'report title')}.ipynb"

    def notebook_path(self, report_title: str) -> Path:
        return self.root / self.notebook_relative_path(report_title)

    def session_lock_path(self, report_title: str, run_id: str) -> Path:
        return self.runtime_dir / validate_segment(report_title, "report title") / validate_segment(run_id, "run ID") / LOCK_FILENAME

    def relative_to_root(self, path: Path) -> str:
        """Project-relative POSIX path, as stored in manifests."""
        return path.resolve().relative_to(self.root).as_posix()

    # -- confinement ----------------------------------------------------------

    def ensure_within(self, path: Path, base: Path) -> Path:
        """Resolve path and require it to stay inside base.

        Raises:
            PathConfinementViolation: If the resolved path escapes base
        """
        try:
            resolved = path.resolve()
            base_resolved = base.resolve()
        except (OSError, RuntimeError) as e:
            raise PathConfinementViolation(f"Path resolution failed for {path!s}") from e
        if not resolved.is_relative_to(base_resolved):
            raise PathConfinementViolation(f"Path {path!s} resolves to {resolved!s}, outside {base_resolved!s}")
        return resolved

    def resolve_artifact(
        self,
        relative_path: str,
        *,
        trust_level: TrustLevel = TrustLevel.LOCAL,
        report_title: str | None = None,
    ) -> Path:
        """Resolve a manifest's artifact path under the rules of its trust level.

        Raises:
            PathConfinementViolation: If the path is absolute, escapes the project,
                crosses a forbidden symlink, or (untrusted) leaves the report directory
        """
        normalized = relative_path.replace("\\", "/")
        pure = PurePosixPath(normalized)
        if not pure.parts or pure.is_absolute() or ":" in pure.parts[0]:
            raise PathConfinementViolation(f"Artifact path must be relative to the project root: {relative_path!r}")

        if trust_level != TrustLevel.LOCAL and ".." in pure.parts:
            raise PathConfinementViolation(f"Artifact path {relative_path!r} uses '..' which {trust_level.value} checkpoints may not")

        candidate = self.root.joinpath(*pure.parts)
        resolved = self.ensure_within(candidate, self.root)

        if trust_level != TrustLevel.LOCAL:
            current = self.root
            for part in pure.parts:
                current = current / part
                if current.is_symlink():
                    raise PathConfinementViolation(f"Artifact path {relative_path!r} crosses symlink {current!s} ({trust_level.value} checkpoint)")

        if trust_level == TrustLevel.UNTRUSTED:
            if report_title is None:
                raise PathConfinementViolation("Untrusted checkpoints require a report title to confine artifacts")
            self.ensure_within(resolved, self.report_dir(report_title))

        return resolved
