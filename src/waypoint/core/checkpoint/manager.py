"""CheckpointManager: save, list, validate, resume, prune and emergency checkpoints.

Checkpoints are directories under reports/{reportTitle}/checkpoints/{runId}/,
each holding one sealed checkpoint.json. The filesystem is the only store;
there is no index to drift out of sync with it.

Failure semantics:
- save() and emergency() raise CheckpointError subclasses to the caller.
- resume() never raises for a bad candidate. A manifest that is unreadable,
  invalid, tampered with, or references missing/changed artifacts is logged
  and skipped, and the scan moves to the next older checkpoint.
"""

import json
import shutil
import sys
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime
from importlib import metadata
from pathlib import Path
from typing import Any

import structlog

from waypoint.contracts.checkpoint import (
    CURRENT_MANIFEST_VERSION,
    ArtifactCheck,
    ArtifactEntry,
    CheckpointListing,
    CheckpointManifest,
    CheckpointValidation,
    PruneResult,
    PythonEnvMetadata,
    RehydrationConfig,
    ResumeResult,
    SkippedCheckpoint,
)
from waypoint.contracts.enums import CheckpointStatus, EmergencyReason, TrustLevel
from waypoint.contracts.errors import (
    ArtifactCorruptError,
    ArtifactMissingError,
    CheckpointError,
    CheckpointExistsError,
    CheckpointWriteError,
    ManifestCorruptError,
    ManifestValidationError,
    PathConfinementViolation,
)
from waypoint.contracts.results import Err
from waypoint.contracts.session import NotebookStore
from waypoint.contracts.stage import is_valid_stage_id, next_stage_prefix
from waypoint.core.canonical import digests_match, file_sha256, render_manifest, seal_manifest, stable_hash, verify_manifest_seal
from waypoint.core.checkpoint.rehydration import generate_rehydration_code
from waypoint.core.checkpoint.validation import parse_manifest, validate_manifest
from waypoint.core.fs import atomic_write
from waypoint.core.markers import checkpoint_marker
from waypoint.core.notebook import CHECKPOINT_CELL_TAG, FilesystemNotebookStore
from waypoint.core.paths import MANIFEST_FILENAME, ProjectPaths, validate_segment

logger = structlog.get_logger(__name__)


def current_python_env(*, include_packages: bool = False) -> PythonEnvMetadata:
    """Fingerprint the running interpreter.

    Args:
        include_packages: Also list installed distributions as name==version
            (slow on large environments)
    """
    packages: list[str] = []
    if include_packages:
        packages = sorted({f"{dist.metadata['Name']}=={dist.version}" for dist in metadata.distributions() if dist.metadata["Name"]})
    return PythonEnvMetadata(python_path=sys.executable, packages=packages, platform=sys.platform)


def _parse_created_at(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _listing_sort_key(listing: CheckpointListing) -> tuple[datetime, str]:
    return listing.created_at, listing.checkpoint_id


class CheckpointManager:
    """Manages checkpoint creation, verification and selection for resume.

    Usage:
        manager = CheckpointManager(ProjectPaths(root))

        manager.save(
            report_title="churn",
            run_id="run-001",
            checkpoint_id="ckpt-001",
            stage_id="S01_load_data",
            python_env=current_python_env(),
            artifacts=[manager.describe_artifact("reports/churn/run-001/S01_load_data/customers.parquet")],
        )

        result = manager.resume("churn")
        if result.found:
            ...  # execute result.rehydration_cells, continue at result.next_stage_id
    """

    def __init__(
        self,
        paths: ProjectPaths,
        notebooks: NotebookStore | None = None,
        *,
        default_trust_level: TrustLevel = TrustLevel.LOCAL,
        keep_count: int = 5,
    ) -> None:
        """Initialize with the project layout.

        Args:
            paths: Project path resolver
            notebooks: Notebook cell storage (default: FilesystemNotebookStore)
            default_trust_level: Trust level for manifests that do not declare one
            keep_count: Default retention for prune()
        """
        if keep_count < 1:
            raise ValueError(f"keep_count must be at least 1, got {keep_count}")
        self._paths = paths
        self._notebooks = notebooks if notebooks is not None else FilesystemNotebookStore(paths)
        self._default_trust_level = default_trust_level
        self._keep_count = keep_count

    @property
    def paths(self) -> ProjectPaths:
        return self._paths

    # =========================================================================
    # Writing
    # =========================================================================

    def describe_artifact(self, relative_path: str) -> ArtifactEntry:
        """Compute the manifest entry for a file inside the project.

        Raises:
            PathConfinementViolation: If the path escapes the project
            ArtifactMissingError: If the file does not exist
        """
        normalized = relative_path.replace("\\", "/")
        resolved = self._paths.resolve_artifact(normalized)
        if not resolved.is_file():
            raise ArtifactMissingError(normalized)
        return ArtifactEntry(relative_path=normalized, sha256=file_sha256(resolved), size_bytes=resolved.stat().st_size)

    def _verify_artifact(self, entry: ArtifactEntry, trust_level: TrustLevel, report_title: str) -> None:
        resolved = self._paths.resolve_artifact(entry.relative_path, trust_level=trust_level, report_title=report_title)
        if not resolved.is_file():
            raise ArtifactMissingError(entry.relative_path)
        size = resolved.stat().st_size
        if size != entry.size_bytes:
            raise ArtifactCorruptError(entry.relative_path, f"size {size} bytes, manifest declares {entry.size_bytes}")
        actual = file_sha256(resolved)
        if not digests_match(entry.sha256, actual):
            raise ArtifactCorruptError(entry.relative_path, f"sha256 {actual}, manifest declares {entry.sha256}")

    def _write_manifest(self, draft: CheckpointManifest, cell_id: str) -> CheckpointManifest:
        body = draft.to_json_dict()
        body["notebook"]["checkpointCellId"] = cell_id
        sealed = seal_manifest(body)
        # Re-validate the exact dict being written
        manifest = parse_manifest(sealed)

        manifest_path = self._paths.manifest_path(draft.report_title, draft.run_id, draft.checkpoint_id)
        try:
            manifest_path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write(manifest_path, render_manifest(sealed) + "\n")
        except OSError as e:
            raise CheckpointWriteError(f"Could not write {manifest_path}: {e}") from e
        return manifest

    def _check_not_exists(self, report_title: str, run_id: str, checkpoint_id: str) -> None:
        manifest_path = self._paths.manifest_path(report_title, run_id, checkpoint_id)
        if manifest_path.exists():
            raise CheckpointExistsError(f"Checkpoint {checkpoint_id!r} already exists for {report_title}/{run_id}; checkpoints are never overwritten")

    def _checkpoint_cell_source(self, manifest: CheckpointManifest) -> list[str]:
        subtype = "emergency" if manifest.status != CheckpointStatus.SAVED else "saved"
        marker = checkpoint_marker(
            subtype,
            manifest.checkpoint_id,
            stage=manifest.stage_id,
            runId=manifest.run_id,
            reason=manifest.reason.value if manifest.reason is not None else None,
        )
        return [
            f"# Checkpoint {manifest.checkpoint_id} after {manifest.stage_id} ({manifest.status.value})",
            f"print({json.dumps(marker)})",
        ]

    def _append_checkpoint_cell(self, manifest: CheckpointManifest) -> str:
        metadata = {
            "tags": [CHECKPOINT_CELL_TAG],
            "waypoint": {
                "checkpointId": manifest.checkpoint_id,
                "runId": manifest.run_id,
                "stageId": manifest.stage_id,
                "status": manifest.status.value,
            },
        }
        try:
            return self._notebooks.append_cell(manifest.notebook.path, cell_type="code", source=self._checkpoint_cell_source(manifest), metadata=metadata)
        except OSError as e:
            raise CheckpointWriteError(f"Could not record checkpoint cell in {manifest.notebook.path}: {e}") from e

    def save(
        self,
        *,
        report_title: str,
        run_id: str,
        checkpoint_id: str,
        stage_id: str,
        python_env: PythonEnvMetadata,
        artifacts: Sequence[ArtifactEntry] = (),
        rehydration: RehydrationConfig | None = None,
        execution_count: int = 0,
        research_session_id: str = "",
        trust_level: TrustLevel | None = None,
        created_at: datetime | None = None,
    ) -> CheckpointManifest:
        """Persist a checkpoint at a stage boundary.

        Every artifact is verified against its declared hash and size before
        anything is written. When rehydration is None, generated rehydration
        code is stored.

        Returns:
            The sealed manifest as written

        Raises:
            PathConfinementViolation: If an ID is not a safe path segment or an artifact escapes the project
            CheckpointExistsError: If the checkpoint ID is already used in this run
            ArtifactMissingError: If a declared artifact does not exist
            ArtifactCorruptError: If an artifact does not match its declaration
            ManifestValidationError: If the resulting manifest is invalid
            NotebookError: If the report notebook exists but is not a valid notebook
            CheckpointWriteError: If the notebook cell or the manifest cannot be written
        """
        self._check_not_exists(report_title, run_id, checkpoint_id)
        if not is_valid_stage_id(stage_id):
            raise ManifestValidationError([f"stageId: stage ID {stage_id!r} must match S<NN>_<verb>_<noun>"])

        effective_trust = trust_level if trust_level is not None else TrustLevel.LOCAL
        for entry in artifacts:
            self._verify_artifact(entry, effective_trust, report_title)

        draft = parse_manifest(
            {
                "checkpointId": checkpoint_id,
                "researchSessionID": research_session_id,
                "reportTitle": report_title,
                "runId": run_id,
                "stageId": stage_id,
                "status": CheckpointStatus.SAVED.value,
                "createdAt": (created_at or datetime.now(UTC)).isoformat(),
                "executionCount": execution_count,
                "notebook": {"path": self._paths.notebook_relative_path(report_title), "checkpointCellId": ""},
                "pythonEnv": python_env.model_dump(mode="json", by_alias=True, exclude_none=True),
                "artifacts": [a.model_dump(mode="json", by_alias=True) for a in artifacts],
                "rehydration": (rehydration or RehydrationConfig()).model_dump(mode="json", by_alias=True),
                **({"trustLevel": trust_level.value} if trust_level is not None else {}),
                "manifestVersion": CURRENT_MANIFEST_VERSION,
            }
        )
        if rehydration is None:
            generated = RehydrationConfig(rehydration_cell_source=generate_rehydration_code(draft))
            draft = draft.model_copy(update={"rehydration": generated})

        cell_id = self._append_checkpoint_cell(draft)
        manifest = self._write_manifest(draft, cell_id)

        logger.info(
            "checkpoint_saved",
            report_title=report_title,
            run_id=run_id,
            checkpoint_id=checkpoint_id,
            stage_id=stage_id,
            artifact_count=len(artifacts),
        )
        return manifest

    def emergency(
        self,
        *,
        report_title: str,
        run_id: str,
        stage_id: str,
        reason: EmergencyReason,
        status: CheckpointStatus = CheckpointStatus.INTERRUPTED,
        checkpoint_id: str | None = None,
        artifacts: Sequence[ArtifactEntry] = (),
        python_env: PythonEnvMetadata | None = None,
        execution_count: int = 0,
        research_session_id: str = "",
    ) -> CheckpointManifest:
        """Record an out-of-band checkpoint when a stage is being stopped.

        The interpreter may be hung or dead, so nothing is asked of it:
        artifacts are recorded as given without existence or hash checks, and
        notebook recording is best-effort. resume() still verifies artifacts
        later, so an emergency checkpoint naming broken artifacts is skipped
        there rather than trusted.

        Raises:
            ValueError: If status is SAVED
            PathConfinementViolation: If an ID is not a safe path segment
            ManifestValidationError: If the resulting manifest is invalid
            CheckpointWriteError: If the manifest cannot be written
        """
        if status == CheckpointStatus.SAVED:
            raise ValueError("emergency checkpoints use status 'interrupted' or 'emergency'")
        if checkpoint_id is None:
            checkpoint_id = f"ckpt-emergency-{uuid.uuid4().hex[:12]}"
        self._check_not_exists(report_title, run_id, checkpoint_id)

        env = python_env if python_env is not None else current_python_env()
        draft = parse_manifest(
            {
                "checkpointId": checkpoint_id,
                "researchSessionID": research_session_id,
                "reportTitle": report_title,
                "runId": run_id,
                "stageId": stage_id,
                "status": status.value,
                "reason": reason.value,
                "createdAt": datetime.now(UTC).isoformat(),
                "executionCount": execution_count,
                "notebook": {"path": self._paths.notebook_relative_path(report_title), "checkpointCellId": ""},
                "pythonEnv": env.model_dump(mode="json", by_alias=True, exclude_none=True),
                "artifacts": [a.model_dump(mode="json", by_alias=True) for a in artifacts],
                "rehydration": {"mode": "artifacts_only", "rehydrationCellSource": []},
                "manifestVersion": CURRENT_MANIFEST_VERSION,
            }
        )
        draft = draft.model_copy(update={"rehydration": RehydrationConfig(rehydration_cell_source=generate_rehydration_code(draft))})

        try:
            cell_id = self._append_checkpoint_cell(draft)
        except CheckpointError as e:
            logger.warning(
                "emergency_notebook_record_failed",
                report_title=report_title,
                run_id=run_id,
                checkpoint_id=checkpoint_id,
                error=str(e),
            )
            cell_id = ""

        manifest = self._write_manifest(draft, cell_id)
        logger.warning(
            "emergency_checkpoint_saved",
            report_title=report_title,
            run_id=run_id,
            checkpoint_id=checkpoint_id,
            stage_id=stage_id,
            status=status.value,
            reason=reason.value,
        )
        return manifest

    # =========================================================================
    # Reading
    # =========================================================================

    def _run_ids(self, report_title: str) -> list[str]:
        checkpoints_dir = self._paths.checkpoints_dir(report_title)
        if not checkpoints_dir.is_dir():
            return []
        return sorted(entry.name for entry in checkpoints_dir.iterdir() if entry.is_dir())

    def _listing(self, report_title: str, run_id: str, checkpoint_id: str, manifest_path: Path) -> CheckpointListing:
        raw: Any = None
        try:
            raw = json.loads(manifest_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            # Listed anyway so validate/resume can report it
            pass
        fields: dict[str, Any] = raw if isinstance(raw, dict) else {}

        created_at = _parse_created_at(fields.get("createdAt"))
        if created_at is None:
            created_at = datetime.fromtimestamp(manifest_path.stat().st_mtime, UTC)
        stage_id = fields.get("stageId")
        status = fields.get("status")
        return CheckpointListing(
            report_title=report_title,
            run_id=run_id,
            checkpoint_id=checkpoint_id,
            manifest_path=manifest_path,
            created_at=created_at,
            stage_id=stage_id if isinstance(stage_id, str) else None,
            status=status if isinstance(status, str) else None,
        )

    def list_checkpoints(self, report_title: str, run_id: str | None = None) -> list[CheckpointListing]:
        """List manifests on disk, oldest first.

        Cheap: manifests are read for ordering only, never validated. Across
        runs when run_id is None.
        """
        run_ids = [validate_segment(run_id, "run ID")] if run_id is not None else self._run_ids(report_title)

        listings: list[CheckpointListing] = []
        for rid in run_ids:
            run_dir = self._paths.checkpoints_dir(report_title) / rid
            if not run_dir.is_dir():
                continue
            for entry in sorted(run_dir.iterdir()):
                manifest_path = entry / MANIFEST_FILENAME
                if not entry.is_dir() or not manifest_path.is_file():
                    continue
                listings.append(self._listing(report_title, rid, entry.name, manifest_path))

        listings.sort(key=_listing_sort_key)
        return listings

    def _inspect(self, listing: CheckpointListing) -> CheckpointValidation:
        """Full verification of one checkpoint. Never raises for bad content."""
        report = CheckpointValidation(checkpoint_id=listing.checkpoint_id, manifest_path=listing.manifest_path)

        try:
            raw = json.loads(listing.manifest_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            report.errors.append(str(ManifestCorruptError(f"{MANIFEST_FILENAME} unreadable: {e}")))
            return report

        result = validate_manifest(raw)
        if isinstance(result, Err):
            report.errors.extend(result.errors)
            return report
        manifest = result.value

        report.seal_ok = verify_manifest_seal(raw)
        if not report.seal_ok:
            report.errors.append("manifestSha256: does not match manifest content")

        expected_identity = (listing.report_title, listing.run_id, listing.checkpoint_id)
        actual_identity = (manifest.report_title, manifest.run_id, manifest.checkpoint_id)
        if actual_identity != expected_identity:
            report.errors.append(f"identity {'/'.join(actual_identity)} does not match location {'/'.join(expected_identity)}")

        trust_level = manifest.trust_level if manifest.trust_level is not None else self._default_trust_level
        for entry in manifest.artifacts:
            try:
                self._verify_artifact(entry, trust_level, listing.report_title)
            except PathConfinementViolation as e:
                logger.error(
                    "artifact_path_confinement_violation",
                    checkpoint_id=listing.checkpoint_id,
                    relative_path=entry.relative_path,
                    trust_level=trust_level.value,
                    error=str(e),
                )
                report.artifacts.append(ArtifactCheck(entry.relative_path, ok=False, reason=str(e)))
            except (ArtifactMissingError, ArtifactCorruptError, OSError) as e:
                report.artifacts.append(ArtifactCheck(entry.relative_path, ok=False, reason=str(e)))
            else:
                report.artifacts.append(ArtifactCheck(entry.relative_path, ok=True))

        report.manifest = manifest
        return report

    def validate(self, report_title: str, run_id: str, checkpoint_id: str) -> CheckpointValidation:
        """Re-verify one checkpoint: schema, seal and every artifact. Read-only.

        Raises:
            ManifestCorruptError: If the checkpoint has no manifest
        """
        manifest_path = self._paths.manifest_path(report_title, run_id, checkpoint_id)
        if not manifest_path.is_file():
            raise ManifestCorruptError(f"No {MANIFEST_FILENAME} for {report_title}/{run_id}/{checkpoint_id}")
        return self._inspect(self._listing(report_title, run_id, checkpoint_id, manifest_path))

    def environment_warnings(self, recorded: PythonEnvMetadata, current: PythonEnvMetadata) -> list[str]:
        """Differences between the checkpoint's interpreter and the current one."""
        warnings: list[str] = []
        if recorded.python_path != current.python_path:
            warnings.append(f"python path differs: checkpoint {recorded.python_path}, current {current.python_path}")
        if recorded.platform != current.platform:
            warnings.append(f"platform differs: checkpoint {recorded.platform}, current {current.platform}")
        # Package lists are only compared when both sides recorded one
        if recorded.packages and current.packages and stable_hash(sorted(recorded.packages)) != stable_hash(sorted(current.packages)):
            missing = sorted(set(recorded.packages) - set(current.packages))
            warnings.append("installed packages differ" + (f"; not installed now: {', '.join(missing)}" if missing else ""))
        return warnings

    def resume(
        self,
        report_title: str,
        run_id: str | None = None,
        *,
        current_env: PythonEnvMetadata | None = None,
    ) -> ResumeResult:
        """Find the latest checkpoint that fully verifies.

        Candidates are scanned newest first (across all runs of the report
        when run_id is None). Invalid candidates are logged and skipped.

        Args:
            report_title: Report whose checkpoints to scan
            run_id: Restrict the scan to one run
            current_env: Interpreter to compare against (default: this process)
        """
        listings = self.list_checkpoints(report_title, run_id)
        skipped: list[SkippedCheckpoint] = []
        searched = 0

        for listing in reversed(listings):
            searched += 1
            try:
                report = self._inspect(listing)
            except (CheckpointError, OSError) as e:
                # Per-candidate failures never abort the scan
                reasons: tuple[str, ...] = (str(e),)
            else:
                if report.valid and report.manifest is not None:
                    return self._resumed(report, searched, skipped, current_env)
                reasons = tuple(report.errors) + tuple(f"{a.relative_path}: {a.reason}" for a in report.artifacts if not a.ok)

            logger.warning(
                "resume_candidate_skipped",
                report_title=report_title,
                run_id=listing.run_id,
                checkpoint_id=listing.checkpoint_id,
                reasons=list(reasons),
            )
            skipped.append(SkippedCheckpoint(checkpoint_id=listing.checkpoint_id, run_id=listing.run_id, reasons=reasons))

        logger.info("resume_nothing_found", report_title=report_title, run_id=run_id, searched_count=searched)
        return ResumeResult(found=False, searched_count=searched, skipped=skipped)

    def _resumed(
        self,
        report: CheckpointValidation,
        searched: int,
        skipped: list[SkippedCheckpoint],
        current_env: PythonEnvMetadata | None,
    ) -> ResumeResult:
        manifest = report.manifest
        assert manifest is not None  # caller checked report.valid

        trust_level = manifest.trust_level if manifest.trust_level is not None else self._default_trust_level
        stored = list(manifest.rehydration.rehydration_cell_source)
        # Code from another machine is never handed back for execution
        if stored and trust_level != TrustLevel.LOCAL:
            logger.warning("resume_stored_rehydration_ignored", checkpoint_id=manifest.checkpoint_id, trust_level=trust_level.value)
            stored = []
        cells = stored or generate_rehydration_code(manifest)
        warnings = self.environment_warnings(manifest.python_env, current_env if current_env is not None else current_python_env())
        for warning in warnings:
            logger.warning("resume_environment_mismatch", checkpoint_id=manifest.checkpoint_id, detail=warning)

        logger.info(
            "resume_checkpoint_selected",
            report_title=manifest.report_title,
            run_id=manifest.run_id,
            checkpoint_id=manifest.checkpoint_id,
            stage_id=manifest.stage_id,
            searched_count=searched,
            skipped_count=len(skipped),
        )
        return ResumeResult(
            found=True,
            searched_count=searched,
            checkpoint=manifest,
            manifest_path=report.manifest_path,
            rehydration_cells=cells,
            next_stage_id=next_stage_prefix(manifest.stage_id),
            skipped=skipped,
            environment_warnings=warnings,
        )

    # =========================================================================
    # Retention
    # =========================================================================

    def prune(self, report_title: str, run_id: str, keep_count: int | None = None) -> PruneResult:
        """Delete checkpoints beyond the keep_count most recent, oldest first.

        The checkpoint resume() would select is always kept, even when it is
        older than the retention window. Running prune twice deletes nothing
        the second time.
        """
        keep = self._keep_count if keep_count is None else keep_count
        if keep < 1:
            raise ValueError(f"keep_count must be at least 1, got {keep}")

        listings = self.list_checkpoints(report_title, run_id)
        retained = {listing.checkpoint_id for listing in listings[-keep:]}
        selected = self.resume(report_title, run_id)
        if selected.checkpoint is not None:
            retained.add(selected.checkpoint.checkpoint_id)

        run_dir = self._paths.run_checkpoints_dir(report_title, run_id)
        deleted: list[str] = []
        for listing in listings:
            if listing.checkpoint_id in retained:
                continue
            checkpoint_dir = listing.manifest_path.parent
            if checkpoint_dir.is_symlink():
                checkpoint_dir.unlink()
            else:
                self._paths.ensure_within(checkpoint_dir, run_dir)
                shutil.rmtree(checkpoint_dir)
            deleted.append(listing.checkpoint_id)
            logger.info("checkpoint_pruned", report_title=report_title, run_id=run_id, checkpoint_id=listing.checkpoint_id)

        kept = tuple(listing.checkpoint_id for listing in listings if listing.checkpoint_id in retained)
        return PruneResult(deleted=tuple(deleted), kept=kept)
