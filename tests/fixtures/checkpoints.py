# tests/fixtures/checkpoints.py
"""Builders for checkpoint tests.

write_manifest() writes a sealed checkpoint.json directly, bypassing
CheckpointManager.save(), so tests can control createdAt and plant
deliberately broken manifests.
"""

import hashlib
import json
from pathlib import Path
from typing import Any

from waypoint.contracts.checkpoint import ArtifactEntry
from waypoint.core.canonical import render_manifest, seal_manifest
from waypoint.core.paths import ProjectPaths


def write_artifact(root: Path, relative_path: str, content: str | bytes) -> ArtifactEntry:
    """Create a file under root and return its manifest entry."""
    data = content.encode("utf-8") if isinstance(content, str) else content
    path = root / relative_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return ArtifactEntry(relative_path=relative_path, sha256=hashlib.sha256(data).hexdigest(), size_bytes=len(data))


def manifest_dict(
    report_title: str,
    run_id: str,
    checkpoint_id: str,
    *,
    stage_id: str = "S01_load_data",
    created_at: str = "2026-01-01T10:00:00Z",
    status: str = "saved",
    artifacts: list[ArtifactEntry] | None = None,
    rehydration_cells: list[str] | None = None,
    random_seeds: dict[str, int] | None = None,
    **overrides: Any,
) -> dict[str, Any]:
    """An unsealed manifest body in on-disk key order."""
    python_env: dict[str, Any] = {"pythonPath": "/usr/bin/python3", "packages": ["pandas==2.0.0"], "platform": "linux"}
    if random_seeds is not None:
        python_env["randomSeeds"] = random_seeds
    body: dict[str, Any] = {
        "checkpointId": checkpoint_id,
        "researchSessionID": "ses_test",
        "reportTitle": report_title,
        "runId": run_id,
        "stageId": stage_id,
        "status": status,
        "createdAt": created_at,
        "executionCount": 3,
        "notebook": {"path": f"notebooks/{report_title}.ipynb", "checkpointCellId": "cell-abc"},
        "pythonEnv": python_env,
        "artifacts": [a.model_dump(mode="json", by_alias=True) for a in (artifacts or [])],
        "rehydration": {"mode": "artifacts_only", "rehydrationCellSource": rehydration_cells or []},
    }
    body.update(overrides)
    return body


def write_manifest(paths: ProjectPaths, body: dict[str, Any], *, seal: bool = True) -> Path:
    """Write body as checkpoint.json at the location its identity fields name."""
    manifest_path = paths.manifest_path(body["reportTitle"], body["runId"], body["checkpointId"])
    manifest_path.parent.mkdir(parents=True, exist_ok=True)
    content = seal_manifest(body) if seal else body
    manifest_path.write_text(render_manifest(content), encoding="utf-8")
    return manifest_path


def read_manifest(path: Path) -> dict[str, Any]:
    data: dict[str, Any] = json.loads(path.read_text(encoding="utf-8"))
    return data
