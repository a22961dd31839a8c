"""Pure validation of checkpoint manifests.

validate_manifest() never raises for bad input and never touches the
filesystem: it maps a decoded JSON value to Ok(CheckpointManifest) or
Err(errors). Seal and artifact checks live in the manager because they need
the raw on-disk key order and the project tree.
"""

from typing import Any

from pydantic import ValidationError

from waypoint.contracts.checkpoint import CheckpointManifest
from waypoint.contracts.errors import ManifestValidationError
from waypoint.contracts.results import Err, Ok


def _format_error(error: Any) -> str:
    location = ".".join(str(part) for part in error["loc"]) or "manifest"
    return f"{location}: {error['msg']}"


def validate_manifest(candidate: Any) -> Ok[CheckpointManifest] | Err:
    """Validate a decoded manifest.

    Args:
        candidate: Value decoded from checkpoint.json (any JSON type)

    Returns:
        Ok with the frozen manifest, or Err with one message per problem
    """
    if not isinstance(candidate, dict):
        return Err(errors=(f"manifest: expected a JSON object, got {type(candidate).__name__}",))
    try:
        manifest = CheckpointManifest.model_validate(candidate)
    except ValidationError as e:
        return Err(errors=tuple(_format_error(err) for err in e.errors()))
    return Ok(manifest)


def parse_manifest(candidate: Any) -> CheckpointManifest:
    """Raising form of validate_manifest().

    Raises:
        ManifestValidationError: If the candidate is not a valid manifest
    """
    result = validate_manifest(candidate)
    if isinstance(result, Err):
        raise ManifestValidationError(result.errors)
    return result.value
