# src/waypoint/core/canonical.py
"""
Hashing for checkpoint integrity.

Three kinds of hash live here:

1. Manifest seal: SHA-256 of the manifest body in its on-disk layout
   (two-space indented JSON, keys in stored order, manifestSha256 removed).
   The layout matches JSON.stringify(body, null, 2) so manifests written by
   earlier tooling stay verifiable.
2. Artifact hash: SHA-256 of a file's bytes, streamed in 8 KiB chunks.
3. Stable hash: SHA-256 of RFC 8785 canonical JSON, for comparing structured
   values (environment fingerprints) independent of key order.

NaN and Infinity have no JSON form and are rejected by all three.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import math
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import rfc8785
from pydantic import BaseModel

SEAL_FIELD = "manifestSha256"

_CHUNK_SIZE = 8192


def _jsonable(value: Any) -> Any:
    """Reduce value to the JSON types rfc8785 accepts.

    Models dump by alias, so a fingerprint of PythonEnvMetadata uses the
    same field names as checkpoint.json. Datetimes become UTC ISO strings;
    naive ones are taken to be UTC already.
    """
    if isinstance(value, BaseModel):
        return _jsonable(value.model_dump(mode="json", by_alias=True, exclude_none=True))
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_jsonable(v) for v in value]
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"Cannot hash non-finite float {value!r}; record missing values as None")
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat()
    if isinstance(value, Path):
        return value.as_posix()
    return value


def canonical_json(obj: Any) -> str:
    """Produce canonical JSON (RFC 8785/JCS) for hashing.

    Raises:
        ValueError: If data contains NaN or Infinity
        TypeError: If data contains types that cannot be serialized
    """
    result: bytes = rfc8785.dumps(_jsonable(obj))
    return result.decode("utf-8")


def stable_hash(obj: Any) -> str:
    """SHA-256 hex digest of canonical_json(obj)."""
    return hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()


# =============================================================================
# Manifest seal
# =============================================================================


def manifest_body(manifest: Mapping[str, Any]) -> dict[str, Any]:
    """Return the sealed portion of a manifest: everything except the seal itself."""
    return {k: v for k, v in manifest.items() if k != SEAL_FIELD}


def render_manifest(manifest: Mapping[str, Any]) -> str:
    """Serialize a manifest in its on-disk layout (UTF-8, two-space indent)."""
    return json.dumps(manifest, indent=2, ensure_ascii=False, allow_nan=False)


def compute_manifest_sha256(manifest: Mapping[str, Any]) -> str:
    """Compute the seal over a manifest body.

    Key order matters: the body is hashed exactly as it is (or will be)
    stored. Callers verifying a manifest read from disk must pass the dict
    as parsed, not a re-serialized model.
    """
    rendered = render_manifest(manifest_body(manifest))
    return hashlib.sha256(rendered.encode("utf-8")).hexdigest()


def seal_manifest(body: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of body with manifestSha256 appended as the last key."""
    sealed = manifest_body(body)
    sealed[SEAL_FIELD] = compute_manifest_sha256(sealed)
    return sealed


def verify_manifest_seal(manifest: Mapping[str, Any]) -> bool:
    """Whether the stored seal matches the body.

    Uses timing-safe comparison, same as artifact verification.
    """
    stored = manifest.get(SEAL_FIELD)
    if not isinstance(stored, str):
        return False
    return hmac.compare_digest(stored, compute_manifest_sha256(manifest))


# =============================================================================
# Artifacts
# =============================================================================


def file_sha256(path: Path) -> str:
    """Compute SHA-256 of a file's contents without loading it whole."""
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def digests_match(expected: str, actual: str) -> bool:
    """Timing-safe digest comparison."""
    return hmac.compare_digest(expected, actual)
