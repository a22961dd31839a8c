# tests/property/conftest.py
"""Shared Hypothesis strategies for property-based tests.

Strategy Categories:
- JSON-safe values (what json.dumps accepts without allow_nan)
- Identifiers (path segments, stage IDs)
- Manifest bodies (valid checkpoint.json content)

Usage:
    from tests.property.conftest import manifest_bodies, stage_ids

    @given(body=manifest_bodies())
    def test_seal_verifies(body: dict) -> None:
        ...
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from hypothesis import strategies as st

# =============================================================================
# Core JSON Strategies
# =============================================================================

# NaN and Infinity are rejected by the manifest renderer
json_primitives = (
    st.none()
    | st.booleans()
    | st.integers(min_value=-(2**53 - 1), max_value=2**53 - 1)
    | st.floats(allow_nan=False, allow_infinity=False)
    | st.text(max_size=40)
)

json_values = st.recursive(
    json_primitives,
    lambda children: st.lists(children, max_size=4) | st.dictionaries(st.text(max_size=10), children, max_size=4),
    max_leaves=15,
)

json_objects = st.dictionaries(st.text(min_size=1, max_size=12), json_values, min_size=1, max_size=8)

# =============================================================================
# Identifiers
# =============================================================================

path_segments = st.from_regex(r"\A[A-Za-z0-9][A-Za-z0-9._-]{0,20}\Z")

_words = st.from_regex(r"\A[a-z][a-z0-9]{0,8}\Z")


@st.composite
def stage_ids(draw: st.DrawFn, sequence: st.SearchStrategy[int] | None = None) -> str:
    number = draw(sequence if sequence is not None else st.integers(min_value=0, max_value=99))
    verb = draw(_words)
    noun = draw(st.lists(_words, min_size=1, max_size=3))
    return f"S{number:02d}_{verb}_{'_'.join(noun)}"


# =============================================================================
# Manifests
# =============================================================================


@st.composite
def manifest_bodies(draw: st.DrawFn) -> dict[str, Any]:
    """Unsealed manifest bodies that pass schema validation."""
    report_title = draw(path_segments)
    seeds = draw(st.none() | st.dictionaries(st.sampled_from(["random", "numpy", "torch"]), st.integers(0, 2**32 - 1)))
    python_env: dict[str, Any] = {
        "pythonPath": draw(st.text(min_size=1, max_size=30)),
        "packages": draw(st.lists(st.text(min_size=1, max_size=20), max_size=5)),
        "platform": draw(st.sampled_from(["linux", "darwin", "win32"])),
    }
    if seeds is not None:
        python_env["randomSeeds"] = seeds
    return {
        "checkpointId": draw(path_segments),
        "researchSessionID": draw(st.text(max_size=20)),
        "reportTitle": report_title,
        "runId": draw(path_segments),
        "stageId": draw(stage_ids()),
        "status": "saved",
        "createdAt": draw(st.datetimes(min_value=datetime(2000, 1, 1), max_value=datetime(2100, 1, 1), timezones=st.just(UTC))).isoformat(),
        "executionCount": draw(st.integers(min_value=0, max_value=10_000)),
        "notebook": {"path": f"notebooks/{report_title}.ipynb", "checkpointCellId": draw(st.text(max_size=16))},
        "pythonEnv": python_env,
        "artifacts": [],
        "rehydration": {"mode": "artifacts_only", "rehydrationCellSource": draw(st.lists(st.text(max_size=40), max_size=5))},
        "manifestVersion": 1,
    }
