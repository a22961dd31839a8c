"""Lifecycle marker emission and recognition.

Markers are single lines in interpreter output that external tooling parses:

    [STAGE:begin:id=S02_eda_analysis] Starting exploratory analysis
    [STAGE:end:id=S02_eda_analysis:duration=45s] Complete
    [CHECKPOINT:saved:id=ckpt-001:stage=S02_eda_analysis:runId=run-001]
    [CHECKPOINT:emergency:id=ckpt-002:reason=timeout]
    [REHYDRATED:from=ckpt-001] Session restored from checkpoint

Only the three workflow marker kinds are handled here. Attribute values must
not contain ':' or ']' since those delimit the marker.
"""

import re
from collections.abc import Iterator
from dataclasses import dataclass, field

from waypoint.contracts.enums import MarkerKind

STAGE_SUBTYPES = frozenset({"begin", "end", "progress"})
CHECKPOINT_SUBTYPES = frozenset({"saved", "begin", "end", "emergency"})

_MARKER_PATTERN = re.compile(r"^\s*\[(STAGE|CHECKPOINT|REHYDRATED)((?::[^\]:]+)*)\]\s?(.*)$")
_FORBIDDEN_IN_VALUE = re.compile(r"[:\]\n]")


@dataclass(frozen=True)
class Marker:
    """A parsed workflow marker line."""

    kind: MarkerKind
    subtype: str | None
    attributes: dict[str, str] = field(default_factory=dict)
    content: str = ""


def _render(kind: MarkerKind, subtype: str | None, attributes: dict[str, object], message: str | None) -> str:
    parts = [kind.value]
    if subtype is not None:
        parts.append(subtype)
    for key, value in attributes.items():
        if value is None:
            continue
        text = str(value)
        if _FORBIDDEN_IN_VALUE.search(text):
            raise ValueError(f"Marker attribute {key}={text!r} contains ':' or ']'")
        parts.append(f"{key}={text}")
    line = "[" + ":".join(parts) + "]"
    return f"{line} {message}" if message else line


def stage_marker(subtype: str, stage_id: str, message: str | None = None, **attributes: object) -> str:
    """Render a STAGE marker line."""
    if subtype not in STAGE_SUBTYPES:
        raise ValueError(f"Unknown STAGE marker subtype {subtype!r}")
    return _render(MarkerKind.STAGE, subtype, {"id": stage_id, **attributes}, message)


def checkpoint_marker(subtype: str, checkpoint_id: str, message: str | None = None, **attributes: object) -> str:
    """Render a CHECKPOINT marker line."""
    if subtype not in CHECKPOINT_SUBTYPES:
        raise ValueError(f"Unknown CHECKPOINT marker subtype {subtype!r}")
    return _render(MarkerKind.CHECKPOINT, subtype, {"id": checkpoint_id, **attributes}, message)


def rehydrated_marker(checkpoint_id: str) -> str:
    """Render the REHYDRATED marker printed by generated rehydration code."""
    return _render(MarkerKind.REHYDRATED, None, {"from": checkpoint_id}, None)


def parse_marker(line: str) -> Marker | None:
    """Parse one line; None if it is not a workflow marker."""
    match = _MARKER_PATTERN.match(line)
    if match is None:
        return None

    kind = MarkerKind(match.group(1))
    segments = [s for s in match.group(2).split(":") if s]
    subtype: str | None = None
    attributes: dict[str, str] = {}
    for index, segment in enumerate(segments):
        if "=" in segment:
            key, _, value = segment.partition("=")
            attributes[key] = value
        elif index == 0:
            subtype = segment
    return Marker(kind=kind, subtype=subtype, attributes=attributes, content=match.group(3).strip())


def iter_markers(text: str) -> Iterator[Marker]:
    """Yield every workflow marker in multi-line output."""
    for line in text.splitlines():
        marker = parse_marker(line)
        if marker is not None:
            yield marker


def find_rehydrated(text: str) -> str | None:
    """Checkpoint ID from the last REHYDRATED marker in text, if any."""
    found: str | None = None
    for marker in iter_markers(text):
        if marker.kind == MarkerKind.REHYDRATED and "from" in marker.attributes:
            found = marker.attributes["from"]
    return found
