"""Checkpoint subsystem for crash recovery.

Provides:
- CheckpointManager: save, list, validate, resume, prune and emergency checkpoints
- validate_manifest/parse_manifest: Pure schema validation of checkpoint.json
- generate_rehydration_code: Python source that reloads a checkpoint's state
"""

from waypoint.core.checkpoint.manager import CheckpointManager, current_python_env
from waypoint.core.checkpoint.rehydration import generate_rehydration_code
from waypoint.core.checkpoint.validation import parse_manifest, validate_manifest

__all__ = [
    "CheckpointManager",
    "current_python_env",
    "generate_rehydration_code",
    "parse_manifest",
    "validate_manifest",
]
