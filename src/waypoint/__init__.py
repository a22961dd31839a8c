"""
Waypoint: crash-recoverable checkpoints and stage supervision for research runs.

Long data-analysis runs execute as bounded stages inside a persistent
interpreter session. Waypoint records integrity-sealed checkpoints at stage
boundaries, stops runaway stages through graduated signal escalation, and
resumes a run from its latest valid checkpoint after a crash.
"""

__version__ = "0.1.0"
