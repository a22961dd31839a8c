"""Protocols for the collaborators this package drives but does not implement.

- ProcessControl: graduated stop primitives for a running process
- InterpreterSession: a persistent interpreter that executes code and can be stopped
- NotebookStore: append-only notebook cell storage
"""

from collections.abc import Callable, Mapping
from typing import Any, Protocol, runtime_checkable

from waypoint.contracts.stage import ExecutionOutput

# Called with (stdout_chunk, stderr_chunk) as output arrives
OutputCallback = Callable[[str, str], None]


@runtime_checkable
class ProcessControl(Protocol):
    """Capability interface for stopping a process.

    Implementations map the three steps to platform signals. Each method
    returns immediately; wait() is the only blocking call and it is always
    bounded by its timeout.
    """

    def is_alive(self) -> bool:
        """Whether the process is still running."""
        ...

    def interrupt(self) -> None:
        """Soft stop (SIGINT / CTRL_BREAK).

        Raises:
            ProcessUnresponsiveError: If the signal cannot be delivered
        """
        ...

    def terminate(self) -> None:
        """Polite termination (SIGTERM)."""
        ...

    def kill(self) -> None:
        """Forced termination (SIGKILL). Cannot be ignored by the process."""
        ...

    def wait(self, timeout_seconds: float) -> bool:
        """Wait up to timeout_seconds for exit.

        Returns:
            True if the process has exited
        """
        ...

    def collect_output(self) -> tuple[str | None, str | None]:
        """Return whatever stdout/stderr can still be read after exit."""
        ...


@runtime_checkable
class InterpreterSession(ProcessControl, Protocol):
    """A persistent interpreter process executing stage code."""

    def execute(self, code: str, *, on_output: OutputCallback | None = None) -> ExecutionOutput:
        """Run code to completion, streaming output through on_output."""
        ...


@runtime_checkable
class NotebookStore(Protocol):
    """Append-only notebook cell storage."""

    def append_cell(
        self,
        path: str,
        *,
        cell_type: str,
        source: list[str],
        metadata: Mapping[str, Any],
    ) -> str:
        """Append a cell and return its cell ID."""
        ...

    def read_cells(self, path: str) -> list[dict[str, Any]]:
        """Return the notebook's cells in order (empty if it does not exist)."""
        ...
