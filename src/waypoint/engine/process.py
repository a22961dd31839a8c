"""Platform process control for subprocess.Popen.

Escalation needs three graduated stop primitives. They map to platform
signals as follows:

    step        POSIX     Windows
    interrupt   SIGINT    CTRL_BREAK_EVENT (needs CREATE_NEW_PROCESS_GROUP)
    terminate   SIGTERM   TerminateProcess
    kill        SIGKILL   TerminateProcess

The implementation is chosen once, by process_control_for(), rather than
branching on the platform at every call site.
"""

import os
import signal
import subprocess

import structlog

from waypoint.contracts.errors import ProcessUnresponsiveError

logger = structlog.get_logger(__name__)


class _PopenControl:
    """Shared Popen plumbing: liveness, bounded waits, output collection."""

    def __init__(self, popen: subprocess.Popen[str]) -> None:
        self._popen = popen

    @property
    def pid(self) -> int:
        return self._popen.pid

    def is_alive(self) -> bool:
        return self._popen.poll() is None

    def wait(self, timeout_seconds: float) -> bool:
        try:
            self._popen.wait(timeout=max(0.0, timeout_seconds))
        except subprocess.TimeoutExpired:
            return False
        return True

    def terminate(self) -> None:
        try:
            self._popen.terminate()
        except ProcessLookupError:
            pass

    def kill(self) -> None:
        try:
            self._popen.kill()
        except ProcessLookupError:
            pass

    def collect_output(self) -> tuple[str | None, str | None]:
        """Drain remaining stdout/stderr of an exited process.

        Best-effort: returns (None, None) if the streams were not piped, the
        process is still running, or reading fails.
        """
        if self.is_alive():
            return None, None
        try:
            stdout, stderr = self._popen.communicate(timeout=1.0)
        except (subprocess.TimeoutExpired, ValueError, OSError) as e:
            logger.debug("partial_output_unavailable", pid=self.pid, error=str(e))
            return None, None
        return stdout, stderr


class PosixProcessControl(_PopenControl):
    """SIGINT / SIGTERM / SIGKILL."""

    def interrupt(self) -> None:
        try:
            self._popen.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return
        except OSError as e:
            raise ProcessUnresponsiveError(f"SIGINT to pid {self.pid} failed: {e}") from e


class WindowsProcessControl(_PopenControl):
    """CTRL_BREAK_EVENT, then TerminateProcess for both later steps."""

    def interrupt(self) -> None:
        ctrl_break = getattr(signal, "CTRL_BREAK_EVENT", None)
        if ctrl_break is None:
            raise ProcessUnresponsiveError("CTRL_BREAK_EVENT is not available on this platform")
        try:
            self._popen.send_signal(ctrl_break)
        except OSError as e:
            # Typically: the child was not started in its own process group
            raise ProcessUnresponsiveError(f"CTRL_BREAK to pid {self.pid} failed: {e}") from e


def process_control_for(popen: subprocess.Popen[str]) -> PosixProcessControl | WindowsProcessControl:
    """Select the process control implementation for this platform."""
    if os.name == "nt":
        return WindowsProcessControl(popen)
    return PosixProcessControl(popen)
