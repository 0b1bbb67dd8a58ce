"""Background task handle and liveness-polling progress indicator."""

from __future__ import annotations

import subprocess
import sys
import tempfile
import time
from enum import Enum
from typing import TYPE_CHECKING, Optional, Sequence, TextIO

from nixos_provisioner.logging import LoggerFactory

if TYPE_CHECKING:
    from nixos_provisioner.app.context import ExecutionContext


log = LoggerFactory.for_system()

POLL_INTERVAL_SECONDS = 0.15
SPINNER_FRAMES = ["|", "/", "-", "\\"]
SUCCESS_GLYPH = "✓"
FAILURE_GLYPH = "❌"


class TaskStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class BackgroundTask:
    """A detached child process whose combined output is spooled to a file.

    The status channel is :meth:`poll`; callers observe it without touching
    the process itself.
    """

    def __init__(self, command: Sequence[str], cwd: Optional[str] = None):
        self.command = [str(part) for part in command]
        self.cwd = cwd
        self.returncode: Optional[int] = None
        self._process: Optional[subprocess.Popen] = None
        self._output = tempfile.TemporaryFile(mode="w+", encoding="utf-8")
        self._status = TaskStatus.PENDING

    @property
    def status(self) -> TaskStatus:
        return self._status

    def start(self) -> BackgroundTask:
        """Launch the child process.

        Raises:
            OSError: If the executable cannot be started
        """
        log.debug(f"Starting background task: {' '.join(self.command)}")
        self._process = subprocess.Popen(
            self.command,
            cwd=self.cwd,
            stdout=self._output,
            stderr=subprocess.STDOUT,
            text=True,
        )
        self._status = TaskStatus.RUNNING
        return self

    def poll(self) -> TaskStatus:
        if self._process is None or self._status is not TaskStatus.RUNNING:
            return self._status
        returncode = self._process.poll()
        if returncode is not None:
            self._finish(returncode)
        return self._status

    def wait(self) -> TaskStatus:
        if self._process is not None and self._status is TaskStatus.RUNNING:
            self._finish(self._process.wait())
        return self._status

    def terminate(self) -> None:
        if self._process is not None and self._process.poll() is None:
            self._process.terminate()
            self._process.wait()
        self._status = TaskStatus.FAILED

    def output(self) -> str:
        self._output.flush()
        self._output.seek(0)
        return self._output.read()

    def close(self) -> None:
        """Release the output spool, terminating the child if it still runs."""
        if self._status is TaskStatus.RUNNING:
            self.terminate()
        self._output.close()

    def _finish(self, returncode: int) -> None:
        self.returncode = returncode
        self._status = TaskStatus.SUCCEEDED if returncode == 0 else TaskStatus.FAILED
        log.debug(f"Background task exited with return code {returncode}")


def track_progress(
    ctx: ExecutionContext,
    task: BackgroundTask,
    label: str,
    *,
    stream: Optional[TextIO] = None,
    interval: float = POLL_INTERVAL_SECONDS,
) -> TaskStatus:
    """Animate a spinner while ``task`` runs, then print a result glyph.

    Polling only drives the animation; the returned status is whatever the
    task itself reports. An interrupt terminates the task and propagates.
    """
    stream = stream or sys.stderr
    show = not ctx.quiet
    spinner_index = 0
    try:
        while task.poll() is TaskStatus.RUNNING:
            if show:
                stream.write(f"\r{SPINNER_FRAMES[spinner_index]} {label}")
                stream.flush()
            spinner_index = (spinner_index + 1) % len(SPINNER_FRAMES)
            time.sleep(interval)
    except KeyboardInterrupt:
        task.terminate()
        raise
    status = task.wait()
    if show:
        glyph = SUCCESS_GLYPH if status is TaskStatus.SUCCEEDED else FAILURE_GLYPH
        stream.write(f"\r{glyph} {label}\n")
        stream.flush()
    return status
