"""Launch the DFTB+ engine as a subprocess with a wall-clock limit."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

logger = logging.getLogger(__name__)

STDOUT_FILENAME = "engine.stdout"
STDERR_FILENAME = "engine.stderr"


@dataclass(frozen=True)
class ProcessOutcome:
    returncode: int | None
    timed_out: bool
    elapsed_seconds: float
    pid: int | None = None


class ProcessRunner(Protocol):
    def run(self, command: Sequence[str], cwd: Path, timeout: float) -> ProcessOutcome: ...


class SubprocessRunner:
    """Run a command in ``cwd`` with stdout/stderr captured to files.

    On timeout the process group gets SIGTERM, then SIGKILL after
    ``kill_grace_seconds``; the child is always reaped before returning.
    """

    def __init__(self, kill_grace_seconds: float = 10.0) -> None:
        self.kill_grace_seconds = max(0.0, float(kill_grace_seconds))

    def run(self, command: Sequence[str], cwd: Path, timeout: float) -> ProcessOutcome:
        cwd = Path(cwd)
        started = time.monotonic()
        with open(cwd / STDOUT_FILENAME, "wb") as stdout_f, open(
            cwd / STDERR_FILENAME, "wb"
        ) as stderr_f:
            process = subprocess.Popen(
                list(command),
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                stdout=stdout_f,
                stderr=stderr_f,
                start_new_session=os.name == "posix",
            )
            logger.debug("Started %s (pid=%s) in %s", command[0], process.pid, cwd)
            try:
                returncode = process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                self._stop(process)
                return ProcessOutcome(
                    returncode=process.returncode,
                    timed_out=True,
                    elapsed_seconds=time.monotonic() - started,
                    pid=process.pid,
                )
            except BaseException:
                self._stop(process)
                raise
        return ProcessOutcome(
            returncode=returncode,
            timed_out=False,
            elapsed_seconds=time.monotonic() - started,
            pid=process.pid,
        )

    def _signal(self, process: subprocess.Popen, sig: int) -> None:
        try:
            if os.name == "posix":
                os.killpg(process.pid, sig)
            elif sig == signal.SIGTERM:
                process.terminate()
            else:
                process.kill()
        except ProcessLookupError:
            pass

    def _stop(self, process: subprocess.Popen) -> None:
        logger.warning("Terminating pid %s", process.pid)
        self._signal(process, signal.SIGTERM)
        try:
            process.wait(timeout=self.kill_grace_seconds)
            return
        except subprocess.TimeoutExpired:
            pass
        logger.warning("Killing pid %s after %.1fs grace period", process.pid, self.kill_grace_seconds)
        self._signal(process, getattr(signal, "SIGKILL", signal.SIGTERM))
        process.wait()
