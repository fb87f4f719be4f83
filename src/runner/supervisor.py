"""Job supervision: admission, job directories and the DFTB+ subprocess."""

from __future__ import annotations

import logging
import os
import re
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from dftb.input_builder import EngineInput, write_engine_inputs
from dftb.output_parser import OUTPUT_FILENAME
from errors import (
    CapacityError,
    EngineExecutionError,
    EngineTimeoutError,
    EngineUnavailableError,
    InvalidTransitionError,
    JobIOError,
    ValidationError,
)
from job_logging import job_logger
from .process import STDERR_FILENAME, ProcessRunner, SubprocessRunner
from .state_machine import (
    JobState,
    append_event,
    new_job_state,
    save_job_state,
    transition,
)
from .types import JobStateRecord

if TYPE_CHECKING:
    from app_config import AppConfig

logger = logging.getLogger(__name__)

ERROR_FILENAME = "error.log"
OPTIMIZED_CIF_FILENAME = "optimized.cif"
RESPONSE_FILENAME = "response.json"

JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

_STDERR_TAIL_LINES = 20


def validate_job_id(job_id: str) -> str:
    if not isinstance(job_id, str) or not JOB_ID_PATTERN.match(job_id):
        raise ValidationError(
            f"invalid request id: {job_id!r} (letters, digits, '.', '_', '-'; max 128 chars)"
        )
    return job_id


def job_directory(work_root: str | Path, job_id: str) -> Path:
    return Path(work_root) / validate_job_id(job_id)


@dataclass
class Job:
    job_id: str
    job_dir: Path
    submitted_at: str
    method: str
    fmax: float
    timeout_seconds: float
    state: JobState = JobState.CREATED
    record: JobStateRecord = field(default_factory=dict, repr=False)
    holds_slot: bool = field(default=False, repr=False)

    @property
    def output_path(self) -> Path:
        return self.job_dir / OUTPUT_FILENAME


class AdmissionController:
    """Bound the number of concurrently admitted jobs; excess is rejected."""

    def __init__(self, max_requests: int) -> None:
        if int(max_requests) < 1:
            raise ValueError("max_requests must be >= 1")
        self.max_requests = int(max_requests)
        self._active = 0
        self._lock = threading.Lock()

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    def try_acquire(self) -> None:
        with self._lock:
            if self._active >= self.max_requests:
                raise CapacityError(
                    f"server at capacity ({self.max_requests} concurrent jobs); try again later"
                )
            self._active += 1

    def release(self) -> None:
        with self._lock:
            if self._active > 0:
                self._active -= 1


class JobSupervisor:
    """Own ``work_root/<job_id>`` directories and run DFTB+ inside them."""

    def __init__(
        self,
        work_root: str | Path,
        engine_path: str = "dftb+",
        *,
        timeout_seconds: float = 300.0,
        max_requests: int = 10,
        runner: ProcessRunner | None = None,
        admission: AdmissionController | None = None,
        kill_grace_seconds: float = 10.0,
    ) -> None:
        if not timeout_seconds > 0:
            raise ValueError("timeout_seconds must be > 0")
        self.work_root = Path(work_root)
        self.engine_path = engine_path
        self.timeout_seconds = float(timeout_seconds)
        self.runner = runner or SubprocessRunner(kill_grace_seconds=kill_grace_seconds)
        self.admission = admission or AdmissionController(max_requests)
        self._engine_command: str | None = None

    @classmethod
    def from_config(
        cls, config: "AppConfig", runner: ProcessRunner | None = None
    ) -> "JobSupervisor":
        runtime = config.runtime
        return cls(
            runtime.work_root,
            runtime.engine_path,
            timeout_seconds=runtime.timeout_seconds,
            max_requests=runtime.max_requests,
            runner=runner,
            kill_grace_seconds=runtime.kill_grace_seconds,
        )

    def job_dir(self, job_id: str) -> Path:
        return job_directory(self.work_root, job_id)

    def ensure_engine_available(self) -> str:
        """Resolve the engine executable, caching the result.

        Raises:
            EngineUnavailableError: If the path does not exist or is not on PATH.
        """
        if self._engine_command is not None:
            return self._engine_command
        resolved = resolve_engine_path(self.engine_path)
        if resolved is None:
            raise EngineUnavailableError(f"DFTB+ executable not found at {self.engine_path}")
        self._engine_command = resolved
        logger.debug("Using DFTB+ executable %s", resolved)
        return resolved

    def start_job(self, job_id: str, engine_input: EngineInput) -> Job:
        """Admit the job, create its directory and write the input files.

        Raises:
            CapacityError: If the admission limit is reached.
            JobIOError: If the directory already exists or cannot be written.
        """
        job_dir = self.job_dir(job_id)
        self.ensure_engine_available()
        self.admission.try_acquire()
        try:
            job = self._create_job(job_id, job_dir, engine_input)
            try:
                write_engine_inputs(job_dir, engine_input)
            except JobIOError as exc:
                self._finish_unsuccessful(job, JobState.FAILED, str(exc))
                raise
        except BaseException:
            self.admission.release()
            raise
        job.holds_slot = True
        job_logger(logger, job_id).info(
            "Job created in %s (method=%s, fmax=%s)", job_dir, engine_input.method, engine_input.fmax
        )
        return job

    def wait_job(self, job: Job) -> Job:
        """Run the engine for a created job and wait for a terminal state.

        Raises:
            EngineExecutionError: Nonzero exit, launch failure or missing output.
            EngineTimeoutError: The wall-clock limit expired.
        """
        log = job_logger(logger, job.job_id)
        try:
            if job.state is not JobState.CREATED:
                raise InvalidTransitionError(
                    f"job {job.job_id}: cannot run from state {job.state.value}"
                )
            command = self.ensure_engine_available()
            self._advance(job, JobState.RUNNING, "engine launched")
            log.info("Running DFTB+ (timeout=%ss)", job.timeout_seconds)
            try:
                outcome = self.runner.run([command], job.job_dir, job.timeout_seconds)
            except OSError as exc:
                message = f"failed to launch DFTB+: {exc}"
                log.error("%s", message)
                self._finish_unsuccessful(job, JobState.FAILED, message)
                raise EngineExecutionError(message) from exc
            except KeyboardInterrupt:
                log.warning("Interrupted; engine stopped")
                self._finish_unsuccessful(job, JobState.FAILED, "calculation interrupted")
                raise

            job.record["pid"] = outcome.pid
            job.record["returncode"] = outcome.returncode
            job.record["elapsed_seconds"] = round(outcome.elapsed_seconds, 3)

            if outcome.timed_out:
                error = EngineTimeoutError(job.timeout_seconds)
                log.warning("Timed out after %.1fs; process terminated", outcome.elapsed_seconds)
                self._finish_unsuccessful(job, JobState.TIMED_OUT, str(error))
                raise error
            if outcome.returncode != 0:
                message = f"DFTB+ execution failed with exit code {outcome.returncode}"
                tail = _stderr_tail(job.job_dir)
                if tail:
                    message = f"{message}: {tail}"
                log.error("%s", message)
                self._finish_unsuccessful(job, JobState.FAILED, message)
                raise EngineExecutionError(message)
            if not job.output_path.exists():
                message = f"DFTB+ output file not found: {OUTPUT_FILENAME}"
                log.error("%s", message)
                self._finish_unsuccessful(job, JobState.FAILED, message)
                raise EngineExecutionError(message)

            self._advance(job, JobState.COMPLETED, "engine exited 0")
            log.info("Completed in %.1fs", outcome.elapsed_seconds)
            return job
        finally:
            if job.holds_slot:
                job.holds_slot = False
                self.admission.release()

    def run_job(self, job_id: str, engine_input: EngineInput) -> Job:
        return self.wait_job(self.start_job(job_id, engine_input))

    def mark_error(self, job_id: str, message: str) -> Path:
        """Write the error marker for a failure after the engine finished."""
        job_dir = self.job_dir(job_id)
        if not job_dir.is_dir():
            raise JobIOError(f"job directory does not exist: {job_dir}")
        path = _write_error_marker(job_dir, message)
        append_event(job_dir, "error", message=message)
        job_logger(logger, job_id).error("%s", message)
        return path

    def _create_job(self, job_id: str, job_dir: Path, engine_input: EngineInput) -> Job:
        try:
            self.work_root.mkdir(parents=True, exist_ok=True)
            job_dir.mkdir()
        except FileExistsError as exc:
            raise JobIOError(f"job directory already exists: {job_dir}") from exc
        except OSError as exc:
            raise JobIOError(f"failed to create job directory {job_dir}: {exc}") from exc

        record = new_job_state(
            job_id,
            job_dir,
            method=engine_input.method,
            fmax=engine_input.fmax,
            timeout_seconds=self.timeout_seconds,
        )
        try:
            save_job_state(job_dir, record)
            append_event(job_dir, "created", method=engine_input.method, fmax=engine_input.fmax)
        except JobIOError as exc:
            try:
                _write_error_marker(job_dir, str(exc))
            except JobIOError as marker_exc:
                job_logger(logger, job_id).error("Could not write error marker: %s", marker_exc)
            raise
        return Job(
            job_id=job_id,
            job_dir=job_dir,
            submitted_at=record["submitted_at"],
            method=engine_input.method,
            fmax=engine_input.fmax,
            timeout_seconds=self.timeout_seconds,
            record=record,
        )

    def _advance(self, job: Job, target: JobState, reason: str) -> None:
        transition(job.record, target, reason)
        job.state = target
        save_job_state(job.job_dir, job.record)
        append_event(job.job_dir, "state_changed", state=target.value, reason=reason)

    def _finish_unsuccessful(self, job: Job, target: JobState, message: str) -> None:
        _write_error_marker(job.job_dir, message)
        job.record["error"] = message
        self._advance(job, target, message)


def resolve_engine_path(engine_path: str) -> str | None:
    """Absolute/relative paths must exist and be executable; bare names use PATH."""
    if not engine_path:
        return None
    if os.sep in engine_path or (os.altsep and os.altsep in engine_path):
        candidate = Path(engine_path).expanduser()
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate.resolve())
        return None
    return shutil.which(engine_path)


def _write_error_marker(job_dir: Path, message: str) -> Path:
    path = job_dir / ERROR_FILENAME
    try:
        path.write_text(message.rstrip("\n") + "\n", encoding="utf-8")
    except OSError as exc:
        raise JobIOError(f"failed to write error marker {path}: {exc}") from exc
    return path


def _stderr_tail(job_dir: Path) -> str:
    path = job_dir / STDERR_FILENAME
    try:
        lines = path.read_text(encoding="utf-8", errors="replace").strip().splitlines()
    except OSError:
        return ""
    return "\n".join(lines[-_STDERR_TAIL_LINES:])
