"""Filesystem-derived job status.

Status comes only from which files exist under ``work_root/<job_id>``, so it
can be queried from any process while a supervisor is running the job.
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any

from dftb.output_parser import OUTPUT_FILENAME
from .state_machine import load_job_state, read_events
from .supervisor import ERROR_FILENAME, RESPONSE_FILENAME, job_directory


class JobStatus(str, Enum):
    NOT_FOUND = "not_found"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


def job_status(work_root: str | Path, job_id: str) -> JobStatus:
    job_dir = job_directory(work_root, job_id)
    if not job_dir.is_dir():
        return JobStatus.NOT_FOUND
    if (job_dir / ERROR_FILENAME).exists():
        return JobStatus.ERROR
    if (job_dir / OUTPUT_FILENAME).exists():
        return JobStatus.COMPLETED
    return JobStatus.RUNNING


def job_details(work_root: str | Path, job_id: str) -> dict[str, Any]:
    """Status plus persisted state, error text, events and stored response."""
    status = job_status(work_root, job_id)
    details: dict[str, Any] = {"job_id": job_id, "status": status.value}
    if status is JobStatus.NOT_FOUND:
        return details

    job_dir = job_directory(work_root, job_id)
    details["job_dir"] = str(job_dir)

    record = load_job_state(job_dir)
    if record is not None:
        details["state"] = record.get("state")
        details["history"] = record.get("history", [])
        details["submitted_at"] = record.get("submitted_at")
        details["elapsed_seconds"] = record.get("elapsed_seconds")

    error_path = job_dir / ERROR_FILENAME
    if error_path.exists():
        try:
            details["error"] = error_path.read_text(encoding="utf-8", errors="replace").strip()
        except OSError:
            details["error"] = None

    details["event_count"] = len(read_events(job_dir))

    response_path = job_dir / RESPONSE_FILENAME
    if response_path.exists():
        try:
            details["response"] = json.loads(response_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            details["response"] = None
    return details
