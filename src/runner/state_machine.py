"""Job state machine and persistence for dftbopt.

Each job directory carries ``job_state.json`` (current state plus transition
history, rewritten atomically) and ``job_events.jsonl`` (append-only event
log). The status registry never reads these; they are the detailed record.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from errors import InvalidTransitionError, JobIOError
from .types import JobStateRecord

STATE_FILE = "job_state.json"
EVENTS_FILE = "job_events.jsonl"


class JobState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.TIMED_OUT})

_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.CREATED: frozenset({JobState.RUNNING, JobState.FAILED}),
    JobState.RUNNING: frozenset({JobState.COMPLETED, JobState.FAILED, JobState.TIMED_OUT}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.TIMED_OUT: frozenset(),
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def can_transition(current: JobState, target: JobState) -> bool:
    return target in _TRANSITIONS[JobState(current)]


def new_job_state(
    job_id: str,
    job_dir: str | Path,
    *,
    method: str,
    fmax: float,
    timeout_seconds: float,
    submitted_at: str | None = None,
) -> JobStateRecord:
    """Create a fresh record in the ``created`` state."""
    stamp = submitted_at or _now_iso()
    return {
        "job_id": job_id,
        "job_dir": str(job_dir),
        "method": method,
        "fmax": float(fmax),
        "timeout_seconds": float(timeout_seconds),
        "state": JobState.CREATED.value,
        "submitted_at": stamp,
        "updated_at": stamp,
        "history": [{"state": JobState.CREATED.value, "at": stamp, "reason": ""}],
        "pid": None,
        "returncode": None,
        "elapsed_seconds": None,
        "error": None,
    }


def transition(record: JobStateRecord, target: JobState, reason: str = "") -> JobStateRecord:
    """Move ``record`` to ``target``, appending to its history.

    Raises:
        InvalidTransitionError: If the move is not allowed from the current state.
    """
    current = JobState(record.get("state", JobState.CREATED.value))
    target = JobState(target)
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"job {record.get('job_id', '?')}: cannot transition {current.value} -> {target.value}"
        )
    stamp = _now_iso()
    record["state"] = target.value
    record["updated_at"] = stamp
    history = record.get("history")
    if not isinstance(history, list):
        history = []
        record["history"] = history
    history.append({"state": target.value, "at": stamp, "reason": reason})
    return record


def load_job_state(job_dir: str | Path) -> JobStateRecord | None:
    """Load ``job_state.json``; ``None`` when missing or unreadable."""
    state_path = Path(job_dir) / STATE_FILE
    if not state_path.exists():
        return None
    try:
        with state_path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def save_job_state(job_dir: str | Path, record: JobStateRecord) -> None:
    """Persist the job record atomically (tmp + fsync + rename)."""
    state_path = os.path.join(str(job_dir), STATE_FILE)
    tmp_path = state_path + ".tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(record, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, state_path)
    except OSError as exc:
        raise JobIOError(f"failed to save job state in {job_dir}: {exc}") from exc


def append_event(job_dir: str | Path, event: str, **fields: Any) -> dict[str, Any]:
    """Append one JSON line to ``job_events.jsonl`` and return it."""
    entry: dict[str, Any] = {"at": _now_iso(), "event": event}
    entry.update(fields)
    events_path = Path(job_dir) / EVENTS_FILE
    try:
        with events_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")
            f.flush()
            os.fsync(f.fileno())
    except OSError as exc:
        raise JobIOError(f"failed to append event to {events_path}: {exc}") from exc
    return entry


def read_events(job_dir: str | Path) -> list[dict[str, Any]]:
    """Read the event log, skipping lines that are not valid JSON objects."""
    events_path = Path(job_dir) / EVENTS_FILE
    if not events_path.exists():
        return []
    events: list[dict[str, Any]] = []
    with events_path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                item = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(item, dict):
                events.append(item)
    return events
