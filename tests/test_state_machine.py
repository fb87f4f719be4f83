from __future__ import annotations

import json
from pathlib import Path

import pytest

from errors import InvalidTransitionError
from runner.state_machine import (
    EVENTS_FILE,
    STATE_FILE,
    JobState,
    append_event,
    can_transition,
    load_job_state,
    new_job_state,
    read_events,
    save_job_state,
    transition,
)


def _record(tmp_path: Path):
    return new_job_state("job-1", tmp_path, method="GFN1-xTB", fmax=0.1, timeout_seconds=60)


def test_allowed_transitions() -> None:
    assert can_transition(JobState.CREATED, JobState.RUNNING)
    assert can_transition(JobState.CREATED, JobState.FAILED)
    assert can_transition(JobState.RUNNING, JobState.TIMED_OUT)
    assert not can_transition(JobState.CREATED, JobState.COMPLETED)
    assert not can_transition(JobState.COMPLETED, JobState.RUNNING)
    assert not can_transition(JobState.TIMED_OUT, JobState.FAILED)
    assert JobState.FAILED.is_terminal
    assert not JobState.RUNNING.is_terminal


def test_transition_appends_history(tmp_path: Path) -> None:
    record = _record(tmp_path)

    transition(record, JobState.RUNNING, "engine launched")
    transition(record, JobState.COMPLETED)

    assert record["state"] == "completed"
    assert [item["state"] for item in record["history"]] == ["created", "running", "completed"]
    assert record["history"][1]["reason"] == "engine launched"


def test_illegal_transition_raises(tmp_path: Path) -> None:
    record = _record(tmp_path)
    transition(record, JobState.RUNNING)
    transition(record, JobState.TIMED_OUT)

    with pytest.raises(InvalidTransitionError, match="timed_out -> completed"):
        transition(record, JobState.COMPLETED)
    assert record["state"] == "timed_out"


def test_save_and_load_job_state(tmp_path: Path) -> None:
    record = _record(tmp_path)

    save_job_state(tmp_path, record)

    assert load_job_state(tmp_path) == record
    assert not (tmp_path / (STATE_FILE + ".tmp")).exists()


def test_load_job_state_missing_or_corrupt(tmp_path: Path) -> None:
    assert load_job_state(tmp_path) is None
    (tmp_path / STATE_FILE).write_text("{not json", encoding="utf-8")
    assert load_job_state(tmp_path) is None


def test_event_log_is_append_only(tmp_path: Path) -> None:
    append_event(tmp_path, "created", method="GFN1-xTB")
    append_event(tmp_path, "state_changed", state="running")
    with (tmp_path / EVENTS_FILE).open("a", encoding="utf-8") as f:
        f.write("garbage\n")

    events = read_events(tmp_path)

    assert [event["event"] for event in events] == ["created", "state_changed"]
    assert events[0]["method"] == "GFN1-xTB"
    lines = (tmp_path / EVENTS_FILE).read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[1])["state"] == "running"
