from __future__ import annotations

import json
from pathlib import Path

import pytest

from errors import ValidationError
from runner.state_machine import append_event, new_job_state, save_job_state
from runner.status import JobStatus, job_details, job_status


def test_status_is_derived_from_files(tmp_path: Path) -> None:
    assert job_status(tmp_path, "abc") is JobStatus.NOT_FOUND

    job_dir = tmp_path / "abc"
    job_dir.mkdir()
    assert job_status(tmp_path, "abc") is JobStatus.RUNNING

    (job_dir / "dftb_out.hsd").write_text("Total energy: -1.0 H\n", encoding="utf-8")
    assert job_status(tmp_path, "abc") is JobStatus.COMPLETED

    (job_dir / "error.log").write_text("failed to process DFTB+ output\n", encoding="utf-8")
    assert job_status(tmp_path, "abc") is JobStatus.ERROR


def test_status_rejects_path_like_ids(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        job_status(tmp_path, "../etc")


def test_job_details_not_found(tmp_path: Path) -> None:
    assert job_details(tmp_path, "missing") == {"job_id": "missing", "status": "not_found"}


def test_job_details_includes_state_error_and_response(tmp_path: Path) -> None:
    job_dir = tmp_path / "job-1"
    job_dir.mkdir()
    record = new_job_state("job-1", job_dir, method="GFN2-xTB", fmax=0.05, timeout_seconds=10)
    save_job_state(job_dir, record)
    append_event(job_dir, "created")
    (job_dir / "error.log").write_text("DFTB+ calculation timed out after 10 seconds\n", encoding="utf-8")
    (job_dir / "response.json").write_text(
        json.dumps({"status": "error", "request_id": "job-1"}), encoding="utf-8"
    )

    details = job_details(tmp_path, "job-1")

    assert details["status"] == "error"
    assert details["state"] == "created"
    assert details["error"] == "DFTB+ calculation timed out after 10 seconds"
    assert details["event_count"] == 1
    assert details["response"]["request_id"] == "job-1"
    assert details["history"][0]["state"] == "created"
