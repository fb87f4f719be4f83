from __future__ import annotations

import os
import time
from pathlib import Path

import pytest

from organizer.retention import execute_retention_sweep, plan_retention_sweep
from runner.state_machine import new_job_state, save_job_state


def _make_job(root: Path, name: str, age_seconds: float, now: float) -> Path:
    job_dir = root / name
    job_dir.mkdir(parents=True)
    save_job_state(
        job_dir,
        new_job_state(name, job_dir, method="GFN1-xTB", fmax=0.1, timeout_seconds=60),
    )
    (job_dir / "dftb_out.hsd").write_text("x" * 100, encoding="utf-8")
    stamp = now - age_seconds
    for path in [*job_dir.iterdir(), job_dir]:
        os.utime(path, (stamp, stamp))
    return job_dir


def test_plan_selects_only_old_directories(tmp_path: Path) -> None:
    now = time.time()
    old = _make_job(tmp_path, "old-job", 10_000, now)
    _make_job(tmp_path, "new-job", 100, now)
    (tmp_path / "stray.txt").write_text("x", encoding="utf-8")
    os.symlink(old, tmp_path / "link-job")

    plans, skips = plan_retention_sweep(tmp_path, 3600, min_age_seconds=240, now=now)

    assert [plan.job_id for plan in plans] == ["old-job"]
    assert plans[0].state == "created"
    assert plans[0].size_bytes > 100
    assert sorted(skip.reason for skip in skips) == ["not_a_directory", "symlink"]


def test_recent_file_inside_old_directory_keeps_it(tmp_path: Path) -> None:
    now = time.time()
    job_dir = _make_job(tmp_path, "job", 10_000, now)
    os.utime(job_dir / "dftb_out.hsd", (now - 5, now - 5))

    plans, _ = plan_retention_sweep(tmp_path, 3600, min_age_seconds=240, now=now)

    assert plans == []


def test_plan_refuses_age_below_safety_margin(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="does not exceed the safety minimum"):
        plan_retention_sweep(tmp_path, 60, min_age_seconds=1200)


def test_plan_on_missing_root_is_empty(tmp_path: Path) -> None:
    assert plan_retention_sweep(tmp_path / "missing", 3600, min_age_seconds=240) == ([], [])


def test_execute_removes_directories(tmp_path: Path) -> None:
    now = time.time()
    _make_job(tmp_path, "old-job", 10_000, now)
    plans, _ = plan_retention_sweep(tmp_path, 3600, min_age_seconds=240, now=now)

    results = execute_retention_sweep(plans)

    assert [result.removed for result in results] == [True]
    assert results[0].errors == []
    assert not (tmp_path / "old-job").exists()


def test_plan_refuses_age_equal_to_safety_margin(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="does not exceed the safety minimum"):
        plan_retention_sweep(tmp_path, 1200, min_age_seconds=1200)
