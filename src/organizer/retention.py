"""Age-based removal of job directories under the work root."""

from __future__ import annotations

import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

from runner.state_machine import load_job_state

logger = logging.getLogger(__name__)


@dataclass
class RetentionPlan:
    job_dir: Path
    job_id: str
    age_seconds: float
    size_bytes: int = 0
    state: str | None = None


@dataclass
class RetentionSkipReason:
    job_dir: str
    reason: str


@dataclass
class RetentionResult:
    job_dir: str
    job_id: str
    removed: bool = False
    bytes_freed: int = 0
    errors: list[str] = field(default_factory=list)


def _last_modified(job_dir: Path) -> float:
    """Newest mtime of the directory itself and its direct entries."""
    latest = job_dir.stat().st_mtime
    for entry in job_dir.iterdir():
        try:
            latest = max(latest, entry.lstat().st_mtime)
        except OSError:
            continue
    return latest


def _dir_size(job_dir: Path) -> int:
    total = 0
    for dirpath, _dirnames, filenames in os.walk(job_dir, followlinks=False):
        for name in filenames:
            try:
                total += (Path(dirpath) / name).lstat().st_size
            except OSError:
                continue
    return total


def plan_retention_sweep(
    work_root: str | Path,
    max_age_seconds: float,
    *,
    min_age_seconds: float,
    now: float | None = None,
) -> tuple[list[RetentionPlan], list[RetentionSkipReason]]:
    """List job directories older than ``max_age_seconds``.

    Raises:
        ValueError: If ``max_age_seconds`` does not exceed ``min_age_seconds``, the
            margin that keeps running jobs out of reach.
    """
    if max_age_seconds <= min_age_seconds:
        raise ValueError(
            f"max age {max_age_seconds:.0f}s does not exceed the safety minimum {min_age_seconds:.0f}s"
        )
    root = Path(work_root)
    plans: list[RetentionPlan] = []
    skips: list[RetentionSkipReason] = []
    if not root.is_dir():
        return plans, skips

    current = time.time() if now is None else now
    for entry in sorted(root.iterdir()):
        if entry.is_symlink():
            skips.append(RetentionSkipReason(str(entry), "symlink"))
            continue
        if not entry.is_dir():
            skips.append(RetentionSkipReason(str(entry), "not_a_directory"))
            continue
        try:
            age = current - _last_modified(entry)
        except OSError as exc:
            skips.append(RetentionSkipReason(str(entry), f"stat_failed: {exc}"))
            continue
        if age <= max_age_seconds:
            continue

        record = load_job_state(entry)
        plans.append(
            RetentionPlan(
                job_dir=entry,
                job_id=entry.name,
                age_seconds=age,
                size_bytes=_dir_size(entry),
                state=record.get("state") if record else None,
            )
        )
    return plans, skips


def execute_retention_sweep(plans: list[RetentionPlan]) -> list[RetentionResult]:
    results: list[RetentionResult] = []
    for plan in plans:
        result = RetentionResult(job_dir=str(plan.job_dir), job_id=plan.job_id)
        try:
            shutil.rmtree(plan.job_dir)
            result.removed = True
            result.bytes_freed = plan.size_bytes
            logger.info("Removed %s (age %.0fs)", plan.job_dir, plan.age_seconds)
        except OSError as exc:
            result.errors.append(str(exc))
            logger.error("Failed to remove %s: %s", plan.job_dir, exc)
        results.append(result)
    return results
