from __future__ import annotations

import json
import logging
from typing import Any

from app_config import AppConfig, load_app_config
from organizer.retention import (
    RetentionPlan,
    RetentionResult,
    RetentionSkipReason,
    execute_retention_sweep,
    plan_retention_sweep,
)
from ._helpers import _MAX_SAMPLE_JOBS, human_age, human_bytes

logger = logging.getLogger(__name__)


def _emit_cleanup(payload: dict[str, Any], as_json: bool) -> None:
    if as_json:
        print(json.dumps(payload, ensure_ascii=True, indent=2))
        return

    for key in [
        "action",
        "work_root",
        "max_age_hours",
        "to_remove",
        "skipped",
        "removed",
        "failed",
        "total_bytes_freed_human",
    ]:
        if key in payload:
            print(f"{key}: {payload[key]}")
    for plan in payload.get("plans", []):
        print(f"  {plan['job_id']}: age {plan['age_human']}, {plan['bytes_human']}, state={plan['state']}")
    for skip in payload.get("skip_reasons", []):
        print(f"  SKIP {skip['job_dir']}: {skip['reason']}")
    for failure in payload.get("failures", []):
        print(f"  FAIL {failure['job_id']}: {failure['errors']}")


def _plan_to_dict(plan: RetentionPlan) -> dict[str, Any]:
    return {
        "job_id": plan.job_id,
        "job_dir": str(plan.job_dir),
        "age_seconds": round(plan.age_seconds, 1),
        "age_human": human_age(plan.age_seconds),
        "size_bytes": plan.size_bytes,
        "bytes_human": human_bytes(plan.size_bytes),
        "state": plan.state,
    }


def _cmd_cleanup_apply(
    plans: list[RetentionPlan],
    skips: list[RetentionSkipReason],
    base: dict[str, Any],
    as_json: bool,
) -> int:
    results: list[RetentionResult] = execute_retention_sweep(plans)
    failures = [
        {"job_id": result.job_id, "errors": result.errors}
        for result in results
        if result.errors
    ]
    total_bytes = sum(result.bytes_freed for result in results)
    summary = dict(base)
    summary.update({
        "action": "apply",
        "removed": len([result for result in results if result.removed]),
        "skipped": len(skips),
        "failed": len(failures),
        "total_bytes_freed": total_bytes,
        "total_bytes_freed_human": human_bytes(total_bytes),
        "failures": failures,
    })
    _emit_cleanup(summary, as_json=as_json)
    return 1 if failures else 0


def cmd_cleanup(args: Any, app_config: AppConfig | None = None) -> int:
    cfg = app_config or load_app_config(getattr(args, "config", None))
    max_age_hours = getattr(args, "max_age_hours", None)
    if max_age_hours is None:
        max_age_hours = cfg.retention.max_age_hours

    try:
        plans, skips = plan_retention_sweep(
            cfg.runtime.work_root,
            float(max_age_hours) * 3600.0,
            min_age_seconds=cfg.min_retention_age_seconds(),
        )
    except ValueError as exc:
        logger.error("%s", exc)
        return 1

    base = {"work_root": cfg.runtime.work_root, "max_age_hours": max_age_hours}
    as_json = bool(getattr(args, "json", False))
    if not getattr(args, "apply", False):
        total_bytes = sum(plan.size_bytes for plan in plans)
        shown = plans if as_json else plans[:_MAX_SAMPLE_JOBS]
        summary = dict(base)
        summary.update({
            "action": "dry_run",
            "to_remove": len(plans),
            "skipped": len(skips),
            "total_bytes_freed": total_bytes,
            "total_bytes_freed_human": human_bytes(total_bytes),
            "plans": [_plan_to_dict(plan) for plan in shown],
            "skip_reasons": [{"job_dir": skip.job_dir, "reason": skip.reason} for skip in skips],
        })
        _emit_cleanup(summary, as_json=as_json)
        return 0

    return _cmd_cleanup_apply(plans, skips, base, as_json=as_json)
