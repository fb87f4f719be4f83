"""Type definitions for the runner system."""

from __future__ import annotations

from typing import Any, TypedDict


class OptimizationRequest(TypedDict, total=False):
    """Geometry-optimization request as received from a caller."""

    request_id: str
    structure_file: str
    method: str
    fmax: float
    original_filename: str


class OptimizationResponse(TypedDict, total=False):
    """Response record; ``status`` is ``success``, ``error`` or ``accepted``."""

    status: str
    request_id: str
    parsed_data: dict[str, Any]
    optimized_cif_b64: str
    error_message: str


class TransitionRecord(TypedDict):
    """One state change in a job's history."""

    state: str
    at: str
    reason: str


class JobStateRecord(TypedDict, total=False):
    """Job state persisted to job_state.json."""

    job_id: str
    job_dir: str
    method: str
    fmax: float
    timeout_seconds: float
    state: str
    submitted_at: str
    updated_at: str
    history: list[TransitionRecord]
    pid: int | None
    returncode: int | None
    elapsed_seconds: float | None
    error: str | None
