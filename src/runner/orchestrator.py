"""Main orchestration for dftbopt geometry optimizations."""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from app_config import AppConfig, load_app_config
from cif.model import Structure
from cif.parser import decode_structure_file, parse_cif, validate_cif_content
from cif.writer import format_cif, write_cif
from dftb.input_builder import EngineInput, build_engine_input, validate_fmax, validate_method
from dftb.lattice import LatticeStrategy, OrthogonalLattice, get_lattice_strategy
from dftb.output_parser import interpret, optimized_structure
from errors import DftbOptError, JobIOError, ValidationError
from job_logging import job_logger
from .process import ProcessRunner
from .status import JobStatus, job_details, job_status
from .supervisor import (
    OPTIMIZED_CIF_FILENAME,
    RESPONSE_FILENAME,
    Job,
    JobSupervisor,
    validate_job_id,
)
from .types import OptimizationRequest, OptimizationResponse

logger = logging.getLogger(__name__)

DEFAULT_METHOD = "GFN1-xTB"
DEFAULT_FMAX = 0.1
MIN_FMAX = 0.001
CREATION_METHOD = "DFTB+ geometry optimization"


def request_cache_key(request: Mapping[str, Any]) -> str:
    """Stable key over the fields that determine a result."""
    payload = {
        "structure_file": request.get("structure_file", ""),
        "method": request.get("method", ""),
        "fmax": float(request.get("fmax", 0.0)),
    }
    text = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class PreparedJob:
    request_id: str
    structure: Structure
    engine_input: EngineInput


def _error_response(request_id: str, message: str) -> OptimizationResponse:
    return {"status": "error", "request_id": request_id, "error_message": message}


class OptimizationService:
    """Run the parse -> synthesize -> supervise -> interpret pipeline."""

    def __init__(
        self,
        supervisor: JobSupervisor,
        lattice: LatticeStrategy | None = None,
    ) -> None:
        self.supervisor = supervisor
        self.lattice = lattice or OrthogonalLattice()
        self._threads: dict[str, threading.Thread] = {}

    @classmethod
    def from_config(
        cls, config: AppConfig, runner: ProcessRunner | None = None
    ) -> "OptimizationService":
        return cls(
            JobSupervisor.from_config(config, runner=runner),
            lattice=get_lattice_strategy(config.runtime.lattice),
        )

    def validate_request(self, request: Mapping[str, Any]) -> OptimizationRequest:
        """Return a normalized copy of ``request`` with a request id assigned.

        Raises:
            ValidationError: Missing structure file, bad method, bad fmax or
                an unusable request id.
        """
        if not isinstance(request, Mapping):
            raise ValidationError("request must be a mapping")
        request_id = request.get("request_id") or str(uuid.uuid4())
        validate_job_id(request_id)

        structure_file = request.get("structure_file")
        if not structure_file or not isinstance(structure_file, str):
            raise ValidationError("structure file is required")

        method = request.get("method")
        validate_method(method)

        fmax = request.get("fmax")
        if fmax is None:
            raise ValidationError("fmax is required")
        validate_fmax(fmax)
        if fmax < MIN_FMAX:
            raise ValidationError(f"fmax must be at least {MIN_FMAX}")

        normalized: OptimizationRequest = {
            "request_id": request_id,
            "structure_file": structure_file,
            "method": method,
            "fmax": float(fmax),
        }
        if request.get("original_filename"):
            normalized["original_filename"] = str(request["original_filename"])
        return normalized

    def prepare(self, request: Mapping[str, Any]) -> PreparedJob:
        """Validate, decode, parse and synthesize; nothing touches the filesystem."""
        normalized = self.validate_request(request)
        request_id = normalized["request_id"]
        try:
            text = decode_structure_file(normalized["structure_file"])
            validate_cif_content(text)
            structure = parse_cif(text)
        except DftbOptError as exc:
            raise type(exc)(f"failed to parse CIF file: {exc}") from exc
        try:
            engine_input = build_engine_input(
                structure, normalized["method"], normalized["fmax"], self.lattice
            )
        except DftbOptError as exc:
            raise type(exc)(f"failed to convert to DFTB+ input: {exc}") from exc
        job_logger(logger, request_id).debug(
            "Parsed %s: %d atoms, elements=%s",
            structure.name,
            structure.atom_count,
            ",".join(engine_input.elements),
        )
        return PreparedJob(request_id=request_id, structure=structure, engine_input=engine_input)

    def run_optimization(self, request: Mapping[str, Any]) -> OptimizationResponse:
        """Run one optimization synchronously; failures become error responses."""
        request, request_id = _with_request_id(request)
        try:
            prepared = self.prepare(request)
            job = self.supervisor.start_job(prepared.request_id, prepared.engine_input)
        except DftbOptError as exc:
            job_logger(logger, request_id).error("Rejected: %s", exc)
            return _error_response(request_id, str(exc))
        return self._complete(job, prepared)

    def submit_background(self, request: Mapping[str, Any]) -> OptimizationResponse:
        """Admit the job synchronously and run the engine on a daemon thread."""
        request, request_id = _with_request_id(request)
        try:
            prepared = self.prepare(request)
            job = self.supervisor.start_job(prepared.request_id, prepared.engine_input)
        except DftbOptError as exc:
            job_logger(logger, request_id).error("Rejected: %s", exc)
            return _error_response(request_id, str(exc))

        thread = threading.Thread(
            target=self._complete_in_background,
            args=(job, prepared),
            name=f"dftbopt-{job.job_id}",
            daemon=True,
        )
        self._threads[job.job_id] = thread
        thread.start()
        return {"status": "accepted", "request_id": job.job_id}

    def join(self, request_id: str, timeout: float | None = None) -> bool:
        """Wait for a background job; ``True`` when it is no longer running."""
        thread = self._threads.get(request_id)
        if thread is None:
            return True
        thread.join(timeout)
        if thread.is_alive():
            return False
        self._threads.pop(request_id, None)
        return True

    def status(self, request_id: str) -> JobStatus:
        return job_status(self.supervisor.work_root, request_id)

    def details(self, request_id: str) -> dict[str, Any]:
        return job_details(self.supervisor.work_root, request_id)

    def _complete(self, job: Job, prepared: PreparedJob) -> OptimizationResponse:
        log = job_logger(logger, job.job_id)
        try:
            self.supervisor.wait_job(job)
        except DftbOptError as exc:
            response = _error_response(job.job_id, f"DFTB+ calculation failed: {exc}")
            self._store_response(job, response)
            return response

        try:
            record = interpret(job.output_path)
            optimized = optimized_structure(prepared.structure, job.job_dir, self.lattice)
            cif_text = format_cif(optimized, CREATION_METHOD)
            write_cif(job.job_dir / OPTIMIZED_CIF_FILENAME, cif_text)
        except DftbOptError as exc:
            message = f"failed to process DFTB+ output: {exc}"
            try:
                self.supervisor.mark_error(job.job_id, message)
            except JobIOError as marker_exc:
                log.error("Could not write error marker: %s", marker_exc)
            response = _error_response(job.job_id, message)
            self._store_response(job, response)
            return response

        if record.summary.warnings:
            log.warning("DFTB+ reported %d warning(s)", len(record.summary.warnings))
        response: OptimizationResponse = {
            "status": "success",
            "request_id": job.job_id,
            "parsed_data": record.to_dict(),
            "optimized_cif_b64": base64.b64encode(cif_text.encode("utf-8")).decode("ascii"),
        }
        self._store_response(job, response)
        log.info(
            "Optimization finished (convergence=%s, total=%s eV)",
            record.summary.convergence_status,
            record.energies_ev.get("total"),
        )
        return response

    def _complete_in_background(self, job: Job, prepared: PreparedJob) -> None:
        log = job_logger(logger, job.job_id)
        try:
            self._complete(job, prepared)
        except Exception as exc:
            log.exception("Background job crashed")
            try:
                self.supervisor.mark_error(job.job_id, f"internal error: {exc}")
            except JobIOError as marker_exc:
                log.error("Could not write error marker: %s", marker_exc)
        finally:
            self._threads.pop(job.job_id, None)

    def _store_response(self, job: Job, response: OptimizationResponse) -> None:
        path = job.job_dir / RESPONSE_FILENAME
        tmp_path = str(path) + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(response, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as exc:
            job_logger(logger, job.job_id).warning("Could not store %s: %s", path, exc)


def _with_request_id(request: Any) -> tuple[Any, str]:
    """Copy ``request`` with a request id assigned before any validation."""
    if not isinstance(request, Mapping):
        return request, ""
    request_id = str(request.get("request_id") or uuid.uuid4())
    return dict(request, request_id=request_id), request_id


def cmd_optimize(
    cif_path: str,
    method: str = DEFAULT_METHOD,
    fmax: float = DEFAULT_FMAX,
    request_id: str | None = None,
    output_cif: str | None = None,
    json_output: bool = False,
    app_config: AppConfig | None = None,
    runner: ProcessRunner | None = None,
) -> int:
    """Execute the optimize command.

    Returns:
        Exit code (0 = success, 1 = failure).
    """
    if app_config is None:
        app_config = load_app_config()

    path = Path(cif_path).expanduser()
    try:
        payload = path.read_bytes()
    except OSError as exc:
        logger.error("Cannot read CIF file %s: %s", path, exc)
        return 1

    request: OptimizationRequest = {
        "request_id": request_id or str(uuid.uuid4()),
        "structure_file": base64.b64encode(payload).decode("ascii"),
        "method": method,
        "fmax": fmax,
        "original_filename": path.name,
    }
    service = OptimizationService.from_config(app_config, runner=runner)
    response = service.run_optimization(request)

    if response.get("status") == "success" and output_cif:
        cif_text = base64.b64decode(response["optimized_cif_b64"]).decode("utf-8")
        try:
            write_cif(Path(output_cif).expanduser(), cif_text)
        except JobIOError as exc:
            logger.error("%s", exc)
            return 1

    _emit(_response_payload(response, app_config), as_json=json_output)
    return 0 if response.get("status") == "success" else 1


def cmd_status(
    request_id: str,
    json_output: bool = False,
    app_config: AppConfig | None = None,
) -> int:
    """Display the status of a job.

    Returns:
        Exit code (0 = found, 1 = not found or invalid id).
    """
    if app_config is None:
        app_config = load_app_config()
    try:
        details = job_details(app_config.runtime.work_root, request_id)
    except ValidationError as exc:
        logger.error("%s", exc)
        return 1

    if json_output:
        _emit(details, as_json=True)
    else:
        payload = {
            key: details[key]
            for key in ("job_id", "status", "state", "job_dir", "submitted_at", "error")
            if details.get(key) is not None
        }
        _emit(payload, as_json=False)
    return 1 if details["status"] == JobStatus.NOT_FOUND.value else 0


def cmd_validate(
    cif_path: str,
    method: str = DEFAULT_METHOD,
    fmax: float = DEFAULT_FMAX,
    json_output: bool = False,
    app_config: AppConfig | None = None,
) -> int:
    """Pre-flight check, parse and synthesize without running the engine."""
    if app_config is None:
        app_config = load_app_config()

    path = Path(cif_path).expanduser()
    try:
        text = path.read_text(encoding="utf-8-sig")
    except (OSError, UnicodeDecodeError) as exc:
        logger.error("Cannot read CIF file %s: %s", path, exc)
        return 1

    lattice = get_lattice_strategy(app_config.runtime.lattice)
    try:
        validate_cif_content(text)
        structure = parse_cif(text)
        engine_input = build_engine_input(structure, method, fmax, lattice)
    except DftbOptError as exc:
        _emit({"status": "invalid", "cif": str(path), "error": str(exc)}, as_json=json_output)
        return 1

    cell = structure.cell
    _emit(
        {
            "status": "valid",
            "cif": str(path),
            "name": structure.name,
            "atom_count": structure.atom_count,
            "elements": list(engine_input.elements),
            "cell": [cell.a, cell.b, cell.c, cell.alpha, cell.beta, cell.gamma],
            "symmetry_operations": len(structure.symmetry),
            "lattice": lattice.name,
            "method": method,
            "fmax": fmax,
        },
        as_json=json_output,
    )
    return 0


def _response_payload(response: OptimizationResponse, app_config: AppConfig) -> dict[str, Any]:
    payload: dict[str, Any] = dict(response)
    request_id = response.get("request_id")
    if request_id:
        payload["job_dir"] = os.path.join(app_config.runtime.work_root, request_id)
    return payload


def _emit(payload: dict[str, Any], as_json: bool) -> None:
    """Emit command result payload in text or JSON."""
    if as_json:
        print(json.dumps(payload, ensure_ascii=True, indent=2))
        return

    for key, value in payload.items():
        if key == "optimized_cif_b64":
            continue
        if key == "parsed_data" and isinstance(value, dict):
            summary = value.get("summary", {})
            print(f"convergence_status: {summary.get('convergence_status')}")
            print(f"calculation_status: {summary.get('calculation_status')}")
            energies = value.get("energies_eV", {})
            if "total" in energies:
                print(f"total_energy_eV: {energies['total']}")
            continue
        if isinstance(value, (dict, list)):
            value = json.dumps(value, ensure_ascii=True)
        print(f"{key}: {value}")
