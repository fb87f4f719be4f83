from __future__ import annotations

import base64
import json
import shutil
from pathlib import Path

import pytest

from dftb.lattice import TriclinicLattice
from runner.orchestrator import OptimizationService, request_cache_key
from runner.status import JobStatus
from runner.supervisor import JobSupervisor

from conftest import DFTB_OUTPUT, TWO_CARBON_CIF, FakeRunner, b64

GEO_END = "2 S\nC\n1 1 0.1 0.0 0.0\n2 1 5.0 5.0 0.0\n0 0 0\n10 0 0\n0 10 0\n0 0 10\n"


def _service(tmp_path: Path, engine: Path, runner: FakeRunner, **kwargs) -> OptimizationService:
    supervisor = JobSupervisor(tmp_path / "work", str(engine), runner=runner, timeout_seconds=5, **kwargs)
    return OptimizationService(supervisor)


def _request(**overrides):
    request = {
        "request_id": "req-1",
        "structure_file": b64(TWO_CARBON_CIF),
        "method": "GFN1-xTB",
        "fmax": 0.1,
    }
    request.update(overrides)
    return request


def test_run_optimization_success(tmp_path: Path, fake_engine: Path) -> None:
    runner = FakeRunner(outputs={"dftb_out.hsd": DFTB_OUTPUT, "geo_end.gen": GEO_END})
    service = _service(tmp_path, fake_engine, runner)

    response = service.run_optimization(_request())

    assert response["status"] == "success"
    assert response["request_id"] == "req-1"
    assert response["parsed_data"]["energies_eV"]["total"] == -285.7196
    assert response["parsed_data"]["summary"]["convergence_status"] == "converged"
    cif_text = base64.b64decode(response["optimized_cif_b64"]).decode("utf-8")
    assert cif_text.startswith("data_test_optimized\n")
    assert "C1 C   0.01000000   0.00000000   0.00000000" in cif_text

    job_dir = service.supervisor.work_root / "req-1"
    assert (job_dir / "optimized.cif").read_text(encoding="utf-8") == cif_text
    assert json.loads((job_dir / "response.json").read_text(encoding="utf-8"))["status"] == "success"
    assert service.status("req-1") is JobStatus.COMPLETED
    assert service.details("req-1")["state"] == "completed"


def test_bad_method_is_rejected_before_launch(tmp_path: Path, fake_engine: Path) -> None:
    runner = FakeRunner()
    service = _service(tmp_path, fake_engine, runner)

    response = service.run_optimization(_request(method="BAD-METHOD"))

    assert response == {
        "status": "error",
        "request_id": "req-1",
        "error_message": "invalid method: BAD-METHOD (expected one of GFN1-xTB, GFN2-xTB)",
    }
    assert runner.calls == []
    assert service.status("req-1") is JobStatus.NOT_FOUND


@pytest.mark.parametrize(
    ("fmax", "message"),
    [(0, "fmax must be positive"), (0.0005, "fmax must be at least 0.001"), (None, "fmax is required")],
)
def test_fmax_validation(tmp_path: Path, fake_engine: Path, fmax, message: str) -> None:
    service = _service(tmp_path, fake_engine, FakeRunner())

    response = service.run_optimization(_request(fmax=fmax))

    assert response["status"] == "error"
    assert response["error_message"] == message


def test_bad_payloads_report_parse_errors(tmp_path: Path, fake_engine: Path) -> None:
    runner = FakeRunner()
    service = _service(tmp_path, fake_engine, runner)

    not_base64 = service.run_optimization(_request(structure_file="%%%"))
    no_block = service.run_optimization(_request(structure_file=b64("_cell_length_a 1\nloop_\n")))
    no_atoms = service.run_optimization(
        _request(structure_file=b64("data_x\n_cell_length_a 5\n_cell_length_b 5\n_cell_length_c 5\nloop_\n"))
    )
    missing = service.run_optimization(_request(structure_file=""))

    assert not_base64["error_message"].startswith("failed to parse CIF file:")
    assert "missing data block declaration" in no_block["error_message"]
    assert no_atoms["error_message"].startswith("failed to convert to DFTB+ input:")
    assert missing["error_message"] == "structure file is required"
    assert runner.calls == []


def test_engine_failure_becomes_error_response(tmp_path: Path, fake_engine: Path) -> None:
    service = _service(tmp_path, fake_engine, FakeRunner(returncode=1, outputs={}))

    response = service.run_optimization(_request())

    assert response["status"] == "error"
    assert response["request_id"] == "req-1"
    assert response["error_message"].startswith(
        "DFTB+ calculation failed: DFTB+ execution failed with exit code 1"
    )
    assert service.status("req-1") is JobStatus.ERROR


def test_timeout_becomes_error_response(tmp_path: Path, fake_engine: Path) -> None:
    service = _service(tmp_path, fake_engine, FakeRunner(timed_out=True, outputs={}))

    response = service.run_optimization(_request())

    assert response["error_message"] == (
        "DFTB+ calculation failed: DFTB+ calculation timed out after 5 seconds"
    )
    assert service.status("req-1") is JobStatus.ERROR


def test_post_processing_failure_marks_error(tmp_path: Path, fake_engine: Path) -> None:
    bad_geometry = "1 S\nC\n1 1 0 0 0\n0 0 0\n10 0 0\n0 10 0\n0 0 10\n"
    runner = FakeRunner(outputs={"dftb_out.hsd": DFTB_OUTPUT, "geo_end.gen": bad_geometry})
    service = _service(tmp_path, fake_engine, runner)

    response = service.run_optimization(_request())

    assert response["status"] == "error"
    assert response["error_message"].startswith("failed to process DFTB+ output:")
    assert service.status("req-1") is JobStatus.ERROR


def test_capacity_rejection_is_an_error_response(tmp_path: Path, fake_engine: Path) -> None:
    service = _service(tmp_path, fake_engine, FakeRunner(), max_requests=1)
    service.supervisor.admission.try_acquire()

    response = service.run_optimization(_request())

    assert response["status"] == "error"
    assert "capacity" in response["error_message"]
    assert service.status("req-1") is JobStatus.NOT_FOUND


def test_missing_request_id_is_generated(tmp_path: Path, fake_engine: Path) -> None:
    service = _service(tmp_path, fake_engine, FakeRunner())
    request = _request()
    del request["request_id"]

    response = service.run_optimization(request)

    assert response["status"] == "success"
    assert len(response["request_id"]) == 36
    assert service.status(response["request_id"]) is JobStatus.COMPLETED


def test_submit_background(tmp_path: Path, fake_engine: Path) -> None:
    service = _service(tmp_path, fake_engine, FakeRunner())

    response = service.submit_background(_request(request_id="bg-1"))

    assert response == {"status": "accepted", "request_id": "bg-1"}
    assert service.join("bg-1", timeout=10)
    assert service.status("bg-1") is JobStatus.COMPLETED
    assert service.details("bg-1")["response"]["status"] == "success"


def test_submit_background_rejects_invalid_request(tmp_path: Path, fake_engine: Path) -> None:
    service = _service(tmp_path, fake_engine, FakeRunner())

    response = service.submit_background(_request(request_id="bg-2", method="GFN3"))

    assert response["status"] == "error"
    assert service.status("bg-2") is JobStatus.NOT_FOUND


def test_request_cache_key() -> None:
    base = _request()

    assert request_cache_key(base) == request_cache_key(dict(base, request_id="other"))
    assert request_cache_key(base) == request_cache_key(dict(base, fmax=0.1))
    assert request_cache_key(base) != request_cache_key(dict(base, fmax=0.05))
    assert request_cache_key(base) != request_cache_key(dict(base, method="GFN2-xTB"))
    assert len(request_cache_key(base)) == 64


def test_unparsable_angle_with_triclinic_lattice_is_an_error_response(
    tmp_path: Path, fake_engine: Path
) -> None:
    runner = FakeRunner()
    supervisor = JobSupervisor(tmp_path / "work", str(fake_engine), runner=runner, timeout_seconds=5)
    service = OptimizationService(supervisor, lattice=TriclinicLattice())
    cif = TWO_CARBON_CIF.replace("_cell_angle_gamma 90.0", "_cell_angle_gamma ?")

    response = service.run_optimization(_request(structure_file=b64(cif)))

    assert response["status"] == "error"
    assert response["request_id"] == "req-1"
    assert response["error_message"].startswith("failed to convert to DFTB+ input:")
    assert "degenerate cell" in response["error_message"]
    assert runner.calls == []


def test_rejected_request_without_id_still_gets_one(tmp_path: Path, fake_engine: Path) -> None:
    service = _service(tmp_path, fake_engine, FakeRunner())
    request = _request(method="BAD-METHOD")
    del request["request_id"]

    response = service.run_optimization(request)
    background = service.submit_background(request)

    assert response["status"] == "error"
    assert len(response["request_id"]) == 36
    assert background["status"] == "error"
    assert len(background["request_id"]) == 36
    assert background["request_id"] != response["request_id"]
    assert "request_id" not in request


def test_finished_background_jobs_are_forgotten(tmp_path: Path, fake_engine: Path) -> None:
    service = _service(tmp_path, fake_engine, FakeRunner())

    for index in range(3):
        service.submit_background(_request(request_id=f"bg-{index}"))
    for index in range(3):
        assert service.join(f"bg-{index}", timeout=10)

    assert service._threads == {}
    assert all(service.status(f"bg-{index}") is JobStatus.COMPLETED for index in range(3))


def test_background_crash_survives_missing_job_directory(
    tmp_path: Path, fake_engine: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    service = _service(tmp_path, fake_engine, FakeRunner())

    def crash(job, prepared):
        shutil.rmtree(job.job_dir)
        raise RuntimeError("boom")

    monkeypatch.setattr(service, "_complete", crash)

    response = service.submit_background(_request(request_id="bg-gone"))

    assert response["status"] == "accepted"
    assert service.join("bg-gone", timeout=10)
    assert service._threads == {}
    assert service.status("bg-gone") is JobStatus.NOT_FOUND
