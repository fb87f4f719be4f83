from __future__ import annotations

import base64
from pathlib import Path

import pytest

from runner.process import ProcessOutcome


TWO_CARBON_CIF = """data_test
_cell_length_a 10.0
_cell_length_b 10.0
_cell_length_c 10.0
_cell_angle_alpha 90.0
_cell_angle_beta 90.0
_cell_angle_gamma 90.0
loop_
_atom_site_label
_atom_site_type_symbol
_atom_site_fract_x
_atom_site_fract_y
_atom_site_fract_z
C1 C 0.0 0.0 0.0
C2 C 0.5 0.5 0.0
"""

DFTB_OUTPUT = """\
 Geometry step: 3
 SCC converged
 Total Electronic energy:            -10.9000000000 H         -296.6041 eV
 Repulsive energy:                     0.4000000000 H           10.8845 eV
 Total energy:                       -10.5000000000 H         -285.7196 eV
 Total Mermin free energy:           -10.5010000000 H         -285.7468 eV
 Geometry converged
"""


def b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


class FakeRunner:
    """Stand-in for SubprocessRunner that writes canned files into the job dir."""

    def __init__(
        self,
        returncode: int | None = 0,
        timed_out: bool = False,
        outputs: dict[str, str] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.returncode = returncode
        self.timed_out = timed_out
        self.outputs = {"dftb_out.hsd": DFTB_OUTPUT} if outputs is None else outputs
        self.error = error
        self.calls: list[tuple[list[str], Path, float]] = []

    def run(self, command, cwd, timeout):
        self.calls.append((list(command), Path(cwd), timeout))
        if self.error is not None:
            raise self.error
        for name, content in self.outputs.items():
            (Path(cwd) / name).write_text(content, encoding="utf-8")
        return ProcessOutcome(
            returncode=None if self.timed_out else self.returncode,
            timed_out=self.timed_out,
            elapsed_seconds=timeout if self.timed_out else 0.01,
            pid=4242,
        )


def write_script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(0o755)
    return path


@pytest.fixture
def fake_engine(tmp_path: Path) -> Path:
    return write_script(tmp_path / "dftb+", "exit 0\n")


@pytest.fixture
def two_carbon_cif() -> str:
    return TWO_CARBON_CIF
