from __future__ import annotations

from pathlib import Path

import pytest

from cif.model import AtomSite, CellParameters, Structure
from cif.parser import parse_cif
from dftb.input_builder import (
    GEOMETRY_FILENAME,
    INPUT_FILENAME,
    build_engine_input,
    render_gen,
    render_hsd,
    write_engine_inputs,
)
from dftb.lattice import TriclinicLattice
from errors import JobIOError, ValidationError

from conftest import TWO_CARBON_CIF


def _silica() -> Structure:
    return Structure(
        name="sio2",
        cell=CellParameters(4.0, 5.0, 6.0, 90.0, 90.0, 90.0),
        atom_sites=(
            AtomSite("Si1", "Si", 0.0, 0.0, 0.0),
            AtomSite("O1", "O", 0.5, 0.0, 0.0),
            AtomSite("O2", "O", 0.0, 0.5, 0.5),
        ),
    )


def test_two_carbon_structure_maps_to_cartesian_coordinates() -> None:
    engine_input = build_engine_input(parse_cif(TWO_CARBON_CIF), "GFN1-xTB", 0.1)

    assert engine_input.periodic is True
    assert engine_input.elements == ("C",)
    assert engine_input.coordinates == ((0.0, 0.0, 0.0), (5.0, 5.0, 0.0))
    assert engine_input.lattice_vectors == (
        (10.0, 0.0, 0.0),
        (0.0, 10.0, 0.0),
        (0.0, 0.0, 10.0),
    )
    assert engine_input.fmax == 0.1
    assert engine_input.calculate_forces is True


def test_orthogonal_coordinates_are_fraction_times_length() -> None:
    engine_input = build_engine_input(_silica(), "GFN2-xTB", 0.05)

    assert engine_input.coordinates == (
        (0.0, 0.0, 0.0),
        (2.0, 0.0, 0.0),
        (0.0, 2.5, 3.0),
    )
    assert engine_input.elements == ("Si", "O")
    assert engine_input.atom_symbols == ("Si", "O", "O")


def test_invalid_method_is_rejected() -> None:
    with pytest.raises(ValidationError, match="invalid method: BAD-METHOD"):
        build_engine_input(parse_cif(TWO_CARBON_CIF), "BAD-METHOD", 0.1)
    with pytest.raises(ValidationError, match="method is required"):
        build_engine_input(parse_cif(TWO_CARBON_CIF), "", 0.1)


@pytest.mark.parametrize("fmax", [0, -0.1])
def test_non_positive_fmax_is_rejected(fmax: float) -> None:
    with pytest.raises(ValidationError, match="fmax must be positive"):
        build_engine_input(parse_cif(TWO_CARBON_CIF), "GFN1-xTB", fmax)


def test_structure_problems_are_rejected() -> None:
    no_lengths = Structure(
        name="x",
        cell=CellParameters(a=5.0, b=5.0),
        atom_sites=(AtomSite("H1", "H", 0.0, 0.0, 0.0),),
    )
    zero_length = Structure(
        name="x",
        cell=CellParameters(0.0, 5.0, 5.0),
        atom_sites=(AtomSite("H1", "H", 0.0, 0.0, 0.0),),
    )
    no_atoms = Structure(name="x", cell=CellParameters(5.0, 5.0, 5.0))
    duplicate = Structure(
        name="x",
        cell=CellParameters(5.0, 5.0, 5.0),
        atom_sites=(
            AtomSite("H1", "H", 0.0, 0.0, 0.0),
            AtomSite("H1", "H", 0.5, 0.0, 0.0),
        ),
    )

    with pytest.raises(ValidationError, match="cell lengths are required"):
        build_engine_input(no_lengths, "GFN1-xTB", 0.1)
    with pytest.raises(ValidationError, match="must be positive"):
        build_engine_input(zero_length, "GFN1-xTB", 0.1)
    with pytest.raises(ValidationError, match="no atom sites"):
        build_engine_input(no_atoms, "GFN1-xTB", 0.1)
    with pytest.raises(ValidationError, match="duplicate atom site label"):
        build_engine_input(duplicate, "GFN1-xTB", 0.1)


def test_render_gen_uses_per_atom_element_index() -> None:
    lines = render_gen(build_engine_input(_silica(), "GFN1-xTB", 0.1)).splitlines()

    assert lines[0] == "3 S"
    assert lines[1] == "Si O"
    assert [line.split()[:2] for line in lines[2:5]] == [["1", "1"], ["2", "2"], ["3", "2"]]
    assert [float(v) for v in lines[3].split()[2:]] == [2.0, 0.0, 0.0]
    assert [float(v) for v in lines[5].split()] == [0.0, 0.0, 0.0]
    assert [float(v) for v in lines[6].split()] == [4.0, 0.0, 0.0]
    assert [float(v) for v in lines[8].split()] == [0.0, 0.0, 6.0]
    assert len(lines) == 9


def test_render_hsd_carries_method_and_force_threshold() -> None:
    hsd = render_hsd(build_engine_input(_silica(), "GFN2-xTB", 0.01))

    assert 'Method = "GFN2-xTB"' in hsd
    assert "GradElem [eV/AA] = 0.010000" in hsd
    assert f'<<< "{GEOMETRY_FILENAME}"' in hsd
    assert 'OutputPrefix = "geo_end"' in hsd
    assert "CalculateForces = Yes" in hsd
    assert hsd.count("{") == hsd.count("}")


def test_write_engine_inputs(tmp_path: Path) -> None:
    engine_input = build_engine_input(parse_cif(TWO_CARBON_CIF), "GFN1-xTB", 0.1)

    input_path, geometry_path = write_engine_inputs(tmp_path, engine_input)

    assert input_path == tmp_path / INPUT_FILENAME
    assert geometry_path.read_text(encoding="utf-8") == render_gen(engine_input)
    with pytest.raises(JobIOError):
        write_engine_inputs(tmp_path / "missing", engine_input)


def test_unparsable_angle_under_triclinic_lattice_is_a_validation_error() -> None:
    structure = parse_cif(TWO_CARBON_CIF.replace("_cell_angle_gamma 90.0", "_cell_angle_gamma ?"))
    assert structure.cell.gamma == 0.0

    with pytest.raises(ValidationError, match="degenerate cell"):
        build_engine_input(structure, "GFN1-xTB", 0.1, TriclinicLattice())

    orthogonal = build_engine_input(structure, "GFN1-xTB", 0.1)
    assert orthogonal.coordinates[1] == (5.0, 5.0, 0.0)
