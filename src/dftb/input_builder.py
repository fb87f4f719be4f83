"""Build DFTB+ input (``dftb_in.hsd`` + ``geometry.gen``) from a Structure."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from cif.model import Structure
from errors import JobIOError, ValidationError
from .lattice import LatticeStrategy, Matrix, OrthogonalLattice, Vector

logger = logging.getLogger(__name__)

SUPPORTED_METHODS = ("GFN1-xTB", "GFN2-xTB")

INPUT_FILENAME = "dftb_in.hsd"
GEOMETRY_FILENAME = "geometry.gen"
FINAL_GEOMETRY_PREFIX = "geo_end"
MAX_OPTIMIZATION_STEPS = 1000


@dataclass(frozen=True)
class EngineInput:
    periodic: bool
    lattice_vectors: Matrix
    elements: tuple[str, ...]
    atom_symbols: tuple[str, ...]
    coordinates: tuple[Vector, ...]
    method: str
    fmax: float
    calculate_forces: bool = True


def validate_method(method: str) -> None:
    if not method:
        raise ValidationError("method is required")
    if method not in SUPPORTED_METHODS:
        raise ValidationError(
            f"invalid method: {method} (expected one of {', '.join(SUPPORTED_METHODS)})"
        )


def validate_fmax(fmax: float) -> None:
    if isinstance(fmax, bool) or not isinstance(fmax, (int, float)):
        raise ValidationError(f"fmax must be a number (got {fmax!r})")
    if not fmax > 0:
        raise ValidationError("fmax must be positive")


def build_engine_input(
    structure: Structure,
    method: str,
    fmax: float,
    lattice: LatticeStrategy | None = None,
) -> EngineInput:
    """Convert a parsed structure into DFTB+ input values.

    Cartesian coordinates follow the structure's atom order. With the default
    orthogonal lattice each coordinate is the fractional value times the cell
    length along that axis.

    Raises:
        ValidationError: If the structure has no name, no usable cell lengths,
            no atoms or duplicate atom labels, or if method/fmax are invalid.
    """
    validate_method(method)
    validate_fmax(fmax)
    if structure is None or not structure.name:
        raise ValidationError("invalid CIF file: structure has no data block name")

    lengths = structure.cell.lengths
    if lengths is None:
        raise ValidationError("invalid CIF file: cell lengths are required")
    if any(length <= 0 for length in lengths):
        raise ValidationError(f"invalid CIF file: cell lengths must be positive (got {lengths})")
    if not structure.atom_sites:
        raise ValidationError("invalid CIF file: no atom sites found")

    seen_labels: set[str] = set()
    for site in structure.atom_sites:
        if site.label in seen_labels:
            raise ValidationError(f"invalid CIF file: duplicate atom site label {site.label!r}")
        seen_labels.add(site.label)
        if not site.type_symbol:
            raise ValidationError(f"invalid CIF file: atom {site.label!r} has no type symbol")

    lattice = lattice or OrthogonalLattice()
    try:
        lattice_vectors = lattice.lattice_vectors(structure.cell)
        coordinates = tuple(
            lattice.to_cartesian(structure.cell, site.fractional)
            for site in structure.atom_sites
        )
    except ValueError as exc:
        raise ValidationError(f"invalid CIF file: degenerate cell ({exc})") from exc

    return EngineInput(
        periodic=True,
        lattice_vectors=lattice_vectors,
        elements=tuple(structure.elements),
        atom_symbols=tuple(site.type_symbol for site in structure.atom_sites),
        coordinates=coordinates,
        method=method,
        fmax=float(fmax),
        calculate_forces=True,
    )


def render_hsd(engine_input: EngineInput) -> str:
    """Render ``dftb_in.hsd`` for an xTB geometry optimization."""
    lines = [
        "Geometry = GenFormat {",
        f'  <<< "{GEOMETRY_FILENAME}"',
        "}",
        "",
        "Hamiltonian = xTB {",
        f'  Method = "{engine_input.method}"',
    ]
    if engine_input.periodic:
        lines.extend([
            "  KPointsAndWeights = SupercellFolding {",
            "    1 0 0",
            "    0 1 0",
            "    0 0 1",
            "    0.0 0.0 0.0",
            "  }",
        ])
    lines.extend([
        "}",
        "",
        "Driver = GeometryOptimization {",
        "  Optimizer = Rational {}",
        "  Convergence {",
        f"    GradElem [eV/AA] = {engine_input.fmax:.6f}",
        "  }",
        f"  MaxSteps = {MAX_OPTIMIZATION_STEPS}",
        "  MovedAtoms = 1:-1",
        f'  OutputPrefix = "{FINAL_GEOMETRY_PREFIX}"',
        "}",
        "",
        "Analysis {",
        f"  CalculateForces = {'Yes' if engine_input.calculate_forces else 'No'}",
        "}",
        "",
        "Options {",
        "  WriteDetailedOut = Yes",
        "  WriteResultsTag = Yes",
        "}",
        "",
        "ParserOptions {",
        "  ParserVersion = 12",
        "}",
        "",
    ])
    return "\n".join(lines)


def render_gen(engine_input: EngineInput) -> str:
    """Render ``geometry.gen`` in DFTB+ gen format (Cartesian, Angstrom)."""
    kind = "S" if engine_input.periodic else "C"
    element_index = {element: i for i, element in enumerate(engine_input.elements, start=1)}
    lines = [
        f"{len(engine_input.coordinates)} {kind}",
        " ".join(engine_input.elements),
    ]
    for i, (symbol, coord) in enumerate(
        zip(engine_input.atom_symbols, engine_input.coordinates), start=1
    ):
        lines.append(
            f"{i:5d} {element_index[symbol]:3d} "
            f"{coord[0]:16.10f} {coord[1]:16.10f} {coord[2]:16.10f}"
        )
    if engine_input.periodic:
        lines.append(f"{0.0:16.10f} {0.0:16.10f} {0.0:16.10f}")
        for vector in engine_input.lattice_vectors:
            lines.append(f"{vector[0]:16.10f} {vector[1]:16.10f} {vector[2]:16.10f}")
    lines.append("")
    return "\n".join(lines)


def write_engine_inputs(job_dir: str | Path, engine_input: EngineInput) -> tuple[Path, Path]:
    """Write ``dftb_in.hsd`` and ``geometry.gen`` into ``job_dir``."""
    job_path = Path(job_dir)
    input_path = job_path / INPUT_FILENAME
    geometry_path = job_path / GEOMETRY_FILENAME
    try:
        input_path.write_text(render_hsd(engine_input), encoding="utf-8")
        geometry_path.write_text(render_gen(engine_input), encoding="utf-8")
    except OSError as exc:
        raise JobIOError(f"failed to write input files in {job_path}: {exc}") from exc
    logger.debug("Wrote %s and %s", input_path, geometry_path)
    return input_path, geometry_path
