"""Interpret DFTB+ output artifacts into a result record and updated structure."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from cif.model import AtomSite, Structure
from errors import OutputParseError
from .input_builder import FINAL_GEOMETRY_PREFIX
from .lattice import LatticeStrategy, OrthogonalLattice

logger = logging.getLogger(__name__)

OUTPUT_FILENAME = "dftb_out.hsd"
DETAILED_FILENAME = "detailed.out"
FINAL_GEOMETRY_FILENAME = f"{FINAL_GEOMETRY_PREFIX}.gen"

HARTREE_TO_EV = 27.211386245988

_NUM = r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eEdD][-+]?\d+)?"

ENERGY_LABELS = {
    "total energy": "total",
    "total mermin free energy": "total_mermin",
    "total electronic energy": "electronic",
    "repulsive energy": "repulsive",
    "force related energy": "force_related",
}

_ENERGY_RE = re.compile(
    rf"^\s*(?P<label>{'|'.join(re.escape(k) for k in ENERGY_LABELS)})\s*:\s*"
    rf"(?P<hartree>{_NUM})\s*H(?:\s+(?P<ev>{_NUM})\s*eV)?",
    re.IGNORECASE | re.MULTILINE,
)
_FERMI_RE = re.compile(
    rf"^\s*Fermi level\s*:\s*(?P<hartree>{_NUM})\s*H(?:\s+(?P<ev>{_NUM})\s*eV)?",
    re.IGNORECASE | re.MULTILINE,
)
_CHARGE_RE = re.compile(rf"^\s*Total charge\s*:\s*(?P<value>{_NUM})", re.IGNORECASE | re.MULTILINE)
_DIPOLE_RE = re.compile(
    rf"^\s*Dipole moment\s*:\s*(?P<x>{_NUM})\s+(?P<y>{_NUM})\s+(?P<z>{_NUM})\s*Debye",
    re.IGNORECASE | re.MULTILINE,
)
_SCC_NOT_CONVERGED_RE = re.compile(r"SCC\s+(?:is\s+)?NOT\s+converged", re.IGNORECASE)
_SCC_CONVERGED_RE = re.compile(r"^\s*SCC\s+converged", re.IGNORECASE | re.MULTILINE)
_GEOMETRY_NOT_CONVERGED_RE = re.compile(
    r"Geometry\s+(?:did\s+NOT\s+converge|NOT\s+converged)", re.IGNORECASE
)
_GEOMETRY_CONVERGED_RE = re.compile(r"Geometry\s+converged", re.IGNORECASE)
_WARNING_RE = re.compile(r"^.*\bWARNING\b.*$", re.MULTILINE)


@dataclass(frozen=True)
class ResultSummary:
    warnings: tuple[str, ...] = ()
    convergence_status: str = "unknown"
    calculation_status: str = "completed"
    error: str | None = None


@dataclass(frozen=True)
class DipoleMoment:
    x: float
    y: float
    z: float


@dataclass(frozen=True)
class ElectronicProperties:
    fermi_level_ev: float | None = None
    total_charge: float | None = None
    dipole_moment_debye: DipoleMoment | None = None


@dataclass(frozen=True)
class ResultRecord:
    summary: ResultSummary
    scc_converged: bool
    energies_ev: Mapping[str, float] = field(default_factory=dict)
    energies_hartree: Mapping[str, float] = field(default_factory=dict)
    electronic_properties: ElectronicProperties | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "energies_ev", MappingProxyType(dict(self.energies_ev)))
        object.__setattr__(self, "energies_hartree", MappingProxyType(dict(self.energies_hartree)))

    def to_dict(self) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "warnings": list(self.summary.warnings),
            "convergence_status": self.summary.convergence_status,
            "calculation_status": self.summary.calculation_status,
        }
        if self.summary.error:
            summary["error"] = self.summary.error
        payload: dict[str, Any] = {
            "summary": summary,
            "convergence_info": {"scc_converged": self.scc_converged},
            "energies_eV": dict(self.energies_ev),
            "energies_hartree": dict(self.energies_hartree),
        }
        props = self.electronic_properties
        if props is not None:
            electronic: dict[str, Any] = {}
            if props.fermi_level_ev is not None:
                electronic["fermi_level_eV"] = props.fermi_level_ev
            if props.total_charge is not None:
                electronic["total_charge"] = props.total_charge
            if props.dipole_moment_debye is not None:
                dipole = props.dipole_moment_debye
                electronic["dipole_moment_debye"] = {"x": dipole.x, "y": dipole.y, "z": dipole.z}
            payload["electronic_properties"] = electronic
        return payload


def _to_float(text: str) -> float:
    return float(text.replace("D", "E").replace("d", "e"))


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise OutputParseError(f"failed to read output file {path}: {exc}") from exc


def interpret(output_path: str | Path) -> ResultRecord:
    """Parse the primary DFTB+ artifact (and ``detailed.out`` beside it).

    Raises:
        OutputParseError: If the primary artifact cannot be read.
    """
    output_path = Path(output_path)
    texts = [_read_text(output_path)]
    detailed_path = output_path.parent / DETAILED_FILENAME
    if detailed_path != output_path and detailed_path.is_file():
        texts.append(_read_text(detailed_path))
    text = "\n".join(texts)

    energies_hartree: dict[str, float] = {}
    energies_ev: dict[str, float] = {}
    for match in _ENERGY_RE.finditer(text):
        key = ENERGY_LABELS[match.group("label").lower()]
        hartree = _to_float(match.group("hartree"))
        ev_text = match.group("ev")
        energies_hartree[key] = hartree
        energies_ev[key] = _to_float(ev_text) if ev_text else hartree * HARTREE_TO_EV

    warnings: list[str] = []
    for match in _WARNING_RE.finditer(text):
        line = match.group(0).strip()
        if line not in warnings:
            warnings.append(line)

    if _GEOMETRY_NOT_CONVERGED_RE.search(text):
        convergence_status = "not_converged"
    elif _GEOMETRY_CONVERGED_RE.search(text):
        convergence_status = "converged"
    else:
        convergence_status = "unknown"

    scc_converged = bool(_SCC_CONVERGED_RE.search(text)) and not _SCC_NOT_CONVERGED_RE.search(text)

    error = None
    calculation_status = "completed"
    if "total" not in energies_hartree:
        calculation_status = "incomplete"
        error = "total energy not found in DFTB+ output"

    return ResultRecord(
        summary=ResultSummary(
            warnings=tuple(warnings),
            convergence_status=convergence_status,
            calculation_status=calculation_status,
            error=error,
        ),
        scc_converged=scc_converged,
        energies_ev=energies_ev,
        energies_hartree=energies_hartree,
        electronic_properties=_electronic_properties(text),
    )


def _electronic_properties(text: str) -> ElectronicProperties | None:
    fermi_ev = None
    fermi_matches = list(_FERMI_RE.finditer(text))
    if fermi_matches:
        last = fermi_matches[-1]
        fermi_ev = (
            _to_float(last.group("ev"))
            if last.group("ev")
            else _to_float(last.group("hartree")) * HARTREE_TO_EV
        )

    charge = None
    charge_matches = list(_CHARGE_RE.finditer(text))
    if charge_matches:
        charge = _to_float(charge_matches[-1].group("value"))

    dipole = None
    dipole_matches = list(_DIPOLE_RE.finditer(text))
    if dipole_matches:
        last = dipole_matches[-1]
        dipole = DipoleMoment(
            x=_to_float(last.group("x")),
            y=_to_float(last.group("y")),
            z=_to_float(last.group("z")),
        )

    if fermi_ev is None and charge is None and dipole is None:
        return None
    return ElectronicProperties(
        fermi_level_ev=fermi_ev,
        total_charge=charge,
        dipole_moment_debye=dipole,
    )


def read_final_positions(job_dir: str | Path) -> list[tuple[float, float, float]] | None:
    """Cartesian positions from ``geo_end.gen``, or ``None`` when absent."""
    geometry_path = Path(job_dir) / FINAL_GEOMETRY_FILENAME
    if not geometry_path.is_file():
        return None

    from ase.io import read as ase_read

    try:
        atoms = ase_read(str(geometry_path), format="gen")
    except Exception as exc:
        raise OutputParseError(f"failed to read final geometry {geometry_path}: {exc}") from exc
    return [tuple(float(v) for v in position) for position in atoms.get_positions()]


def optimized_structure(
    structure: Structure,
    job_dir: str | Path,
    lattice: LatticeStrategy | None = None,
) -> Structure:
    """Build a new Structure carrying the engine's final coordinates.

    Falls back to the input coordinates when the engine left no final
    geometry. The returned object never shares storage with ``structure``.
    """
    lattice = lattice or OrthogonalLattice()
    positions = read_final_positions(job_dir)

    if positions is None:
        logger.info("No %s in %s; keeping input coordinates", FINAL_GEOMETRY_FILENAME, job_dir)
        fractional = [site.fractional for site in structure.atom_sites]
    else:
        if len(positions) != structure.atom_count:
            raise OutputParseError(
                f"final geometry has {len(positions)} atoms, expected {structure.atom_count}"
            )
        fractional = [lattice.to_fractional(structure.cell, pos) for pos in positions]

    sites = tuple(
        AtomSite(
            label=site.label,
            type_symbol=site.type_symbol,
            fract_x=frac[0],
            fract_y=frac[1],
            fract_z=frac[2],
            u_iso_or_equiv=site.u_iso_or_equiv,
            adp_type=site.adp_type,
        )
        for site, frac in zip(structure.atom_sites, fractional)
    )
    return Structure(
        name=f"{structure.name}_optimized",
        cell=structure.cell,
        atom_sites=sites,
        symmetry=structure.symmetry,
        metadata=dict(structure.metadata),
    )
