"""In-memory crystal structure parsed from CIF text."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping


@dataclass(frozen=True)
class CellParameters:
    """Unit-cell lengths (Angstrom) and angles (degrees).

    ``None`` means the tag was absent; ``0.0`` means it was present but
    could not be read as a number.
    """

    a: float | None = None
    b: float | None = None
    c: float | None = None
    alpha: float | None = None
    beta: float | None = None
    gamma: float | None = None

    @property
    def lengths(self) -> tuple[float, float, float] | None:
        if self.a is None or self.b is None or self.c is None:
            return None
        return (self.a, self.b, self.c)

    @property
    def angles(self) -> tuple[float, float, float]:
        """Cell angles, with absent values read as 90 degrees."""
        return tuple(
            90.0 if value is None else value
            for value in (self.alpha, self.beta, self.gamma)
        )

    @property
    def has_lengths(self) -> bool:
        return self.lengths is not None

    @property
    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (self.a, self.b, self.c, self.alpha, self.beta, self.gamma)
        )


@dataclass(frozen=True)
class AtomSite:
    label: str
    type_symbol: str
    fract_x: float
    fract_y: float
    fract_z: float
    u_iso_or_equiv: float | None = None
    adp_type: str | None = None

    @property
    def fractional(self) -> tuple[float, float, float]:
        return (self.fract_x, self.fract_y, self.fract_z)


@dataclass(frozen=True)
class SymmetryOperation:
    x: str
    y: str
    z: str

    @property
    def as_xyz(self) -> str:
        return f"{self.x},{self.y},{self.z}"


@dataclass(frozen=True)
class Structure:
    name: str
    cell: CellParameters = field(default_factory=CellParameters)
    atom_sites: tuple[AtomSite, ...] = ()
    symmetry: tuple[SymmetryOperation, ...] = ()
    metadata: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Stored as tuple / read-only copies of whatever the caller passed.
        object.__setattr__(self, "atom_sites", tuple(self.atom_sites))
        object.__setattr__(self, "symmetry", tuple(self.symmetry))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @property
    def atom_count(self) -> int:
        return len(self.atom_sites)

    @property
    def elements(self) -> list[str]:
        """Unique element symbols in first-occurrence order."""
        seen: dict[str, None] = {}
        for site in self.atom_sites:
            seen.setdefault(site.type_symbol, None)
        return list(seen)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "cell_length": {
                key: value
                for key, value in (("a", self.cell.a), ("b", self.cell.b), ("c", self.cell.c))
                if value is not None
            },
            "cell_angle": {
                key: value
                for key, value in (
                    ("alpha", self.cell.alpha),
                    ("beta", self.cell.beta),
                    ("gamma", self.cell.gamma),
                )
                if value is not None
            },
            "atom_sites": [
                {
                    "label": site.label,
                    "type_symbol": site.type_symbol,
                    "fract_x": site.fract_x,
                    "fract_y": site.fract_y,
                    "fract_z": site.fract_z,
                    "u_iso_or_equiv": site.u_iso_or_equiv,
                    "adp_type": site.adp_type,
                }
                for site in self.atom_sites
            ],
            "symmetry": [
                {"x": op.x, "y": op.y, "z": op.z} for op in self.symmetry
            ],
            "metadata": dict(self.metadata),
        }
