"""Cell-parameter to Cartesian conversions used when building DFTB+ geometry."""

from __future__ import annotations

import logging
import math
from typing import Callable, Protocol, Sequence

from cif.model import CellParameters

logger = logging.getLogger(__name__)

Vector = tuple[float, float, float]
Matrix = tuple[Vector, Vector, Vector]


class LatticeStrategy(Protocol):
    name: str

    def lattice_vectors(self, cell: CellParameters) -> Matrix: ...
    def to_cartesian(self, cell: CellParameters, fractional: Sequence[float]) -> Vector: ...
    def to_fractional(self, cell: CellParameters, cartesian: Sequence[float]) -> Vector: ...


def _require_lengths(cell: CellParameters) -> tuple[float, float, float]:
    lengths = cell.lengths
    if lengths is None:
        raise ValueError("cell lengths are required")
    return lengths


class OrthogonalLattice:
    """Treat every cell as rectangular: lattice = diag(a, b, c).

    Angles are ignored. This is exact for orthorhombic, tetragonal and cubic
    cells and an approximation for everything else.
    """

    name = "orthogonal"

    def lattice_vectors(self, cell: CellParameters) -> Matrix:
        a, b, c = _require_lengths(cell)
        if any(not math.isclose(angle, 90.0, abs_tol=1e-6) for angle in cell.angles):
            logger.warning(
                "Cell angles %s are not all 90 degrees; orthogonal lattice is an approximation",
                cell.angles,
            )
        return ((a, 0.0, 0.0), (0.0, b, 0.0), (0.0, 0.0, c))

    def to_cartesian(self, cell: CellParameters, fractional: Sequence[float]) -> Vector:
        a, b, c = _require_lengths(cell)
        return (fractional[0] * a, fractional[1] * b, fractional[2] * c)

    def to_fractional(self, cell: CellParameters, cartesian: Sequence[float]) -> Vector:
        a, b, c = _require_lengths(cell)
        return (cartesian[0] / a, cartesian[1] / b, cartesian[2] / c)


class TriclinicLattice:
    """General cell transform: ``a`` along x, ``b`` in the xy plane."""

    name = "triclinic"

    def _matrix(self, cell: CellParameters):
        import numpy as np
        from ase.geometry import cellpar_to_cell

        a, b, c = _require_lengths(cell)
        alpha, beta, gamma = cell.angles
        if not all(0.0 < angle < 180.0 for angle in (alpha, beta, gamma)):
            raise ValueError(
                f"cell angles must lie strictly between 0 and 180 degrees (got {cell.angles})"
            )
        try:
            matrix = cellpar_to_cell([a, b, c, alpha, beta, gamma])
        except (AssertionError, ValueError) as exc:
            raise ValueError(f"cell parameters do not describe a valid cell: {exc}") from exc
        return np.asarray(matrix, dtype=float)

    def lattice_vectors(self, cell: CellParameters) -> Matrix:
        matrix = self._matrix(cell)
        return tuple(tuple(float(value) for value in row) for row in matrix)

    def to_cartesian(self, cell: CellParameters, fractional: Sequence[float]) -> Vector:
        import numpy as np

        cart = np.asarray(fractional, dtype=float) @ self._matrix(cell)
        return (float(cart[0]), float(cart[1]), float(cart[2]))

    def to_fractional(self, cell: CellParameters, cartesian: Sequence[float]) -> Vector:
        import numpy as np

        frac = np.linalg.solve(self._matrix(cell).T, np.asarray(cartesian, dtype=float))
        return (float(frac[0]), float(frac[1]), float(frac[2]))


_LATTICE_FACTORIES: dict[str, Callable[[], LatticeStrategy]] = {
    OrthogonalLattice.name: OrthogonalLattice,
    TriclinicLattice.name: TriclinicLattice,
}


def get_lattice_strategy(name: str) -> LatticeStrategy:
    key = str(name).strip().lower()
    if key not in _LATTICE_FACTORIES:
        available = ", ".join(sorted(_LATTICE_FACTORIES))
        raise KeyError(f"Lattice strategy '{name}' not registered (available: {available}).")
    return _LATTICE_FACTORIES[key]()


def list_lattice_strategies() -> list[str]:
    return sorted(_LATTICE_FACTORIES)


__all__ = [
    "LatticeStrategy",
    "OrthogonalLattice",
    "TriclinicLattice",
    "get_lattice_strategy",
    "list_lattice_strategies",
]
