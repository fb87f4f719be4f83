"""Render a :class:`~cif.model.Structure` back to CIF text."""

from __future__ import annotations

from datetime import date
from pathlib import Path

from errors import JobIOError
from .model import Structure

DEFAULT_U_ISO = 0.01

_CELL_TAGS = (
    ("_cell_length_a", "a"),
    ("_cell_length_b", "b"),
    ("_cell_length_c", "c"),
    ("_cell_angle_alpha", "alpha"),
    ("_cell_angle_beta", "beta"),
    ("_cell_angle_gamma", "gamma"),
)


def format_cif(
    structure: Structure,
    creation_method: str,
    creation_date: date | None = None,
) -> str:
    """Return CIF text with a provenance header for ``structure``."""
    stamp = (creation_date or date.today()).isoformat()
    lines = [
        f"data_{structure.name}",
        "# Optimized structure from DFTB+",
        f"_audit_creation_method            '{creation_method}'",
        f"_audit_creation_date              '{stamp}'",
        "",
    ]

    for tag, attr in _CELL_TAGS:
        value = getattr(structure.cell, attr)
        if value is not None:
            lines.append(f"{tag:<34}{value:.6f}")

    if structure.symmetry:
        lines.extend([
            "",
            "loop_",
            "_symmetry_equiv_pos_as_xyz",
        ])
        for op in structure.symmetry:
            lines.append(f"'{op.as_xyz}'")

    lines.extend([
        "",
        "loop_",
        "_atom_site_label",
        "_atom_site_type_symbol",
        "_atom_site_fract_x",
        "_atom_site_fract_y",
        "_atom_site_fract_z",
        "_atom_site_U_iso_or_equiv",
    ])
    for site in structure.atom_sites:
        u_iso = site.u_iso_or_equiv if site.u_iso_or_equiv else DEFAULT_U_ISO
        lines.append(
            f"{site.label} {site.type_symbol} "
            f"{site.fract_x:12.8f} {site.fract_y:12.8f} {site.fract_z:12.8f} {u_iso:8.6f}"
        )

    lines.append("")
    return "\n".join(lines)


def write_cif(path: str | Path, content: str) -> Path:
    target = Path(path)
    try:
        target.write_text(content, encoding="utf-8")
    except OSError as exc:
        raise JobIOError(f"failed to write CIF file {target}: {exc}") from exc
    return target
