"""CIF structure parsing and writing for dftbopt."""

from .model import AtomSite, CellParameters, Structure, SymmetryOperation
from .parser import (
    decode_structure_file,
    parse_cif,
    parse_cif_base64,
    validate_cif_content,
)
from .writer import format_cif, write_cif

__all__ = [
    "AtomSite",
    "CellParameters",
    "Structure",
    "SymmetryOperation",
    "decode_structure_file",
    "format_cif",
    "parse_cif",
    "parse_cif_base64",
    "validate_cif_content",
    "write_cif",
]
