"""Parse CIF text into a :class:`~cif.model.Structure`."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass, field

from errors import DecodeError, FormatError, ValidationError
from .model import AtomSite, CellParameters, Structure, SymmetryOperation

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"""'([^']*)'|"([^"]*)"|(\S+)""")
_NUMBER_RE = re.compile(
    r"^([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)(?:\(\d+\))?$"
)

_CELL_KEYS = {
    "_cell_length_a": "a",
    "_cell_length_b": "b",
    "_cell_length_c": "c",
    "_cell_angle_alpha": "alpha",
    "_cell_angle_beta": "beta",
    "_cell_angle_gamma": "gamma",
    "_cell.length_a": "a",
    "_cell.length_b": "b",
    "_cell.length_c": "c",
    "_cell.angle_alpha": "alpha",
    "_cell.angle_beta": "beta",
    "_cell.angle_gamma": "gamma",
}

_ATOM_SITE_REQUIRED = (
    "_atom_site_label",
    "_atom_site_type_symbol",
    "_atom_site_fract_x",
    "_atom_site_fract_y",
    "_atom_site_fract_z",
)
_SYMMETRY_SPLIT_HEADERS = (
    "_symmetry_equiv_pos_as_xyz_x",
    "_symmetry_equiv_pos_as_xyz_y",
    "_symmetry_equiv_pos_as_xyz_z",
)
_SYMMETRY_COMBINED_HEADERS = (
    "_symmetry_equiv_pos_as_xyz",
    "_space_group_symop_operation_xyz",
)


@dataclass
class _LoopState:
    headers: list[str] = field(default_factory=list)
    rows: list[list[str]] = field(default_factory=list)
    dropped: int = 0


@dataclass
class _BlockBuilder:
    name: str
    cell: dict[str, float] = field(default_factory=dict)
    atom_sites: list[AtomSite] = field(default_factory=list)
    symmetry: list[SymmetryOperation] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)

    def build(self) -> Structure:
        return Structure(
            name=self.name,
            cell=CellParameters(**self.cell),
            atom_sites=tuple(self.atom_sites),
            symmetry=tuple(self.symmetry),
            metadata=dict(self.metadata),
        )


def decode_structure_file(payload: str) -> str:
    """Decode a base64 CIF payload into text.

    Raises:
        DecodeError: If the payload is not valid base64 or not UTF-8 text.
    """
    if not isinstance(payload, str):
        raise DecodeError("structure file payload must be a base64 string")
    compact = "".join(payload.split())
    try:
        raw = base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"failed to decode base64 content: {exc}") from exc
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise DecodeError(f"structure file is not valid UTF-8 text: {exc}") from exc


def validate_cif_content(text: str) -> None:
    """Cheap pre-flight check run before a job is committed.

    Raises:
        FormatError: If no ``data_`` block declaration is present.
        ValidationError: If cell parameters or atom-site information are missing.
    """
    if "data_" not in text:
        raise FormatError("missing data block declaration")
    if "_cell_length_a" not in text and "_cell.length_a" not in text \
            and "_cell_angle_alpha" not in text and "_cell.angle_alpha" not in text:
        raise ValidationError("missing cell parameters")
    if "_atom_site" not in text and "loop_" not in text:
        raise ValidationError("missing atom site information")


def parse_cif(text: str) -> Structure:
    """Parse CIF text and return the last data block as a ``Structure``.

    Supported content:
    - ``data_<name>`` block declarations (the last one wins)
    - ``loop_`` tables for atom sites and symmetry operators; rows whose
      column count differs from the header count are dropped
    - ``_tag value`` pairs; the six cell tags are read as numbers and
      everything else lands in ``metadata``
    - ``#`` comments and ``;`` text fields are skipped

    Raises:
        FormatError: If no data block declaration is found.
    """
    builder: _BlockBuilder | None = None
    loop: _LoopState | None = None
    in_text_field = False

    for raw_line in text.splitlines():
        if raw_line.startswith(";"):
            in_text_field = not in_text_field
            continue
        if in_text_field:
            continue

        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        lowered = line.lower()

        if lowered.startswith("data_"):
            _flush_loop(builder, loop)
            loop = None
            if builder is not None:
                logger.warning(
                    "Multiple data blocks found; replacing data_%s with %s",
                    builder.name,
                    line,
                )
            builder = _BlockBuilder(name=line[len("data_"):].strip())
            continue

        if builder is None:
            continue

        if lowered.startswith("loop_"):
            _flush_loop(builder, loop)
            loop = _LoopState()
            continue

        if loop is not None:
            if line.startswith("_"):
                if not loop.rows and len(line.split()) == 1:
                    loop.headers.append(lowered)
                    continue
                _flush_loop(builder, loop)
                loop = None
            else:
                tokens = _tokenize(line)
                if loop.headers and len(tokens) == len(loop.headers):
                    loop.rows.append(tokens)
                else:
                    loop.dropped += 1
                continue

        _record_key_value(builder, line)

    _flush_loop(builder, loop)

    if builder is None:
        raise FormatError("missing data block declaration")
    return builder.build()


def parse_cif_base64(payload: str) -> Structure:
    """Decode a base64 payload and parse it."""
    return parse_cif(decode_structure_file(payload))


def _tokenize(line: str) -> list[str]:
    tokens = []
    for match in _TOKEN_RE.finditer(line):
        single, double, bare = match.groups()
        if single is not None:
            tokens.append(single)
        elif double is not None:
            tokens.append(double)
        else:
            tokens.append(bare)
    return tokens


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def _parse_number(text: str) -> float | None:
    """Read a CIF number, tolerating a standard-uncertainty suffix like ``1.23(4)``."""
    match = _NUMBER_RE.match(text.strip())
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def _record_key_value(builder: _BlockBuilder, line: str) -> None:
    parts = line.split(None, 1)
    if len(parts) != 2:
        return
    key = parts[0]
    value = _strip_quotes(parts[1].strip())

    cell_field = _CELL_KEYS.get(key.lower())
    if cell_field is not None:
        number = _parse_number(value)
        if number is None:
            logger.debug("Unparsable cell value %s=%r; using 0.0", key, value)
            number = 0.0
        builder.cell[cell_field] = number
        return
    builder.metadata[key] = value


def _flush_loop(builder: _BlockBuilder | None, loop: _LoopState | None) -> None:
    if builder is None or loop is None or not loop.headers:
        return
    if loop.dropped:
        logger.debug(
            "Dropped %d loop row(s) with a column count different from %d headers",
            loop.dropped,
            len(loop.headers),
        )

    headers = set(loop.headers)
    if all(name in headers for name in _ATOM_SITE_REQUIRED):
        for row in loop.rows:
            builder.atom_sites.append(_atom_site_from_row(loop.headers, row))

    if all(name in headers for name in _SYMMETRY_SPLIT_HEADERS):
        for row in loop.rows:
            values = dict(zip(loop.headers, row))
            builder.symmetry.append(
                SymmetryOperation(
                    x=values[_SYMMETRY_SPLIT_HEADERS[0]].strip(),
                    y=values[_SYMMETRY_SPLIT_HEADERS[1]].strip(),
                    z=values[_SYMMETRY_SPLIT_HEADERS[2]].strip(),
                )
            )
        return

    combined = next((name for name in _SYMMETRY_COMBINED_HEADERS if name in headers), None)
    if combined is not None:
        index = loop.headers.index(combined)
        for row in loop.rows:
            parts = [part.strip() for part in row[index].split(",")]
            if len(parts) != 3:
                logger.debug("Skipping malformed symmetry operation %r", row[index])
                continue
            builder.symmetry.append(SymmetryOperation(x=parts[0], y=parts[1], z=parts[2]))


def _atom_site_from_row(headers: list[str], row: list[str]) -> AtomSite:
    values = dict(zip(headers, row))

    def _coordinate(name: str) -> float:
        number = _parse_number(values[name])
        return 0.0 if number is None else number

    u_iso_text = values.get("_atom_site_u_iso_or_equiv")
    adp_type = values.get("_atom_site_adp_type")
    return AtomSite(
        label=values["_atom_site_label"].strip(),
        type_symbol=values["_atom_site_type_symbol"].strip(),
        fract_x=_coordinate("_atom_site_fract_x"),
        fract_y=_coordinate("_atom_site_fract_y"),
        fract_z=_coordinate("_atom_site_fract_z"),
        u_iso_or_equiv=_parse_number(u_iso_text) if u_iso_text is not None else None,
        adp_type=adp_type.strip() if adp_type is not None else None,
    )
