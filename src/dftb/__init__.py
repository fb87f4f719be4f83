"""DFTB+ input synthesis and output interpretation."""

from .input_builder import (
    GEOMETRY_FILENAME,
    INPUT_FILENAME,
    SUPPORTED_METHODS,
    EngineInput,
    build_engine_input,
    render_gen,
    render_hsd,
    validate_fmax,
    validate_method,
    write_engine_inputs,
)
from .lattice import get_lattice_strategy, list_lattice_strategies
from .output_parser import (
    OUTPUT_FILENAME,
    ResultRecord,
    interpret,
    optimized_structure,
)

__all__ = [
    "EngineInput",
    "GEOMETRY_FILENAME",
    "INPUT_FILENAME",
    "OUTPUT_FILENAME",
    "ResultRecord",
    "SUPPORTED_METHODS",
    "build_engine_input",
    "get_lattice_strategy",
    "interpret",
    "list_lattice_strategies",
    "optimized_structure",
    "render_gen",
    "render_hsd",
    "validate_fmax",
    "validate_method",
    "write_engine_inputs",
]
