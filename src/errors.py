"""Error taxonomy for the dftbopt pipeline."""

from __future__ import annotations


class DftbOptError(Exception):
    """Base class for every failure the pipeline reports to callers."""


class DecodeError(DftbOptError):
    """The submitted payload is not valid base64/UTF-8."""


class FormatError(DftbOptError):
    """The structure text is structurally invalid (e.g. no data block)."""


class ValidationError(DftbOptError):
    """The request or structure is semantically incomplete or inconsistent."""


class EngineUnavailableError(DftbOptError):
    """The configured DFTB+ executable cannot be found."""


class EngineExecutionError(DftbOptError):
    """DFTB+ exited with an error or left no output artifact."""


class EngineTimeoutError(DftbOptError, TimeoutError):
    """DFTB+ exceeded the wall-clock limit and was terminated."""

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"DFTB+ calculation timed out after {_format_seconds(timeout_seconds)} seconds"
        )


class JobIOError(DftbOptError, OSError):
    """Filesystem failure while creating or reading job artifacts."""


class OutputParseError(DftbOptError):
    """The engine output artifact could not be read or interpreted."""


class CapacityError(DftbOptError):
    """The admission limit is reached; the job was rejected, not queued."""


class InvalidTransitionError(DftbOptError):
    """A job state transition not allowed by the state machine."""


def _format_seconds(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"


__all__ = [
    "CapacityError",
    "DecodeError",
    "DftbOptError",
    "EngineExecutionError",
    "EngineTimeoutError",
    "EngineUnavailableError",
    "FormatError",
    "InvalidTransitionError",
    "JobIOError",
    "OutputParseError",
    "ValidationError",
]
