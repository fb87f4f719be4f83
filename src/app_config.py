"""Global application configuration for dftbopt."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


_DEFAULT_CONFIG_DIR = os.path.expanduser("~/.dftbopt")
_DEFAULT_CONFIG_PATH = os.path.join(_DEFAULT_CONFIG_DIR, "config.yaml")
_DEFAULT_WORK_ROOT = os.path.expanduser("~/dftbopt_work")
CONFIG_ENV_VAR = "DFTBOPT_CONFIG"

LATTICE_MODES = ("orthogonal", "triclinic")

_WINDOWS_DRIVE_RE = re.compile(r"^[A-Za-z]:\\")
_WSL_WINDOWS_MOUNT_RE = re.compile(r"^/mnt/[a-zA-Z](/|$)")


@dataclass
class RuntimeConfig:
    work_root: str = _DEFAULT_WORK_ROOT
    engine_path: str = "dftb+"
    max_requests: int = 10
    timeout_seconds: float = 300.0
    kill_grace_seconds: float = 10.0
    lattice: str = "orthogonal"


@dataclass
class RetentionConfig:
    max_age_hours: float = 24.0
    safety_factor: float = 4.0


@dataclass
class LoggingConfig:
    json_log_path: str | None = None


@dataclass
class AppConfig:
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def min_retention_age_seconds(self) -> float:
        """Smallest directory age the retention sweep may ever delete."""
        return self.runtime.timeout_seconds * self.retention.safety_factor


def load_app_config(config_path: str | None = None) -> AppConfig:
    """Load application configuration from YAML.

    Config search order:
    1. ``config_path`` argument
    2. ``DFTBOPT_CONFIG`` environment variable
    3. ``~/.dftbopt/config.yaml``

    Returns defaults when the target file does not exist.
    Raises ``ValueError`` for invalid YAML or invalid schema.
    """
    path = _resolve_config_path(config_path)
    if not path.exists():
        return AppConfig()

    import yaml

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML config: {path} ({exc})") from exc
    except OSError as exc:
        raise ValueError(f"Failed to read config file: {path} ({exc})") from exc

    if raw is None:
        return AppConfig()
    if not isinstance(raw, dict):
        raise ValueError(f"Config root must be a mapping: {path}")

    cfg = _parse_app_config(raw)
    validate_app_config(cfg)
    return cfg


def _resolve_config_path(config_path: str | None) -> Path:
    if config_path is not None:
        return Path(config_path).expanduser().resolve()
    env_path = os.environ.get(CONFIG_ENV_VAR, "").strip()
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path(_DEFAULT_CONFIG_PATH).expanduser().resolve()


def _parse_app_config(raw: dict[str, Any]) -> AppConfig:
    runtime_raw = _as_mapping(raw.get("runtime"))
    retention_raw = _as_mapping(raw.get("retention"))
    logging_raw = _as_mapping(raw.get("logging"))

    runtime = RuntimeConfig(
        work_root=_normalize_runtime_path(
            runtime_raw.get("work_root"),
            default=_DEFAULT_WORK_ROOT,
            field_name="runtime.work_root",
        ),
        engine_path=_as_non_empty_str(
            runtime_raw.get("engine_path"),
            default=RuntimeConfig.engine_path,
            field_name="runtime.engine_path",
        ),
        max_requests=_as_int(
            runtime_raw.get("max_requests"),
            default=RuntimeConfig.max_requests,
            field_name="runtime.max_requests",
        ),
        timeout_seconds=_as_float(
            runtime_raw.get("timeout_seconds"),
            default=RuntimeConfig.timeout_seconds,
            field_name="runtime.timeout_seconds",
        ),
        kill_grace_seconds=_as_float(
            runtime_raw.get("kill_grace_seconds"),
            default=RuntimeConfig.kill_grace_seconds,
            field_name="runtime.kill_grace_seconds",
        ),
        lattice=_as_non_empty_str(
            runtime_raw.get("lattice"),
            default=RuntimeConfig.lattice,
            field_name="runtime.lattice",
        ).lower(),
    )

    retention = RetentionConfig(
        max_age_hours=_as_float(
            retention_raw.get("max_age_hours"),
            default=RetentionConfig.max_age_hours,
            field_name="retention.max_age_hours",
        ),
        safety_factor=_as_float(
            retention_raw.get("safety_factor"),
            default=RetentionConfig.safety_factor,
            field_name="retention.safety_factor",
        ),
    )

    json_log_path = logging_raw.get("json_log_path")
    logging_cfg = LoggingConfig(
        json_log_path=(
            None
            if json_log_path is None
            else _normalize_runtime_path(
                json_log_path,
                default="",
                field_name="logging.json_log_path",
            )
        ),
    )

    return AppConfig(runtime=runtime, retention=retention, logging=logging_cfg)


def validate_app_config(cfg: AppConfig) -> None:
    _validate_runtime_config(cfg.runtime)
    _validate_retention_config(cfg)


def _validate_runtime_config(runtime: RuntimeConfig) -> None:
    if runtime.max_requests < 1:
        raise ValueError(f"runtime.max_requests must be >= 1 (got {runtime.max_requests})")
    if runtime.timeout_seconds <= 0:
        raise ValueError(
            f"runtime.timeout_seconds must be > 0 (got {runtime.timeout_seconds})"
        )
    if runtime.kill_grace_seconds < 0:
        raise ValueError(
            f"runtime.kill_grace_seconds must be >= 0 (got {runtime.kill_grace_seconds})"
        )
    if runtime.lattice not in LATTICE_MODES:
        raise ValueError(
            f"runtime.lattice must be one of {', '.join(LATTICE_MODES)} "
            f"(got {runtime.lattice!r})"
        )


def _validate_retention_config(cfg: AppConfig) -> None:
    retention = cfg.retention
    if retention.max_age_hours <= 0:
        raise ValueError(
            f"retention.max_age_hours must be > 0 (got {retention.max_age_hours})"
        )
    if retention.safety_factor < 1:
        raise ValueError(
            f"retention.safety_factor must be >= 1 (got {retention.safety_factor})"
        )
    min_age = cfg.min_retention_age_seconds()
    if retention.max_age_hours * 3600.0 <= min_age:
        raise ValueError(
            "retention.max_age_hours must exceed runtime.timeout_seconds * "
            f"retention.safety_factor ({min_age:.0f} s); got {retention.max_age_hours} h"
        )


def _as_mapping(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if value is None:
        return {}
    raise ValueError("Config sections must be mappings")


def _as_int(value: Any, *, default: int, field_name: str) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be an integer (got {value!r})")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field_name} must be an integer (got {value!r})") from exc


def _as_float(value: Any, *, default: float, field_name: str) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be a number (got {value!r})")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field_name} must be a number (got {value!r})") from exc


def _as_non_empty_str(value: Any, *, default: str, field_name: str) -> str:
    if value is None:
        return default
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise ValueError(f"{field_name} must be a non-empty string")


def _normalize_runtime_path(value: Any, *, default: str, field_name: str) -> str:
    raw = default if value is None else value
    if not isinstance(raw, str) or not raw.strip():
        raise ValueError(f"{field_name} must be a non-empty path string")
    path_text = raw.strip()
    if _is_windows_style_path(path_text):
        raise ValueError(
            f"{field_name} must be a POSIX path (Windows-style paths are unsupported): {path_text!r}"
        )
    path = Path(path_text).expanduser()
    if not path.is_absolute():
        raise ValueError(f"{field_name} must be an absolute path: {path_text!r}")
    return str(path.resolve())


def _is_windows_style_path(path_text: str) -> bool:
    return bool(
        _WINDOWS_DRIVE_RE.match(path_text)
        or _WSL_WINDOWS_MOUNT_RE.match(path_text)
    )
