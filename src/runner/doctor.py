"""Runtime environment diagnostics for dftbopt."""

from __future__ import annotations

import importlib.util
import os
from pathlib import Path

from app_config import AppConfig
from dftb.lattice import list_lattice_strategies
from .supervisor import resolve_engine_path


def format_doctor_result(label: str, status: bool, remedy: str | None = None) -> str:
    status_label = "OK" if status else "FAIL"
    separator = "  " if status_label == "OK" else " "
    if status:
        return f"{status_label}{separator}{label}"
    if remedy:
        return f"{status_label}{separator}{label} ({remedy})"
    return f"{status_label}{separator}{label}"


def _work_root_writable(work_root: str) -> bool:
    path = Path(work_root)
    while not path.exists():
        if path.parent == path:
            return False
        path = path.parent
    return path.is_dir() and os.access(path, os.W_OK | os.X_OK)


def run_doctor(app_config: AppConfig) -> int:
    """Check the DFTB+ executable, work root and Python dependencies.

    Returns:
        Exit code (0 = all checks passed, 1 = at least one failure).
    """
    failures: list[str] = []

    def _record_check(label: str, ok: bool, remedy: str | None = None) -> None:
        if not ok:
            failures.append(label)
        print(format_doctor_result(label, ok, remedy))

    def _check_import(module_name: str, hint: str) -> bool:
        ok = importlib.util.find_spec(module_name) is not None
        _record_check(module_name, ok, hint if not ok else None)
        return ok

    runtime = app_config.runtime
    engine = resolve_engine_path(runtime.engine_path)
    _record_check(
        f"DFTB+ executable ({runtime.engine_path})",
        engine is not None,
        "Install DFTB+ or set runtime.engine_path in the config file",
    )
    if engine is not None:
        print(f"INFO engine resolved to {engine}")

    _record_check(
        f"work_root writable ({runtime.work_root})",
        _work_root_writable(runtime.work_root),
        "Create the directory or set runtime.work_root",
    )

    checks = [
        ("numpy", "Install with: pip install numpy"),
        ("ase", "Install with: pip install ase"),
        ("ase.io", "Install with: pip install ase"),
        ("yaml", "Install with: pip install PyYAML"),
    ]
    for module_name, hint in checks:
        _check_import(module_name, hint)

    print(f"INFO lattice = {runtime.lattice} (available: {', '.join(list_lattice_strategies())})")
    print(f"INFO max_requests = {runtime.max_requests}")
    print(f"INFO timeout_seconds = {runtime.timeout_seconds}")

    if failures:
        print(f"FAIL {len(failures)} checks failed: {', '.join(failures)}")
        return 1
    print("OK  all checks passed")
    return 0
