#!/usr/bin/env python3
"""Validate dftbopt runtime configuration."""

from __future__ import annotations

import argparse
import os
import shutil
import sys
from pathlib import Path


def _bootstrap_path() -> None:
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="validate_runtime_config.py")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config YAML (default loader order applies).",
    )
    return parser.parse_args()


def main() -> int:
    _bootstrap_path()
    from app_config import CONFIG_ENV_VAR, load_app_config

    args = _parse_args()
    config_text = args.config or os.environ.get(CONFIG_ENV_VAR) or "~/.dftbopt/config.yaml"
    print(f"Config file: {Path(config_text).expanduser().resolve()}")
    try:
        cfg = load_app_config(args.config)
    except ValueError as exc:
        print(f"  [FAIL] Config validation error: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"  [FAIL] Config load error: {exc}", file=sys.stderr)
        return 1

    work_root = Path(cfg.runtime.work_root)
    errors = 0
    print("  [PASS] Config loaded successfully")
    print(f"         work_root: {work_root}")
    print(f"         engine_path: {cfg.runtime.engine_path}")
    print(f"         max_requests: {cfg.runtime.max_requests}")
    print(f"         timeout_seconds: {cfg.runtime.timeout_seconds:g}")
    print(f"         retention.max_age_hours: {cfg.retention.max_age_hours:g}")

    if work_root.exists():
        if work_root.is_dir():
            print("  [PASS] work_root exists and is a directory")
        else:
            print(f"  [FAIL] work_root exists but is not a directory: {work_root}", file=sys.stderr)
            errors += 1
    else:
        print(f"  [WARN] work_root does not exist yet (will be created on first job): {work_root}")

    if shutil.which(cfg.runtime.engine_path):
        print("  [PASS] DFTB+ executable found")
    else:
        print(f"  [FAIL] DFTB+ executable not found: {cfg.runtime.engine_path}", file=sys.stderr)
        errors += 1

    if errors:
        print(f"\n=== {errors} CHECK(S) FAILED ===")
        return 1
    print("\n=== ALL CHECKS PASSED ===")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
