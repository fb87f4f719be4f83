"""CLI for dftbopt: DFTB+ geometry optimization of CIF structures.

Commands:
- optimize
- status
- validate
- cleanup
- doctor
"""

from __future__ import annotations

import argparse
import logging

from job_logging import setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dftbopt")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to dftbopt config.yaml",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- optimize ---
    optimize_parser = subparsers.add_parser(
        "optimize",
        help="Run a DFTB+ geometry optimization on a CIF file.",
    )
    optimize_parser.add_argument("--cif", required=True, help="Input CIF file")
    optimize_parser.add_argument(
        "--method",
        default="GFN1-xTB",
        help="GFN1-xTB or GFN2-xTB (default: GFN1-xTB)",
    )
    optimize_parser.add_argument(
        "--fmax",
        type=float,
        default=0.1,
        help="Force convergence threshold in eV/Angstrom (default: 0.1)",
    )
    optimize_parser.add_argument(
        "--request-id",
        default=None,
        help="Job id (default: random UUID)",
    )
    optimize_parser.add_argument(
        "--output-cif",
        default=None,
        help="Also write the optimized CIF here",
    )
    optimize_parser.add_argument("--json", action="store_true", help="Output as JSON.")

    # --- status ---
    status_parser = subparsers.add_parser(
        "status",
        help="Check the status of a job.",
    )
    status_parser.add_argument("--request-id", required=True, help="Job id")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON.")

    # --- validate ---
    validate_parser = subparsers.add_parser(
        "validate",
        help="Check that a CIF file can be turned into DFTB+ input.",
    )
    validate_parser.add_argument("--cif", required=True, help="Input CIF file")
    validate_parser.add_argument("--method", default="GFN1-xTB")
    validate_parser.add_argument("--fmax", type=float, default=0.1)
    validate_parser.add_argument("--json", action="store_true", help="Output as JSON.")

    # --- cleanup ---
    cleanup_parser = subparsers.add_parser(
        "cleanup",
        help="Remove job directories older than the retention age.",
    )
    cleanup_parser.add_argument(
        "--max-age-hours",
        type=float,
        default=None,
        help="Override retention.max_age_hours",
    )
    cleanup_parser.add_argument(
        "--apply",
        action="store_true",
        default=False,
        help="Actually delete directories (default is dry-run)",
    )
    cleanup_parser.add_argument("--json", action="store_true", help="Output as JSON.")

    # --- doctor ---
    subparsers.add_parser(
        "doctor",
        help="Check the DFTB+ executable, work root and Python dependencies.",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    verbose = bool(getattr(args, "verbose", False))
    setup_logging(verbose=verbose)

    try:
        from app_config import load_app_config

        app_config = load_app_config(getattr(args, "config", None))
        if app_config.logging.json_log_path:
            setup_logging(verbose=verbose, json_log_path=app_config.logging.json_log_path)

        command_map = {
            "optimize": _cmd_optimize,
            "status": _cmd_status,
            "validate": _cmd_validate,
            "cleanup": _cmd_cleanup,
            "doctor": _cmd_doctor,
        }
        handler = command_map.get(args.command)
        if handler is None:
            parser.print_help()
            return 1
        return int(handler(args, app_config))
    except KeyboardInterrupt:
        return 130
    except Exception as exc:
        logging.error("%s", exc)
        return 1


def _cmd_optimize(args: argparse.Namespace, app_config) -> int:
    from runner.orchestrator import cmd_optimize

    return cmd_optimize(
        cif_path=args.cif,
        method=args.method,
        fmax=args.fmax,
        request_id=args.request_id,
        output_cif=args.output_cif,
        json_output=args.json,
        app_config=app_config,
    )


def _cmd_status(args: argparse.Namespace, app_config) -> int:
    from runner.orchestrator import cmd_status

    return cmd_status(
        request_id=args.request_id,
        json_output=args.json,
        app_config=app_config,
    )


def _cmd_validate(args: argparse.Namespace, app_config) -> int:
    from runner.orchestrator import cmd_validate

    return cmd_validate(
        cif_path=args.cif,
        method=args.method,
        fmax=args.fmax,
        json_output=args.json,
        app_config=app_config,
    )


def _cmd_cleanup(args: argparse.Namespace, app_config) -> int:
    from commands.cleanup import cmd_cleanup

    return cmd_cleanup(args, app_config=app_config)


def _cmd_doctor(args: argparse.Namespace, app_config) -> int:
    from runner.doctor import run_doctor

    return run_doctor(app_config)


if __name__ == "__main__":
    raise SystemExit(main())
