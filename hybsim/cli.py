"""
cli.py — Command line entry point
=================================

Usage:
    hybsim run --config params.yaml [--set SWEEPS=100000] [--workers 4] [--output run/]
    hybsim run --config params.yaml --output run/ --resume
    hybsim analyze --results run/ [--output run/plots]
"""

import argparse
import logging
import sys
from pathlib import Path

from .params import ConfigurationError, load_parameters

logger = logging.getLogger("hybsim.cli")


def _cmd_run(args) -> int:
    from .runner import run_pool, setup_logging, write_report, write_results

    try:
        parms = load_parameters(args.config, args.set)
    except FileNotFoundError as exc:
        sys.exit(str(exc))
    output_dir = Path(args.output)
    setup_logging(output_dir / "logs", verbose=parms["VERBOSE"])

    checkpoint_dir = output_dir / "checkpoints"
    pooled = run_pool(parms, n_workers=args.workers,
                      checkpoint_dir=checkpoint_dir, resume=args.resume)
    write_results(pooled, parms, output_dir)
    write_report(pooled, parms, output_dir)
    return 0


def _cmd_analyze(args) -> int:
    from .analysis import analyze
    from .runner import setup_logging

    setup_logging(None, verbose=True)
    analyze(args.results, args.output, args.file)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hybsim",
        description="Hybridization expansion CT-HYB Monte Carlo (segment picture)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a simulation")
    run.add_argument("--config", default="params.yaml",
                     help="Path to YAML parameter file")
    run.add_argument("--set", action="append", default=[], metavar="KEY=VALUE",
                     help="Override a parameter (repeatable)")
    run.add_argument("--workers", type=int, default=1,
                     help="Number of independent worker processes")
    run.add_argument("--output", default=".",
                     help="Directory for results, logs and checkpoints")
    run.add_argument("--resume", action="store_true",
                     help="Resume from the latest checkpoints in --output")
    run.set_defaults(func=_cmd_run)

    analyze = sub.add_parser("analyze", help="Plot results of a finished run")
    analyze.add_argument("--results", default=".",
                         help="Run directory containing the results file")
    analyze.add_argument("--file", default=None,
                         help="Results file name inside --results (default: first *.npz)")
    analyze.add_argument("--output", default=None,
                         help="Directory for plots (default: <results>/plots)")
    analyze.set_defaults(func=_cmd_analyze)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except ConfigurationError as exc:
        sys.exit(f"Invalid parameters: {exc}")


if __name__ == "__main__":
    sys.exit(main())
