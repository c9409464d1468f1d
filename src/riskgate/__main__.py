# SPDX-License-Identifier: MIT
"""Package entry point — run the gate via `python -m riskgate`."""

import argparse

from riskgate.rules.config import PROFILES
from riskgate.scan import main


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="riskgate: risk classification and merge gate")
    parser.add_argument("--diff", default=None, help="Unified diff file, or - for stdin (default: stdin)")
    parser.add_argument(
        "--corpus", default=None, help="Rule source file (overrides RISKGATE_CORPUS env var)"
    )
    parser.add_argument(
        "--config", default=None, help="TOML config file (overrides RISKGATE_CONFIG env var)"
    )
    parser.add_argument(
        "--profile",
        choices=sorted(PROFILES),
        default=None,
        help="Gating profile (overrides RISKGATE_PROFILE env var)",
    )
    parser.add_argument("--format", dest="output_format", choices=["json", "markdown"], default="markdown")
    parser.add_argument("--output", default=None, help="Write the report here instead of stdout")
    parser.add_argument("--max-workers", type=int, default=None, help="Detector worker threads")
    return parser


def cli(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    main(
        diff=args.diff,
        corpus=args.corpus,
        config=args.config,
        profile=args.profile,
        output_format=args.output_format,
        output=args.output,
        max_workers=args.max_workers,
    )


if __name__ == "__main__":
    cli()
