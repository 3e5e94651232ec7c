#!/usr/bin/env python3
"""
Manual storage cleanup for the encoder gateway.

Runs one sweep over the configured roots and exits. Useful from cron or
after a crash when the server is not running.

Usage:
    python -m backend.run_cleanup [--only-temp | --only-cache] [--max-age AGE]

Options:
    --only-temp       Empty the temp (workspace) root regardless of age
    --only-cache      Empty the image/GIF cache roots regardless of age
    --max-age AGE     Override every target's age threshold (e.g. 30m, 2h)
    --config PATH     YAML file describing sweep targets (default: SWEEP_CONFIG)
    --stats           Only print storage statistics, delete nothing
"""

import argparse
import logging
import sys
from dataclasses import replace

from .encode_engine import Sweeper, load_settings
from .encode_engine.stats import format_bytes, storage_report
from .encode_engine.sweeper import select_targets
from .encode_engine.utils import parse_duration


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Clean up encoder temp, cache and upload roots")
    only = parser.add_mutually_exclusive_group()
    only.add_argument("--only-temp", action="store_true", help="Empty the temp root regardless of age")
    only.add_argument("--only-cache", action="store_true", help="Empty the cache roots regardless of age")
    parser.add_argument("--max-age", default=None, help="Override every target's age threshold (e.g. 30m, 2h)")
    parser.add_argument("--config", default=None, help="YAML sweep target file (default: SWEEP_CONFIG)")
    parser.add_argument("--stats", action="store_true", help="Print storage statistics and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    if args.config:
        settings.sweep_config = args.config

    try:
        targets = settings.sweep_targets()
        max_age = parse_duration(args.max_age, 0) if args.max_age else None
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    if max_age is not None:
        targets = [replace(t, max_age_sec=max_age) for t in targets]

    if args.stats:
        report = storage_report(targets)
        for name, info in report["roots"].items():
            print(f"{name:<12} {info['size']:>12}  {info['root']}")
        print(f"{'total':<12} {report['total']:>12}")
        return 0

    sweeper = Sweeper(targets, interval=settings.sweep_interval_sec)
    if args.only_temp:
        reports = sweeper.purge(select_targets(targets, "temp"))
    elif args.only_cache:
        reports = sweeper.purge(select_targets(targets, "cache"))
    else:
        reports = sweeper.sweep_once()

    failed = False
    for r in reports:
        print(f"{r.target:<12} deleted {r.deleted:>4} of {r.scanned:<4} remaining {format_bytes(r.size_bytes)}")
        for err in r.errors:
            print(f"  error: {err}", file=sys.stderr)
        failed = failed or not r.ok
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
