#!/usr/bin/env python3
"""Find (and optionally reset) calls with impossible stored gains.

Usage:
    python3 tools/cleanup.py                  # Dry run: report only
    python3 tools/cleanup.py --live           # Reset corrupted calls to baseline
    python3 tools/cleanup.py --token <mint>   # Restrict to one token
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add backend/ to import path
BACKEND_DIR = Path(__file__).resolve().parent.parent / "backend"
sys.path.insert(0, str(BACKEND_DIR))

os.chdir(BACKEND_DIR)  # So .env is found by pydantic-settings

from models.schemas import CallFilters, CorruptionReport  # noqa: E402
from services.auditor import run_corruption_audit  # noqa: E402


def print_report(report: CorruptionReport) -> None:
    print(f"\n{'='*80}")
    print(
        f"CORRUPTION AUDIT — {report.corrupted_count}/{report.total} corrupted "
        f"({report.corruption_rate:.2f}%){' — DRY RUN' if report.dry_run else ''}"
    )
    print(f"{'='*80}\n")

    for i, result in enumerate(report.corrupted, 1):
        possible = (
            f"{result.max_possible_pct:.2f}%" if result.max_possible_pct is not None else "n/a"
        )
        print(f"  {i:3d}. {result.call_id} [{result.token[:12]}]")
        print(f"       Stored: {result.stored_max_pct:.2f}% | Possible: {possible}")
        print(f"       {result.reason}")

    if not report.dry_run:
        print(f"\n  Fixed: {report.fixed} | Failed: {report.failed}")
    elif report.corrupted:
        print("\n  Re-run with --live to reset these calls.")


def main():
    parser = argparse.ArgumentParser(description="Audit stored call progress for corruption")
    parser.add_argument("--live", action="store_true", help="Reset corrupted calls (default: dry run)")
    parser.add_argument("--token", help="Only calls on this token")
    parser.add_argument("--group-id", help="Only calls from this group")
    args = parser.parse_args()

    filters = CallFilters(token=args.token, group_id=args.group_id)
    print(f"Auditing active calls{' (LIVE)' if args.live else ' (dry run)'}...")
    report = asyncio.run(run_corruption_audit(fix=args.live, filters=filters))
    print_report(report)


if __name__ == "__main__":
    main()
