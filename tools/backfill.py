#!/usr/bin/env python3
"""Re-evaluate historical calls against ATH data, page by page.

Usage:
    python3 tools/backfill.py                         # All calls, live
    python3 tools/backfill.py --dry-run               # Compute only, persist nothing
    python3 tools/backfill.py --token <mint> --limit 200
    python3 tools/backfill.py --run-id 20250101-120000  # Resume a run
    python3 tools/backfill.py --max-pages 1           # Process one page and stop

Each page is one ``run_backfill`` invocation; the next page resumes from
the run's cursor.
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

from models.schemas import BackfillRun, CallFilters  # noqa: E402
from services.backfill import run_backfill_pages  # noqa: E402
from services.errors import ValidationError  # noqa: E402


def print_page(page: int, run: BackfillRun) -> None:
    print(
        f"  Page {page}: cursor={run.cursor} scanned={run.scanned} "
        f"updated={run.updated} skipped={run.skipped} errors={run.errors}"
    )


async def walk_pages(
    filters: CallFilters,
    limit: int | None,
    dry_run: bool,
    run_id: str | None,
    max_pages: int | None,
) -> None:
    run = await run_backfill_pages(
        filters=filters,
        limit=limit,
        dry_run=dry_run,
        run_id=run_id,
        max_pages=max_pages,
        on_page=print_page,
    )
    if run.has_more and not dry_run:
        print(f"\nPaused. Resume with --run-id {run.run_id}")

    print(f"\n{'='*60}")
    print(f"RUN {run.run_id} — {run.status.value}{' (dry run)' if dry_run else ''}")
    print(f"{'='*60}")
    print(f"  Scanned: {run.scanned}")
    print(f"  Updated: {run.updated}")
    print(f"  Skipped: {run.skipped}")
    print(f"  Errors:  {run.errors}")


def main():
    parser = argparse.ArgumentParser(description="Backfill call progress from ATH data")
    parser.add_argument("--token", help="Only calls on this token")
    parser.add_argument("--group-id", help="Only calls from this group")
    parser.add_argument("--from-ts", type=int, help="Earliest call timestamp (unix seconds)")
    parser.add_argument("--to-ts", type=int, help="Latest call timestamp (unix seconds)")
    parser.add_argument("--limit", type=int, help="Calls per page")
    parser.add_argument("--run-id", help="Resume an existing run")
    parser.add_argument("--max-pages", type=int, help="Stop after this many pages")
    parser.add_argument("--dry-run", action="store_true", help="Compute without persisting")
    args = parser.parse_args()

    filters = CallFilters(
        token=args.token,
        group_id=args.group_id,
        from_ts=args.from_ts,
        to_ts=args.to_ts,
    )

    print(f"Starting backfill{' (dry run)' if args.dry_run else ''}...")
    try:
        asyncio.run(
            walk_pages(filters, args.limit, args.dry_run, args.run_id, args.max_pages)
        )
    except ValidationError as exc:
        print(f"Error: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
