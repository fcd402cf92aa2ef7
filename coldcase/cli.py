from __future__ import annotations

import argparse
import asyncio
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from coldcase.core.config import settings
from coldcase.db.session import AsyncSessionLocal, create_schema
from coldcase.domain.records import JobRecord
from coldcase.runtime.store import JobStore, SqlJobStore
from coldcase.runtime.tracker import ProgressTracker

MIN_THRESHOLD_HOURS = 1
MAX_THRESHOLD_HOURS = 24


def _threshold(value: str) -> int:
    hours = int(value)
    if not MIN_THRESHOLD_HOURS <= hours <= MAX_THRESHOLD_HOURS:
        raise argparse.ArgumentTypeError(
            f"threshold must be between {MIN_THRESHOLD_HOURS} and {MAX_THRESHOLD_HOURS} hours"
        )
    return hours


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="coldcase-cleanup",
        description="Find analysis jobs stuck in 'running' and mark them failed or delete them",
    )
    parser.add_argument(
        "--threshold",
        type=_threshold,
        default=settings.stuck_threshold_hours,
        help="Hours without progress before a running job counts as stuck (1-24)",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--delete", action="store_true", help="Delete stuck jobs and their units")
    mode.add_argument("--dry-run", action="store_true", help="Only list stuck jobs")
    return parser


def _jobs_table(jobs: list[JobRecord]) -> Table:
    table = Table(title="Stuck Jobs")
    table.add_column("Job")
    table.add_column("Case")
    table.add_column("Progress", justify="right")
    table.add_column("Last update", overflow="fold")
    for job in jobs:
        table.add_row(
            job.id,
            job.case_id,
            f"{job.progress_percentage}%",
            job.updated_at.isoformat() if job.updated_at else "-",
        )
    return table


async def run_cleanup(store: JobStore, args: argparse.Namespace, console: Console) -> int:
    tracker = ProgressTracker(store)
    stuck = await tracker.find_stuck(args.threshold)
    if not stuck:
        console.print(f"No jobs stuck for more than {args.threshold}h.")
        return 0

    console.print(_jobs_table(stuck))
    if args.dry_run:
        console.print(f"[yellow]Dry run:[/yellow] {len(stuck)} job(s) would be cleaned up.")
        return 0

    if args.delete:
        result = await tracker.delete_stuck(args.threshold)
        verb = "Deleted"
    else:
        result = await tracker.cleanup_stuck(args.threshold)
        verb = "Marked failed"

    console.print(Panel.fit(f"{verb}: {result.count}\nThreshold: {args.threshold}h", title="Cleanup Summary"))
    return 0


async def _main(args: argparse.Namespace, console: Console) -> int:
    await create_schema()
    async with AsyncSessionLocal() as session:
        return await run_cleanup(SqlJobStore(session), args, console)


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return asyncio.run(_main(args, Console()))


if __name__ == "__main__":
    raise SystemExit(main())
