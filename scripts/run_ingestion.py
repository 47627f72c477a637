#!/usr/bin/env python3
"""
Main ingestion runner script.

Orchestrates the full ingestion pipeline:
1. Open and validate the source repository
2. Initialize the SQLite store
3. Summarize commits in parallel
4. Write commits and commit_files, then print the run summary
"""

import argparse
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from config.constants import RUN_COMPLETED
from config.settings import ConflictPolicy, TruncatedPolicy, settings
from commit_ingest.errors import HistoryTruncated, SourceUnavailable, WriteConflict
from commit_ingest.pipeline import IngestionPipeline, RunSummary
from commit_ingest.repository import RepositoryReader
from commit_ingest.store import SQLiteStore

console = Console()
logger = logging.getLogger(__name__)


def setup_logging() -> None:
    handlers = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))
    logging.basicConfig(
        level=settings.log_level.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def print_summary(summary: RunSummary) -> None:
    table = Table(title=f"Run {summary.run_id} ({summary.status})")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right")
    table.add_row("Ingested", f"{summary.ingested:,}")
    table.add_row("Unchanged", f"{summary.unchanged:,}")
    table.add_row("Overwritten", f"{summary.overwritten:,}")
    table.add_row("Skipped", f"{len(summary.skipped):,}")
    table.add_row("Conflicts", f"{len(summary.conflicts):,}")
    console.print(table)

    if summary.history_truncated:
        console.print("[yellow]History is truncated: aggregates cover partial data.[/yellow]")

    for skipped in summary.skipped[:20]:
        console.print(f"  [dim]skipped[/dim] {skipped.id[:12]} {skipped.kind}: {skipped.reason}")
    if len(summary.skipped) > 20:
        console.print(f"  [dim]... {len(summary.skipped) - 20} more (see ingest_events)[/dim]")
    for commit_id in summary.conflicts:
        console.print(f"  [red]conflict[/red] {commit_id}")


def main():
    parser = argparse.ArgumentParser(
        description="Ingest Git commit history into the commits/commit_files store"
    )
    parser.add_argument(
        "--repo",
        type=str,
        default=None,
        help="Path to the Git repository (default: from settings)"
    )
    parser.add_argument(
        "--ref",
        type=str,
        default=None,
        help="Reference to walk from (default: HEAD)"
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="SQLite database path (default: from settings)"
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=0,
        help="Number of worker processes (0 = auto, 1 = single process)"
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Commits per batch"
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Limit number of commits to process"
    )
    parser.add_argument(
        "--resume",
        type=str,
        default=None,
        help="Commit hash whose ancestry is already ingested"
    )
    parser.add_argument(
        "--full",
        action="store_true",
        help="Ignore the stored checkpoint and walk the whole history"
    )
    parser.add_argument(
        "--rename-threshold",
        type=int,
        default=None,
        help="Similarity percent for rename pairing (0-100)"
    )
    parser.add_argument(
        "--detect-copies",
        action="store_true",
        help="Also pair copied files with their source"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds allowed per commit summary"
    )
    parser.add_argument(
        "--no-timeout",
        action="store_true",
        help="Do not bound the time spent on one commit"
    )
    parser.add_argument(
        "--on-conflict",
        choices=[p.value for p in ConflictPolicy],
        default=None,
        help="Policy when a stored commit differs from the history"
    )
    parser.add_argument(
        "--on-truncated",
        choices=[p.value for p in TruncatedPolicy],
        default=None,
        help="Policy when the history is shallow or partial"
    )

    args = parser.parse_args()
    if args.timeout is not None and args.timeout <= 0:
        parser.error("--timeout must be greater than 0")
    setup_logging()

    console.print(Panel.fit(
        "[bold blue]Commit History Ingestion[/bold blue]\n"
        "[dim]Building commits / commit_files from version-control history[/dim]",
        border_style="blue"
    ))

    settings.ensure_directories()

    reader = RepositoryReader(repo_path=args.repo, ref=args.ref)
    store = SQLiteStore(db_path=args.db)
    console.print(f"[cyan]Repository:[/cyan] {reader.repo_path}")
    console.print(f"[cyan]Store:[/cyan] {store.db_path}")

    kwargs = {}
    if args.no_timeout:
        kwargs["summarize_timeout"] = None
    elif args.timeout is not None:
        kwargs["summarize_timeout"] = args.timeout

    try:
        store.initialize()
        pipeline = IngestionPipeline(
            reader,
            store,
            num_workers=args.workers or None,
            batch_size=args.batch_size,
            rename_threshold=args.rename_threshold,
            detect_copies=args.detect_copies or None,
            conflict_policy=args.on_conflict,
            truncated_policy=args.on_truncated,
            resume_from=args.resume,
            incremental=False if args.full else None,
            **kwargs
        )

        console.print(f"\n[yellow]Starting ingestion...[/yellow]")
        console.print(f"[dim]Workers: {pipeline.num_workers}, Batch size: {pipeline.batch_size}[/dim]")

        summary = pipeline.run(limit=args.limit)
        print_summary(summary)

        stats = store.get_stats()
        console.print(f"\n[green]Store totals:[/green]")
        console.print(f"  commits: {stats['commits_total']:,}")
        console.print(f"  commit_files: {stats['commit_files_total']:,}")

        if summary.status != RUN_COMPLETED:
            sys.exit(130)

    except SourceUnavailable as e:
        console.print(f"[red]Source unavailable: {e}[/red]")
        sys.exit(1)
    except HistoryTruncated as e:
        console.print(f"[red]History truncated, aborting: {e}[/red]")
        sys.exit(1)
    except WriteConflict as e:
        console.print(f"[red]Write conflict: {e}[/red]")
        console.print("[dim]The stored history was rewritten upstream; "
                      "re-run with --on-conflict overwrite to replace it.[/dim]")
        if e.summary is not None:
            print_summary(e.summary)
        sys.exit(2)
    finally:
        store.close()
        reader.close()


if __name__ == "__main__":
    main()
