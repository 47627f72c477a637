#!/usr/bin/env python3
"""Show store statistics and recent ingestion runs."""
import sqlite3
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from rich.console import Console
from rich.table import Table

from config.settings import settings
from commit_ingest.store import SQLiteStore

console = Console()

db_path = Path(sys.argv[1] if len(sys.argv) > 1 else settings.store.db_path)
if not db_path.exists():
    console.print(f"[red]No database at {db_path}[/red] (run scripts/init_db.py or an ingestion first)")
    sys.exit(1)

try:
    with SQLiteStore(db_path=db_path) as store:
        stats = store.get_stats()
        runs = store.recent_runs(limit=10)
        pending = store.skipped_ids()
except sqlite3.OperationalError as e:
    console.print(f"[red]{db_path} is not an ingestion store: {e}[/red]")
    sys.exit(1)

console.print("=" * 50)
console.print(" STORE STATISTICS")
console.print("=" * 50)
console.print("\n[bold]Relations[/bold]")
console.print(f"  commits rows:         {stats['commits_total']:,}")
console.print(f"  commit_files rows:    {stats['commit_files_total']:,}")
console.print(f"  Skipped, not stored:  {len(pending):,}")

table = Table(title="Recent runs")
for column in ("run", "status", "started", "ingested", "unchanged", "skipped", "conflicts", "truncated"):
    table.add_column(column)
for run in runs:
    table.add_row(
        str(run["run_id"]),
        run["status"],
        run["started_at"],
        str(run["ingested"]),
        str(run["unchanged"]),
        str(run["skipped"]),
        str(run["conflicts"]),
        "yes" if run["history_truncated"] else ""
    )
console.print(table)
