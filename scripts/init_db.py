#!/usr/bin/env python3
"""
Database initialization script.

Creates the commits/commit_files schema and the ingestion audit tables.
"""

import argparse
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.settings import settings
from commit_ingest.store import SQLiteStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(
        description="Initialize the SQLite store for commit history"
    )
    parser.add_argument(
        "--db",
        default=str(settings.store.db_path),
        help="SQLite database path"
    )

    args = parser.parse_args()

    logger.info(f"Initializing database at {args.db}")

    try:
        with SQLiteStore(db_path=args.db) as store:
            store.initialize()
        logger.info("Database initialization complete!")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
