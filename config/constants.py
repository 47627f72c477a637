"""
Centralized constants for the ingestion pipeline.

Values here are fixed by the output schema; tunables belong in settings.py.
"""

# Placeholder for missing author identity fields
UNKNOWN_AUTHOR = "<none>"

# author_when rendering; sortable and understood by SQLite date()/datetime()
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

# Audit event kinds stored in ingest_events
EVENT_SKIPPED = "skipped"
EVENT_CONFLICT = "conflict"
EVENT_OVERWRITTEN = "overwritten"

# Skip reasons
SKIP_DIFF_ERROR = "diff_error"
SKIP_TIMEOUT = "timeout"
SKIP_TRUNCATED = "truncated"
SKIP_WORKER_LOST = "worker_lost"

# Run statuses stored in ingest_runs
RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_ABORTED = "aborted"
RUN_FAILED = "failed"

SCHEMA_VERSION = 1

# Shallow clone boundary list, relative to the .git directory
SHALLOW_FILE = "shallow"

# Sample size handed to chardet when a text field is not valid UTF-8
ENCODING_SAMPLE_SIZE = 8000
