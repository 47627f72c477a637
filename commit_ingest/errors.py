"""
Error taxonomy for the commit history ingestion pipeline.

SourceUnavailable is fatal. HistoryTruncated is a warning by default.
DiffComputationError (and its timeout subclass) is recovered as a skipped
commit. WriteConflict is fatal unless the overwrite policy is configured.
"""

from typing import Optional


class IngestionError(Exception):
    """Base exception for ingestion failures."""
    pass


class SourceUnavailable(IngestionError):
    """Exception raised when the source repository cannot be opened or walked."""
    pass


class HistoryTruncated(IngestionError):
    """Exception raised when the history is shallow or has missing ancestors."""

    def __init__(self, message: str, boundary: Optional[str] = None):
        super().__init__(message)
        self.boundary = boundary


class DiffComputationError(IngestionError):
    """Exception raised when a commit's diff cannot be computed."""

    def __init__(self, commit_id: str, message: str):
        super().__init__(f"{commit_id}: {message}")
        self.commit_id = commit_id
        self.reason = message


class SummarizeTimeout(DiffComputationError):
    """Exception raised when summarizing a commit exceeds its deadline."""
    pass


class TruncatedParents(DiffComputationError):
    """Exception raised for a commit whose parents were cut off by a shallow clone."""
    pass


class WriteConflict(IngestionError):
    """Exception raised when a stored commit differs from the incoming record."""

    def __init__(self, commit_id: str, message: str):
        super().__init__(f"{commit_id}: {message}")
        self.commit_id = commit_id
        self.reason = message
        # Set by the pipeline so callers can still report the failed run
        self.summary = None
