"""
Normalizer for the commit history ingestion pipeline.

Turns raw commits and their file stats into rows of the two output
relations, `commits` and `commit_files`. Identical input always yields
identical rows.

Author names are free text and are not canonicalized: one contributor may
appear under several spellings, and queries grouping by author_name should
account for that.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

import chardet

from config.constants import (
    ENCODING_SAMPLE_SIZE,
    SKIP_DIFF_ERROR,
    SKIP_TIMEOUT,
    SKIP_TRUNCATED,
    TIMESTAMP_FORMAT,
    UNKNOWN_AUTHOR,
)
from commit_ingest.errors import DiffComputationError, SummarizeTimeout, TruncatedParents
from commit_ingest.repository import RawCommit
from commit_ingest.summarizer import ChangeType, FileStat

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommitRow:
    """One row of the `commits` relation."""
    id: str
    summary: str
    author_name: str
    author_email: str
    author_when: str  # UTC, TIMESTAMP_FORMAT


@dataclass(frozen=True)
class CommitFileRow:
    """One row of the `commit_files` relation."""
    id: str
    name: str
    added: int
    deleted: int


@dataclass(frozen=True)
class NormalizedCommit:
    """A commit and all of its file rows, written together."""
    commit: CommitRow
    files: tuple[CommitFileRow, ...]

    @property
    def id(self) -> str:
        return self.commit.id


@dataclass(frozen=True)
class SkippedCommit:
    """Marker for a commit that could not be summarized. Never a row."""
    id: str
    kind: str
    reason: str


class Normalizer:
    """Maps reader and summarizer output to the output schema."""

    def normalize(self, raw: RawCommit, stats: Iterable[FileStat]) -> NormalizedCommit:
        """
        Build the rows for one commit.

        File stats resolving to the same path (a type change reported as a
        delete plus an add) are summed into one row. Rows are ordered by path.
        """
        commit = CommitRow(
            id=raw.id,
            summary=self.summary(raw.message, raw.encoding),
            author_name=decode_text(raw.author_name, raw.encoding).strip() or UNKNOWN_AUTHOR,
            author_email=decode_text(raw.author_email, raw.encoding).strip() or UNKNOWN_AUTHOR,
            author_when=format_timestamp(raw.author_time),
        )

        totals: dict[str, list[int]] = {}
        for stat in stats:
            if stat.added < 0 or stat.deleted < 0:
                raise ValueError(f"Negative line count for {stat.path} in {raw.id}")
            if stat.change_type in (ChangeType.RENAMED, ChangeType.COPIED):
                # The row carries the new path only
                logger.debug(
                    f"{raw.id[:12]}: {stat.change_type.name.lower()} {stat.old_path} -> "
                    f"{stat.path} ({stat.similarity}% similar)"
                )
            counts = totals.setdefault(stat.path, [0, 0])
            counts[0] += stat.added
            counts[1] += stat.deleted

        files = tuple(
            CommitFileRow(id=raw.id, name=name, added=added, deleted=deleted)
            for name, (added, deleted) in sorted(totals.items())
        )
        return NormalizedCommit(commit=commit, files=files)

    def skipped(self, raw_id: str, error: DiffComputationError) -> SkippedCommit:
        """Build the marker for a commit whose summary failed."""
        if isinstance(error, SummarizeTimeout):
            kind = SKIP_TIMEOUT
        elif isinstance(error, TruncatedParents):
            kind = SKIP_TRUNCATED
        else:
            kind = SKIP_DIFF_ERROR
        return SkippedCommit(id=raw_id, kind=kind, reason=error.reason)

    @staticmethod
    def summary(message: bytes, encoding: Optional[str] = None) -> str:
        """First line of the commit message, stripped."""
        text = decode_text(message, encoding)
        for line in text.splitlines():
            if line.strip():
                return line.strip()
        return ""


def format_timestamp(epoch_seconds: int) -> str:
    """Render a Unix timestamp as a UTC datetime string."""
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).strftime(TIMESTAMP_FORMAT)


def decode_text(data: bytes, encoding: Optional[str] = None) -> str:
    """
    Decode commit text bytes.

    Tries the commit's declared encoding, then UTF-8, then chardet, and
    finally latin-1, which cannot fail.
    """
    if not data:
        return ""

    for candidate in (encoding, "utf-8"):
        if not candidate:
            continue
        try:
            return data.decode(candidate)
        except (UnicodeDecodeError, LookupError):
            continue

    detected = chardet.detect(data[:ENCODING_SAMPLE_SIZE]).get("encoding")
    if detected:
        try:
            return data.decode(detected, errors="replace")
        except LookupError:
            logger.debug(f"chardet suggested unknown encoding {detected}")
    return data.decode("latin-1")
