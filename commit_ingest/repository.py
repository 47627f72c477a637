"""
Log reader for the commit history ingestion pipeline.
Opens the source repository read-only and streams raw commit records.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Union

import pygit2
from pygit2.enums import SortMode

from config.constants import SHALLOW_FILE
from config.settings import settings
from commit_ingest.errors import HistoryTruncated, SourceUnavailable

logger = logging.getLogger(__name__)

# Oldest first, parents before children, ties broken by commit time
WALK_ORDER = SortMode.TOPOLOGICAL | SortMode.TIME | SortMode.REVERSE


@dataclass(frozen=True)
class RawCommit:
    """A commit as read from the object database, before normalization."""

    id: str
    parent_ids: tuple[str, ...]
    author_name: bytes
    author_email: bytes
    author_time: int  # Unix timestamp
    author_offset: int  # Minutes east of UTC
    message: bytes
    encoding: Optional[str] = None

    @property
    def is_merge(self) -> bool:
        return len(self.parent_ids) > 1

    @property
    def is_root(self) -> bool:
        return not self.parent_ids

    @classmethod
    def from_commit(cls, commit: pygit2.Commit) -> "RawCommit":
        author = commit.author
        return cls(
            id=str(commit.id),
            parent_ids=tuple(str(p) for p in commit.parent_ids),
            author_name=author.raw_name or b"",
            author_email=author.raw_email or b"",
            author_time=author.time,
            author_offset=author.offset,
            message=commit.raw_message or b"",
            encoding=commit.message_encoding,
        )


class RepositoryReader:
    """
    Reads commit history from a Git repository.

    The walk order is deterministic for a given history, so incremental
    ingestion reproduces the same sequence of work across runs.
    """

    def __init__(
        self,
        repo_path: Optional[Union[str, Path]] = None,
        ref: Optional[str] = None
    ):
        """
        Initialize the reader.

        Args:
            repo_path: Path to the repository. Defaults to settings.
            ref: Reference to walk from. Defaults to settings (HEAD).
        """
        self.repo_path = Path(repo_path or settings.repository.path)
        self.ref = ref or settings.repository.ref
        self._repo: Optional[pygit2.Repository] = None

    @property
    def repo(self) -> pygit2.Repository:
        """Get the pygit2 Repository instance, opening if needed."""
        if self._repo is None:
            self._repo = open_repository(self.repo_path)
        return self._repo

    def check_history(self) -> None:
        """
        Raise HistoryTruncated if the repository is a shallow clone.

        Commits on the shallow boundary have parents that are not in the
        object database, so their diffs cannot be computed.
        """
        if self.repo.is_shallow:
            boundary = sorted(shallow_boundary(self.repo))
            raise HistoryTruncated(
                f"Repository at {self.repo_path} is a shallow clone "
                f"({len(boundary)} boundary commits)",
                boundary=boundary[0] if boundary else None
            )

    def head_id(self) -> str:
        """Identity of the commit the walk starts from."""
        return str(self._resolve(self.ref).id)

    def get_raw(self, commit_id: str) -> Optional[RawCommit]:
        """Read one commit by identity, or None if it is not in this repository."""
        try:
            obj = self.repo.get(commit_id)
        except ValueError:
            return None
        if not isinstance(obj, pygit2.Commit):
            return None
        return RawCommit.from_commit(obj)

    def contains(self, commit_id: str) -> bool:
        return self.get_raw(commit_id) is not None

    def iter_commits(self, resume_from: Optional[str] = None) -> Iterator[RawCommit]:
        """
        Lazily yield raw commits, oldest first.

        Each call starts a fresh walk, so the sequence can be restarted.

        Args:
            resume_from: A previously ingested commit. It and all of its
                ancestors are hidden from the walk.

        Yields:
            RawCommit records.

        Raises:
            SourceUnavailable: The start ref or resume point does not resolve.
            HistoryTruncated: The walk reached a missing ancestor.
        """
        start = self._resolve(self.ref)
        walker = self.repo.walk(start.id, WALK_ORDER)

        if resume_from:
            hidden = self._resolve(resume_from)
            walker.hide(hidden.id)
            logger.info(f"Resuming after {resume_from[:12]}")

        while True:
            try:
                commit = next(walker)
            except StopIteration:
                return
            except (pygit2.GitError, KeyError) as e:
                raise HistoryTruncated(f"History walk stopped at a missing object: {e}") from e
            yield RawCommit.from_commit(commit)

    def _resolve(self, rev: str) -> pygit2.Commit:
        try:
            obj = self.repo.revparse_single(rev)
            return obj.peel(pygit2.Commit)
        except (KeyError, ValueError, pygit2.GitError) as e:
            raise SourceUnavailable(
                f"Cannot resolve '{rev}' in {self.repo_path}: {e}"
            ) from e

    def close(self) -> None:
        """Close the repository handle."""
        if self._repo is not None:
            self._repo.free()
            self._repo = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def open_repository(repo_path: Union[str, Path]) -> pygit2.Repository:
    """
    Open a repository for reading.

    Raises:
        SourceUnavailable: The path is missing or is not a Git repository.
    """
    path = Path(repo_path)
    if not path.exists():
        raise SourceUnavailable(f"Repository not found at {path}")
    try:
        return pygit2.Repository(str(path))
    except (pygit2.GitError, KeyError, OSError) as e:
        raise SourceUnavailable(f"Cannot open repository at {path}: {e}") from e


def shallow_boundary(repo: pygit2.Repository) -> frozenset[str]:
    """
    Commits whose parents were cut off by a shallow clone.

    libgit2 reports these commits as parentless, so they must not be
    summarized as root commits.
    """
    shallow = Path(repo.path) / SHALLOW_FILE
    if not shallow.exists():
        return frozenset()
    return frozenset(
        line.strip() for line in shallow.read_text().splitlines() if line.strip()
    )
