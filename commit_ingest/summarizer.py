"""
Diff summarizer for the commit history ingestion pipeline.

Computes per-path added/deleted line counts for a commit using pygit2 for
direct Object Database access. Merge commits are attributed only the lines
that are absent from every parent.
"""

import logging
import time
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import pygit2
from pygit2.enums import DeltaStatus, DiffFind, DiffOption

from config.settings import settings
from commit_ingest.errors import DiffComputationError, SummarizeTimeout, TruncatedParents
from commit_ingest.repository import shallow_boundary

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    """Type of file change in a commit."""
    ADDED = "A"
    MODIFIED = "M"
    DELETED = "D"
    RENAMED = "R"
    COPIED = "C"
    TYPECHANGE = "T"


_STATUS_TO_CHANGE = {
    DeltaStatus.ADDED: ChangeType.ADDED,
    DeltaStatus.DELETED: ChangeType.DELETED,
    DeltaStatus.RENAMED: ChangeType.RENAMED,
    DeltaStatus.COPIED: ChangeType.COPIED,
    DeltaStatus.TYPECHANGE: ChangeType.TYPECHANGE,
}


@dataclass(frozen=True)
class FileStat:
    """Line counts for one path touched by a commit."""

    path: str
    old_path: Optional[str]
    change_type: ChangeType
    added: int
    deleted: int
    is_binary: bool = False
    similarity: int = 0


class DiffSummarizer:
    """
    Summarizes commits into per-file line counts.

    One instance owns one repository handle; pygit2 handles are not safe
    to share across processes, so each worker builds its own summarizer.
    """

    def __init__(
        self,
        repo: pygit2.Repository,
        rename_threshold: Optional[int] = None,
        detect_copies: Optional[bool] = None
    ):
        """
        Initialize the diff summarizer.

        Args:
            repo: The pygit2.Repository instance to read from.
            rename_threshold: Similarity percentage (0-100) at or above which
                a deleted and an added file are reported as one rename.
            detect_copies: Also pair copied files with their source.
        """
        self.repo = repo
        self.rename_threshold = (
            settings.ingestion.rename_threshold if rename_threshold is None else rename_threshold
        )
        self.detect_copies = (
            settings.ingestion.detect_copies if detect_copies is None else detect_copies
        )
        if not 0 <= self.rename_threshold <= 100:
            raise ValueError(f"rename_threshold must be within 0..100, got {self.rename_threshold}")
        self.boundary = shallow_boundary(repo)

    def summarize(self, commit_id: str, deadline: Optional[float] = None) -> list[FileStat]:
        """
        Compute touched paths and line counts for a commit.

        Args:
            commit_id: Hex identity of the commit.
            deadline: time.monotonic() value after which the summary is
                abandoned. Checked between file patches and merge paths.

        Returns:
            FileStat entries, one per path.

        Raises:
            DiffComputationError: An object needed for the diff is unreadable.
            TruncatedParents: The commit sits on a shallow clone boundary.
            SummarizeTimeout: The deadline passed.
        """
        if commit_id in self.boundary:
            raise TruncatedParents(commit_id, "parents are outside the shallow clone")

        try:
            commit = self.repo.get(commit_id)
            if not isinstance(commit, pygit2.Commit):
                raise DiffComputationError(commit_id, "not a commit in this repository")

            parents = [self.repo[oid] for oid in commit.parent_ids]
            if len(parents) <= 1:
                parent_tree = parents[0].tree if parents else None
                diff = self._diff(parent_tree, commit.tree)
                return [self._stat_for_patch(patch) for patch in
                        self._patches(commit_id, diff, deadline)]
            return self._summarize_merge(commit_id, commit, parents, deadline)

        except DiffComputationError:
            raise
        except (pygit2.GitError, KeyError, ValueError, OSError) as e:
            raise DiffComputationError(commit_id, f"{type(e).__name__}: {e}") from e

    def diff_totals(self, commit_id: str) -> tuple[int, int]:
        """
        Insertions and deletions libgit2 reports for a non-merge commit.

        Uses the same rename policy as summarize(), so the two agree.
        """
        commit = self.repo[commit_id]
        parent_tree = commit.parents[0].tree if commit.parents else None
        stats = self._diff(parent_tree, commit.tree).stats
        return stats.insertions, stats.deletions

    def _diff(self, old_tree: Optional[pygit2.Tree], new_tree: pygit2.Tree) -> pygit2.Diff:
        """Diff two trees (None = empty tree) and apply rename detection."""
        flags = DiffOption.PATIENCE
        if old_tree is None:
            # Root commit - every line in the tree is an addition
            diff = new_tree.diff_to_tree(flags=flags, context_lines=0, swap=True)
        else:
            diff = self.repo.diff(old_tree, new_tree, flags=flags, context_lines=0)

        find_flags = DiffFind.FIND_RENAMES
        if self.detect_copies:
            find_flags |= DiffFind.FIND_COPIES
        diff.find_similar(
            flags=find_flags,
            rename_threshold=self.rename_threshold,
            copy_threshold=self.rename_threshold
        )
        return diff

    @staticmethod
    def _check_deadline(commit_id: str, deadline: Optional[float]) -> None:
        if deadline is not None and time.monotonic() >= deadline:
            raise SummarizeTimeout(commit_id, "summarization deadline exceeded")

    def _patches(self, commit_id: str, diff: pygit2.Diff, deadline: Optional[float]):
        for patch in diff:
            self._check_deadline(commit_id, deadline)
            yield patch

    def _stat_for_patch(self, patch: pygit2.Patch) -> FileStat:
        delta = patch.delta
        change_type = _STATUS_TO_CHANGE.get(delta.status, ChangeType.MODIFIED)

        if change_type is ChangeType.DELETED:
            path = delta.old_file.path
        else:
            path = delta.new_file.path
        old_path = delta.old_file.path if change_type in (ChangeType.RENAMED, ChangeType.COPIED) else None

        if delta.is_binary:
            # A touch without a line-count signal
            added = deleted = 0
        else:
            _, added, deleted = patch.line_stats

        return FileStat(
            path=path,
            old_path=old_path,
            change_type=change_type,
            added=added,
            deleted=deleted,
            is_binary=delta.is_binary,
            similarity=delta.similarity
        )

    def _summarize_merge(
        self,
        commit_id: str,
        commit: pygit2.Commit,
        parents: list[pygit2.Commit],
        deadline: Optional[float]
    ) -> list[FileStat]:
        """
        Attribute to a merge only what no parent already had.

        A path is a candidate when it differs from every parent. Lines are
        compared by content, wherever they sit in the file: an added line is
        one the merge has more copies of than any parent, and a deleted line
        is one every parent has more copies of than the merge.
        """
        per_parent: list[dict[str, pygit2.Patch]] = []
        for parent in parents:
            diff = self._diff(parent.tree, commit.tree)
            patches = {}
            for patch in self._patches(commit_id, diff, deadline):
                stat_path = (patch.delta.old_file.path
                             if patch.delta.status == DeltaStatus.DELETED
                             else patch.delta.new_file.path)
                patches[stat_path] = patch
            per_parent.append(patches)

        candidates = set(per_parent[0])
        for patches in per_parent[1:]:
            candidates &= set(patches)

        stats = []
        for path in sorted(candidates):
            self._check_deadline(commit_id, deadline)

            deltas = [patches[path].delta for patches in per_parent]
            primary = self._stat_for_patch(per_parent[0][path])
            if any(delta.is_binary for delta in deltas):
                stats.append(FileStat(
                    path=path,
                    old_path=primary.old_path,
                    change_type=primary.change_type,
                    added=0,
                    deleted=0,
                    is_binary=True,
                    similarity=primary.similarity
                ))
                continue

            merged = self._blob_lines(deltas[0].new_file, deltas[0].status != DeltaStatus.DELETED)
            in_any: Counter = Counter()
            in_all: Optional[Counter] = None
            for delta in deltas:
                lines = self._blob_lines(delta.old_file, delta.status != DeltaStatus.ADDED)
                in_any |= lines
                in_all = lines if in_all is None else in_all & lines

            n_added = sum((merged - in_any).values())
            n_deleted = sum((in_all - merged).values())
            if n_added == 0 and n_deleted == 0:
                continue

            stats.append(FileStat(
                path=path,
                old_path=primary.old_path,
                change_type=primary.change_type,
                added=n_added,
                deleted=n_deleted,
                similarity=primary.similarity
            ))

        logger.debug(
            f"Merge {commit_id[:12]}: {len(candidates)} candidate paths, "
            f"{len(stats)} attributed"
        )
        return stats

    def _blob_lines(self, diff_file: pygit2.DiffFile, present: bool) -> Counter:
        """Multiset of the lines of one side of a delta (empty if the side is absent)."""
        if not present:
            return Counter()
        lines = self.repo[diff_file.id].data.split(b"\n")
        if lines[-1] == b"":
            lines.pop()
        return Counter(lines)
