"""Shared fixtures: throwaway Git repositories built with pygit2."""

import sys
from pathlib import Path
from typing import Optional

import pygit2
import pytest
from pygit2.enums import FileMode

sys.path.insert(0, str(Path(__file__).parent.parent))

from commit_ingest.store import SQLiteStore


BASE_TIME = 1_600_000_000  # 2020-09-13 12:26:40 UTC


def numbered_lines(count: int, prefix: str = "line") -> bytes:
    """Distinct, reasonably long lines so rename similarity is meaningful."""
    return b"".join(
        f"{prefix} {i:03d}: the quick brown fox jumps over the lazy dog\n".encode()
        for i in range(count)
    )


class RepoBuilder:
    """Creates commits from full file snapshots without touching a work tree."""

    def __init__(self, path: Path):
        self.path = path
        self.repo = pygit2.init_repository(str(path), initial_head="master")
        self._tick = 0

    def _tree(self, files: dict) -> pygit2.Oid:
        builder = self.repo.TreeBuilder()
        subdirs: dict[str, dict] = {}
        for path, data in files.items():
            head, _, rest = path.partition("/")
            if rest:
                subdirs.setdefault(head, {})[rest] = data
            else:
                builder.insert(head, self.repo.create_blob(data), FileMode.BLOB)
        for name, sub in subdirs.items():
            builder.insert(name, self._tree(sub), FileMode.TREE)
        return builder.write()

    def commit(
        self,
        files: dict,
        message: str = "change",
        parents: Optional[list] = None,
        ref: str = "refs/heads/master",
        author: str = "Alice",
        email: str = "alice@example.com",
        when: Optional[int] = None,
        offset: int = 0
    ) -> str:
        """
        Commit a snapshot of `files` (path -> bytes) and move `ref` to it.

        Parents default to the current target of `ref`.
        """
        if parents is None:
            existing = self.repo.references.get(ref)
            parents = [str(existing.target)] if existing is not None else []

        self._tick += 60
        signature = pygit2.Signature(author, email, when or BASE_TIME + self._tick, offset)
        oid = self.repo.create_commit(
            None,
            signature,
            signature,
            message,
            self._tree(files),
            [pygit2.Oid(hex=p) for p in parents]
        )
        self.repo.references.create(ref, oid, force=True)
        return str(oid)

    def object_path(self, oid_hex: str) -> Path:
        return Path(self.repo.path) / "objects" / oid_hex[:2] / oid_hex[2:]

    def blob_id(self, data: bytes) -> str:
        return str(pygit2.hash(data))


@pytest.fixture
def builder(tmp_path):
    return RepoBuilder(tmp_path / "repo")


@pytest.fixture
def store(tmp_path):
    s = SQLiteStore(db_path=tmp_path / "commits.db")
    s.initialize()
    yield s
    s.close()


def dump(store: SQLiteStore) -> tuple[list, list]:
    """Full contents of both relations, in a stable order."""
    commits = store.conn.execute(
        "SELECT id, summary, author_name, author_email, author_when FROM commits ORDER BY id"
    ).fetchall()
    files = store.conn.execute(
        "SELECT id, name, added, deleted FROM commit_files ORDER BY id, name"
    ).fetchall()
    return commits, files
