"""Tests for the ingestion pipeline, end to end over real repositories."""

import os
import signal
import time

import pygit2
import pytest

from conftest import dump, numbered_lines
from config.constants import (
    RUN_ABORTED,
    RUN_COMPLETED,
    RUN_FAILED,
    SKIP_DIFF_ERROR,
    SKIP_TIMEOUT,
    SKIP_TRUNCATED,
    SKIP_WORKER_LOST,
)
from config.settings import ConflictPolicy, TruncatedPolicy
from commit_ingest.errors import HistoryTruncated, SourceUnavailable, WriteConflict
from commit_ingest.pipeline import IDLE, IngestionPipeline, WorkBatch
from commit_ingest.repository import RepositoryReader
from commit_ingest.store import SQLiteStore


def make_pipeline(builder, store, **kwargs) -> IngestionPipeline:
    options = dict(num_workers=1, rename_threshold=50, detect_copies=False,
                   summarize_timeout=None, incremental=True, retry_skipped=True,
                   conflict_policy=ConflictPolicy.REJECT, truncated_policy=TruncatedPolicy.WARN)
    options.update(kwargs)
    return IngestionPipeline(RepositoryReader(repo_path=builder.path), store, **options)


def build_history(builder) -> list[str]:
    """Root, edit, rename, side branch and a clean merge."""
    ids = [builder.commit({"a.txt": numbered_lines(10), "b.txt": numbered_lines(5, "b")}, message="root")]
    ids.append(builder.commit({"a.txt": numbered_lines(12), "b.txt": numbered_lines(5, "b")}, message="grow a"))
    ids.append(builder.commit({"a.txt": numbered_lines(12), "c.txt": numbered_lines(5, "b")}, message="rename b"))
    ids.append(builder.commit(
        {"a.txt": numbered_lines(12), "c.txt": numbered_lines(5, "b"), "side.txt": b"side\n"},
        parents=[ids[-1]], ref="refs/heads/side", message="side work"
    ))
    ids.append(builder.commit({"a.txt": numbered_lines(13), "c.txt": numbered_lines(5, "b")}, message="grow a again"))
    ids.append(builder.commit(
        {"a.txt": numbered_lines(13), "c.txt": numbered_lines(5, "b"), "side.txt": b"side\n"},
        parents=[ids[-1], ids[3]], message="Merge branch 'side'"
    ))
    return ids


class TestIngestion:
    """Basic runs."""

    def test_root_commit_scenario(self, builder, store):
        root = builder.commit({"a.txt": numbered_lines(10), "b.txt": numbered_lines(5)}, message="Initial")

        summary = make_pipeline(builder, store).run()

        assert summary.status == RUN_COMPLETED
        assert summary.ingested == 1
        commits, files = dump(store)
        assert [c[0] for c in commits] == [root]
        assert commits[0][1] == "Initial"
        assert files == [(root, "a.txt", 10, 0), (root, "b.txt", 5, 0)]

    def test_full_history(self, builder, store):
        ids = build_history(builder)

        summary = make_pipeline(builder, store).run()

        assert summary.ingested == len(ids)
        assert summary.skipped == [] and summary.conflicts == []
        _, files = dump(store)
        by_commit = {}
        for commit_id, name, added, deleted in files:
            by_commit.setdefault(commit_id, []).append((name, added, deleted))
        assert by_commit[ids[1]] == [("a.txt", 2, 0)]
        assert by_commit[ids[2]] == [("c.txt", 0, 0)]
        assert by_commit[ids[3]] == [("side.txt", 1, 0)]
        # The clean merge has a commits row but no commit_files rows
        assert ids[5] not in by_commit

    def test_missing_repository_is_fatal(self, tmp_path, store):
        pipeline = IngestionPipeline(RepositoryReader(repo_path=tmp_path / "missing"), store, num_workers=1)
        with pytest.raises(SourceUnavailable):
            pipeline.run()
        assert store.recent_runs() == []

    def test_limit_does_not_advance_checkpoint(self, builder, store):
        build_history(builder)

        summary = make_pipeline(builder, store).run(limit=2)

        assert summary.ingested == 2
        assert store.last_checkpoint(str(builder.path)) is None


class TestIdempotence:
    """Re-running never duplicates rows."""

    def test_second_run_is_empty(self, builder, store):
        build_history(builder)
        make_pipeline(builder, store).run()
        before = dump(store)

        summary = make_pipeline(builder, store).run()

        assert summary.commits_seen == 0
        assert dump(store) == before

    def test_full_rewalk_reports_unchanged(self, builder, store):
        ids = build_history(builder)
        make_pipeline(builder, store).run()
        before = dump(store)

        summary = make_pipeline(builder, store, incremental=False).run()

        assert summary.ingested == 0
        assert summary.unchanged == len(ids)
        assert dump(store) == before


class TestIncremental:
    """Ingesting T then T+k equals a from-scratch run over T+k."""

    def test_extension_matches_full_run(self, builder, tmp_path):
        build_history(builder)
        incremental = SQLiteStore(db_path=tmp_path / "incremental.db")
        incremental.initialize()
        make_pipeline(builder, incremental).run()

        # Extend the history, including a new side branch merged back in
        tip = builder.commit({"a.txt": numbered_lines(14), "c.txt": numbered_lines(5, "b"),
                              "side.txt": b"side\n"}, message="more")
        extra = builder.commit({"a.txt": numbered_lines(13), "c.txt": numbered_lines(5, "b"),
                                "side.txt": b"side\n", "x.txt": b"x\n"},
                               parents=[tip], ref="refs/heads/extra")
        builder.commit({"a.txt": numbered_lines(14), "c.txt": numbered_lines(5, "b"),
                        "side.txt": b"side\n", "x.txt": b"x\n"}, parents=[tip, extra])

        summary = make_pipeline(builder, incremental).run()
        assert summary.resume_from is not None
        assert summary.ingested == 3

        full = SQLiteStore(db_path=tmp_path / "full.db")
        full.initialize()
        make_pipeline(builder, full).run()

        assert dump(incremental) == dump(full)
        incremental.close()
        full.close()

    def test_explicit_resume_point(self, builder, store):
        ids = build_history(builder)

        summary = make_pipeline(builder, store, resume_from=ids[4], incremental=False).run()

        # Only the side branch commit and the merge are outside ids[4]'s ancestry
        assert summary.ingested == 2
        assert {c[0] for c in dump(store)[0]} == {ids[3], ids[5]}


class TestSkipping:
    """Recoverable failures become enumerable skipped commits."""

    def _history_with_missing_blob(self, builder):
        builder.commit({"a.txt": b"a\n"})
        payload = numbered_lines(5, "payload")
        broken = builder.commit({"a.txt": b"a\n", "b.txt": payload})
        builder.commit({"a.txt": b"a\nmore\n", "b.txt": payload})
        builder.object_path(builder.blob_id(payload)).unlink()
        return broken, payload

    def test_unreadable_blob_skips_commit(self, builder, store):
        broken, _ = self._history_with_missing_blob(builder)

        summary = make_pipeline(builder, store).run()

        assert summary.status == RUN_COMPLETED
        assert summary.ingested == 2
        assert [s.id for s in summary.skipped] == [broken]
        assert summary.skipped[0].kind == SKIP_DIFF_ERROR
        assert not store.has_commit(broken)
        assert store.skipped_ids() == [broken]

    def test_skipped_commit_retried(self, builder, store):
        broken, payload = self._history_with_missing_blob(builder)
        make_pipeline(builder, store).run()

        # Object restored, e.g. after a re-fetch
        pygit2.Repository(str(builder.path)).create_blob(payload)
        summary = make_pipeline(builder, store).run()

        assert summary.ingested == 1
        assert store.has_commit(broken)
        assert store.skipped_ids() == []

    def test_timeout_skips_commit(self, builder, store):
        builder.commit({"a.txt": b"a\n"})

        summary = make_pipeline(builder, store, summarize_timeout=1e-9).run()

        assert summary.ingested == 0
        assert [s.kind for s in summary.skipped] == [SKIP_TIMEOUT]

    def test_non_positive_timeout_rejected(self, builder, store):
        builder.commit({"a.txt": b"a\n"})
        with pytest.raises(ValueError):
            make_pipeline(builder, store, summarize_timeout=0)


class TestPolicies:
    """Conflict and truncated-history policies."""

    def _tamper(self, store, commit_id):
        store.conn.execute("UPDATE commits SET summary = 'tampered' WHERE id = ?", (commit_id,))

    def test_write_conflict_is_fatal_by_default(self, builder, store):
        root = builder.commit({"a.txt": b"a\n"}, message="root")
        make_pipeline(builder, store).run()
        self._tamper(store, root)

        with pytest.raises(WriteConflict) as exc_info:
            make_pipeline(builder, store, incremental=False).run()

        assert exc_info.value.summary.status == RUN_FAILED
        assert exc_info.value.summary.conflicts == [root]
        assert store.recent_runs()[0]["status"] == RUN_FAILED
        assert store.get_commit(root).commit.summary == "tampered"

    def test_overwrite_policy(self, builder, store):
        root = builder.commit({"a.txt": b"a\n"}, message="root")
        make_pipeline(builder, store).run()
        self._tamper(store, root)

        summary = make_pipeline(builder, store, incremental=False,
                                conflict_policy=ConflictPolicy.OVERWRITE).run()

        assert summary.overwritten == 1
        assert store.get_commit(root).commit.summary == "root"

    def test_shallow_history_warns(self, builder, store):
        """The boundary commit is skipped, never stored as a root commit."""
        builder.commit({"big.txt": numbered_lines(100)})
        boundary = builder.commit({"big.txt": numbered_lines(101)})
        tip = builder.commit({"big.txt": numbered_lines(102)})
        (builder.path / ".git" / "shallow").write_text(boundary + "\n")

        summary = make_pipeline(builder, store).run()

        assert summary.status == RUN_COMPLETED
        assert summary.history_truncated
        assert store.recent_runs()[0]["history_truncated"] == 1
        assert [(s.id, s.kind) for s in summary.skipped] == [(boundary, SKIP_TRUNCATED)]
        assert not store.has_commit(boundary)
        _, files = dump(store)
        assert [f for f in files if f[0] == boundary] == []
        assert (tip, "big.txt", 1, 0) in files
        # Older history may still arrive, so the run is not a resume point
        assert store.last_checkpoint(str(builder.path)) is None

    def test_shallow_history_abort_policy(self, builder, store):
        builder.commit({"a.txt": b"a\n"})
        second = builder.commit({"a.txt": b"b\n"})
        (builder.path / ".git" / "shallow").write_text(second + "\n")

        with pytest.raises(HistoryTruncated):
            make_pipeline(builder, store, truncated_policy=TruncatedPolicy.ABORT).run()


class TestCancellation:
    """Aborting leaves no partially written commit."""

    def test_interrupt_mid_commit(self, builder, tmp_path):
        ids = build_history(builder)

        class FlakyStore(SQLiteStore):
            writes = 0

            def _insert(self, conn, normalized):
                super()._insert(conn, normalized)
                FlakyStore.writes += 1
                if FlakyStore.writes == 3:
                    raise KeyboardInterrupt

        store = FlakyStore(db_path=tmp_path / "flaky.db")
        store.initialize()

        summary = make_pipeline(builder, store).run()

        assert summary.status == RUN_ABORTED
        assert summary.ingested == 2
        commits, files = dump(store)
        stored = {c[0] for c in commits}
        assert stored == set(ids[:2])
        assert {f[0] for f in files} <= stored
        assert store.last_checkpoint() is None
        store.close()

    def test_stop_between_commits(self, builder, store):
        build_history(builder)
        pipeline = make_pipeline(builder, store)
        original = pipeline._consume

        def consume_then_stop(result, summary):
            original(result, summary)
            pipeline.stop()

        pipeline._consume = consume_then_stop
        summary = pipeline.run()

        assert summary.status == RUN_ABORTED
        assert summary.ingested == 1


class TestParallel:
    """Worker processes produce the same relations as the inline path."""

    def test_parallel_matches_inline(self, builder, tmp_path):
        build_history(builder)

        inline = SQLiteStore(db_path=tmp_path / "inline.db")
        inline.initialize()
        make_pipeline(builder, inline).run()

        parallel = SQLiteStore(db_path=tmp_path / "parallel.db")
        parallel.initialize()
        summary = make_pipeline(builder, parallel, num_workers=2, batch_size=2).run()

        assert summary.status == RUN_COMPLETED
        assert dump(parallel) == dump(inline)
        inline.close()
        parallel.close()

    def test_killed_worker_does_not_stall_the_run(self, builder, store):
        ids = build_history(builder)
        pipeline = make_pipeline(builder, store, num_workers=2, batch_size=1)
        original = pipeline._consume
        killed = []

        def consume_then_kill(result, summary):
            original(result, summary)
            if not killed:
                victim = pipeline.workers[0]
                os.kill(victim.pid, signal.SIGKILL)
                victim.join(timeout=5.0)
                killed.append(victim.pid)

        pipeline._consume = consume_then_kill
        summary = pipeline.run()

        assert killed
        assert summary.status == RUN_COMPLETED
        stored = {c[0] for c in dump(store)[0]}
        # Every commit is either stored or listed for the next run's retry
        assert stored | {s.id for s in summary.skipped} == set(ids)
        assert {s.kind for s in summary.skipped} <= {SKIP_WORKER_LOST}

    def test_overrunning_worker_is_replaced(self, builder, store):
        """A worker stuck past its batch deadline is terminated; its commits are skipped."""
        builder.commit({"a.txt": b"a\n"})
        raw = next(RepositoryReader(repo_path=builder.path).iter_commits())
        pipeline = make_pipeline(builder, store, num_workers=1, summarize_timeout=1.0)
        pipeline._start_workers()
        try:
            stuck = pipeline.workers[0]
            held = WorkBatch(batch_id=7, commits=[raw])
            pipeline.assigned[0].append(held)
            pipeline.current_batch[0] = held.batch_id
            pipeline.batch_started[0] = time.time() - 60

            [lost] = pipeline._reclaim()

            assert lost.batch_id == 7
            assert lost.commits == []
            assert [(s.id, s.kind) for s in lost.skipped] == [(raw.id, SKIP_TIMEOUT)]
            assert not stuck.is_alive()
            assert pipeline.workers[0] is not stuck
            assert pipeline.workers[0].is_alive()
            assert pipeline.current_batch[0] == IDLE
            # Settled once; a late report from the old worker is ignored
            assert pipeline._settle(7)
            assert not pipeline._settle(7)
        finally:
            pipeline._stop_workers()

    def test_dead_worker_hands_queued_work_to_replacement(self, builder, store):
        builder.commit({"a.txt": b"a\n"})
        builder.commit({"a.txt": b"b\n"})
        first, second = RepositoryReader(repo_path=builder.path).iter_commits()
        pipeline = make_pipeline(builder, store, num_workers=1)
        pipeline._start_workers()
        try:
            dead = pipeline.workers[0]
            dead.kill()
            dead.join(timeout=5.0)
            held = WorkBatch(batch_id=1, commits=[first])
            waiting = WorkBatch(batch_id=2, commits=[second])
            pipeline.assigned[0].extend([held, waiting])
            pipeline.current_batch[0] = held.batch_id

            [lost] = pipeline._reclaim()

            assert [(s.id, s.kind) for s in lost.skipped] == [(first.id, SKIP_WORKER_LOST)]
            assert pipeline.assigned[0] == [held, waiting]
            assert pipeline.workers[0].is_alive()
            # The replacement summarizes the waiting batch
            result = pipeline.result_queue.get(timeout=30.0)
            assert result.batch_id == 2
            assert [c.id for c in result.commits] == [second.id]
        finally:
            pipeline._stop_workers()
