"""
Producer-Consumer multiprocessing pipeline for ingesting commit history.

The log reader is the single producer. Worker processes summarize and
normalize commits in parallel, and the main process is the single writer,
so store writes never race. The main process also dispatches the work, so
it always knows which batches a lost worker held.
"""

import logging
import multiprocessing as mp
import sys
import threading
import time
from dataclasses import dataclass, field
from itertools import islice
from multiprocessing import Event, Process, Queue
from queue import Empty
from typing import Iterable, Iterator, Optional

import pygit2
from tqdm import tqdm

from config.constants import (
    RUN_ABORTED,
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_RUNNING,
    SKIP_DIFF_ERROR,
    SKIP_TIMEOUT,
    SKIP_WORKER_LOST,
)
from config.settings import ConflictPolicy, TruncatedPolicy, settings
from commit_ingest.errors import (
    DiffComputationError,
    HistoryTruncated,
    IngestionError,
    WriteConflict,
)
from commit_ingest.normalizer import NormalizedCommit, Normalizer, SkippedCommit
from commit_ingest.repository import RawCommit, RepositoryReader
from commit_ingest.store import SQLiteStore, WriteOutcome
from commit_ingest.summarizer import DiffSummarizer

logger = logging.getLogger(__name__)

# Distinguishes "not given" from None, which disables the timeout
_UNSET = object()

# Worker slot value while no batch is in hand
IDLE = -1

# Seconds a worker may run past its batch deadline before it is replaced
OVERRUN_GRACE = 5.0

# Restarts allowed per slot for workers that die before taking any work
MAX_RESTARTS = 3


@dataclass
class WorkBatch:
    """A batch of raw commits to summarize."""
    batch_id: int
    commits: list[RawCommit]


@dataclass
class ResultBatch:
    """Results from processing a batch of commits."""
    batch_id: int
    commits: list[NormalizedCommit]
    skipped: list[SkippedCommit]


@dataclass
class RunSummary:
    """What one ingestion run did. Every skipped or conflicting commit is listed."""
    run_id: Optional[int] = None
    head: Optional[str] = None
    resume_from: Optional[str] = None
    status: str = RUN_RUNNING
    history_truncated: bool = False
    ingested: int = 0
    unchanged: int = 0
    overwritten: int = 0
    skipped: list[SkippedCommit] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)

    @property
    def commits_seen(self) -> int:
        return (self.ingested + self.unchanged + self.overwritten
                + len(self.skipped) + len(self.conflicts))


def process_batch(
    summarizer: DiffSummarizer,
    normalizer: Normalizer,
    batch: WorkBatch,
    timeout: Optional[float]
) -> ResultBatch:
    """Summarize and normalize every commit of a batch; failures become markers."""
    commits = []
    skipped = []

    for raw in batch.commits:
        deadline = time.monotonic() + timeout if timeout is not None else None
        try:
            stats = summarizer.summarize(raw.id, deadline=deadline)
            commits.append(normalizer.normalize(raw, stats))
        except DiffComputationError as e:
            skipped.append(normalizer.skipped(raw.id, e))
        except Exception as e:
            logger.error(f"Unexpected error summarizing {raw.id[:12]}: {e}")
            skipped.append(SkippedCommit(
                id=raw.id, kind=SKIP_DIFF_ERROR, reason=f"{type(e).__name__}: {e}"
            ))

    return ResultBatch(batch_id=batch.batch_id, commits=commits, skipped=skipped)


def lost_batch(batch: WorkBatch, kind: str, reason: str) -> ResultBatch:
    """Result for a batch whose worker never reported back."""
    return ResultBatch(
        batch_id=batch.batch_id,
        commits=[],
        skipped=[SkippedCommit(id=raw.id, kind=kind, reason=reason) for raw in batch.commits]
    )


def worker_process(
    repo_path: str,
    rename_threshold: int,
    detect_copies: bool,
    timeout: Optional[float],
    work_queue: Queue,
    result_queue: Queue,
    stop_event: Event,
    current_batch,
    batch_started,
    worker_id: int
) -> None:
    """
    Worker process function for parallel summarization.

    Each worker maintains its own Repository instance (pygit2 handles
    are not thread/process safe) and processes batches of commits.

    Args:
        repo_path: Path to the Git repository.
        rename_threshold: Rename similarity threshold for the summarizer.
        detect_copies: Copy detection flag for the summarizer.
        timeout: Per-commit summarization timeout in seconds.
        work_queue: This worker's own queue of WorkBatch.
        result_queue: Queue to send ResultBatch to.
        stop_event: Event to signal shutdown.
        current_batch: Shared array; slot worker_id holds the batch in hand.
        batch_started: Shared array; slot worker_id holds when it was taken.
        worker_id: Identifier for this worker (its slot in the arrays).
    """
    try:
        repo = pygit2.Repository(repo_path)
        summarizer = DiffSummarizer(repo, rename_threshold, detect_copies)
        normalizer = Normalizer()
    except (pygit2.GitError, ValueError, OSError) as e:
        logger.error(f"Worker {worker_id}: Failed to initialize repository: {e}")
        sys.exit(1)

    logger.debug(f"Worker {worker_id}: Initialized and ready")

    while not stop_event.is_set():
        try:
            batch: WorkBatch = work_queue.get(timeout=1.0)
        except Empty:
            continue

        batch_started[worker_id] = time.time()
        current_batch[worker_id] = batch.batch_id
        try:
            result = process_batch(summarizer, normalizer, batch, timeout)
        except Exception as e:
            logger.error(f"Worker {worker_id}: Batch {batch.batch_id} failed: {e}")
            result = lost_batch(batch, SKIP_DIFF_ERROR, f"{type(e).__name__}: {e}")
        result_queue.put(result)
        current_batch[worker_id] = IDLE

    logger.debug(f"Worker {worker_id}: Shutting down")


class IngestionPipeline:
    """
    Orchestrates one ingestion run.

    Uses a producer-consumer pattern with:
    - Producer: walks the history and hands batches to each worker's queue
    - Workers: summarize and normalize commits in parallel
    - Writer: the calling process persists results one commit at a time

    A worker that dies or overruns its deadline is replaced, and the batch
    it held is recorded as skipped commits.
    """

    def __init__(
        self,
        reader: RepositoryReader,
        store: SQLiteStore,
        num_workers: Optional[int] = None,
        batch_size: Optional[int] = None,
        queue_size: Optional[int] = None,
        rename_threshold: Optional[int] = None,
        detect_copies: Optional[bool] = None,
        summarize_timeout=_UNSET,
        conflict_policy: Optional[ConflictPolicy] = None,
        truncated_policy: Optional[TruncatedPolicy] = None,
        resume_from: Optional[str] = None,
        incremental: Optional[bool] = None,
        retry_skipped: Optional[bool] = None
    ):
        """
        Initialize the ingestion pipeline. Unset arguments come from settings.

        Args:
            reader: Log reader over the source repository.
            store: Output store (schema must be initialized).
            num_workers: Worker processes; 1 runs everything in-process.
            batch_size: Commits per work batch.
            queue_size: Maximum batches waiting for a worker.
            rename_threshold: Rename similarity threshold (0-100).
            detect_copies: Pair copies with their source file.
            summarize_timeout: Seconds per commit; None disables the timeout.
            conflict_policy: Reject or overwrite changed stored commits.
            truncated_policy: Warn or abort on shallow/partial history.
            resume_from: Commit whose ancestry is already ingested.
            incremental: Use the store's last checkpoint when resume_from is unset.
            retry_skipped: Re-summarize commits skipped by earlier runs.
        """
        cfg = settings.ingestion
        self.reader = reader
        self.store = store
        self.num_workers = num_workers or cfg.effective_workers
        self.batch_size = batch_size or cfg.batch_size
        self.queue_size = queue_size or cfg.queue_size
        self.rename_threshold = cfg.rename_threshold if rename_threshold is None else rename_threshold
        self.detect_copies = cfg.detect_copies if detect_copies is None else detect_copies
        self.summarize_timeout: Optional[float] = (
            cfg.summarize_timeout if summarize_timeout is _UNSET else summarize_timeout
        )
        if self.summarize_timeout is not None and self.summarize_timeout <= 0:
            raise ValueError(f"summarize_timeout must be positive or None, got {self.summarize_timeout}")
        self.conflict_policy = ConflictPolicy(conflict_policy or cfg.conflict_policy)
        self.truncated_policy = TruncatedPolicy(truncated_policy or cfg.truncated_policy)
        self.resume_from = resume_from or cfg.resume_from
        self.incremental = cfg.incremental if incremental is None else incremental
        self.retry_skipped = cfg.retry_skipped if retry_skipped is None else retry_skipped

        self.normalizer = Normalizer()

        # Multiprocessing components, one slot per worker
        self.result_queue: Optional[Queue] = None
        self.stop_event: Optional[Event] = None
        self.workers: list[Process] = []
        self.inboxes: list[Queue] = []
        self.assigned: list[list[WorkBatch]] = []
        self.current_batch = None
        self.batch_started = None
        self._restarts = 0

        self._abort = threading.Event()
        self._walk_exhausted = False

    def stop(self) -> None:
        """Ask a running ingestion to stop at the next commit boundary."""
        self._abort.set()

    # ------------------------------------------------------------------
    # Work source
    # ------------------------------------------------------------------

    def _resume_point(self) -> Optional[str]:
        if self.resume_from:
            return self.resume_from
        if not self.incremental:
            return None
        checkpoint = self.store.last_checkpoint(str(self.reader.repo_path))
        if checkpoint and not self.reader.contains(checkpoint):
            logger.warning(
                f"Checkpoint {checkpoint[:12]} is no longer in the history, "
                "walking from the start"
            )
            return None
        return checkpoint

    def _source(self, resume: Optional[str], summary: RunSummary) -> Iterator[RawCommit]:
        """Commits to process: earlier skips first, then the history walk."""
        seen = set()

        if self.retry_skipped:
            for commit_id in self.store.skipped_ids():
                raw = self.reader.get_raw(commit_id)
                if raw is not None:
                    seen.add(raw.id)
                    yield raw

        try:
            for raw in self.reader.iter_commits(resume_from=resume):
                if raw.id in seen:
                    continue
                yield raw
        except HistoryTruncated as e:
            self._on_truncated(e, summary)
            return
        self._walk_exhausted = True

    def _on_truncated(self, error: HistoryTruncated, summary: RunSummary) -> None:
        if self.truncated_policy is TruncatedPolicy.ABORT:
            raise error
        logger.warning(f"History truncated, continuing with partial data: {error}")
        summary.history_truncated = True

    def _batches(self, commits: Iterable[RawCommit]) -> Iterator[WorkBatch]:
        """Split a lazy commit stream into batches."""
        it = iter(commits)
        batch_id = 0
        while True:
            chunk = list(islice(it, self.batch_size))
            if not chunk:
                return
            yield WorkBatch(batch_id=batch_id, commits=chunk)
            batch_id += 1

    # ------------------------------------------------------------------
    # Writer
    # ------------------------------------------------------------------

    def _consume(self, result: ResultBatch, summary: RunSummary) -> None:
        """Persist a result batch, one transaction per commit."""
        for normalized in result.commits:
            try:
                outcome = self.store.write(normalized, self.conflict_policy, summary.run_id)
            except WriteConflict as e:
                summary.conflicts.append(e.commit_id)
                self.store.record_conflict(e.commit_id, e.reason, summary.run_id)
                logger.error(f"Write conflict for {e.commit_id[:12]}: {e.reason}")
                raise

            if outcome is WriteOutcome.INSERTED:
                summary.ingested += 1
            elif outcome is WriteOutcome.UNCHANGED:
                summary.unchanged += 1
            else:
                summary.overwritten += 1

        for skipped in result.skipped:
            summary.skipped.append(skipped)
            self.store.record_skipped(skipped, summary.run_id)
            logger.warning(f"Skipped commit {skipped.id[:12]} ({skipped.kind}): {skipped.reason}")

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, limit: Optional[int] = None) -> RunSummary:
        """
        Run one ingestion pass.

        Args:
            limit: Stop after this many commits (the checkpoint is not advanced).

        Returns:
            The RunSummary. An interrupted run returns with status "aborted".

        Raises:
            SourceUnavailable: The repository cannot be opened or walked.
            HistoryTruncated: Partial history under the abort policy.
            WriteConflict: A stored commit changed under the reject policy.
        """
        summary = RunSummary(head=self.reader.head_id())

        try:
            self.reader.check_history()
        except HistoryTruncated as e:
            self._on_truncated(e, summary)

        summary.resume_from = self._resume_point()
        summary.run_id = self.store.begin_run(
            str(self.reader.repo_path), summary.head, summary.resume_from
        )
        logger.info(
            f"Run {summary.run_id}: ingesting {self.reader.repo_path} at {summary.head[:12]}"
            + (f" after {summary.resume_from[:12]}" if summary.resume_from else "")
        )

        self._abort.clear()
        self._walk_exhausted = False
        commits = self._source(summary.resume_from, summary)
        if limit is not None:
            commits = islice(commits, limit)

        try:
            if self.num_workers <= 1:
                self._run_inline(commits, summary)
            else:
                self._run_parallel(commits, summary)
        except KeyboardInterrupt:
            summary.status = RUN_ABORTED
        except BaseException as e:
            summary.status = RUN_FAILED
            if isinstance(e, WriteConflict):
                e.summary = summary
            self._finish(summary)
            raise
        else:
            if self._abort.is_set():
                summary.status = RUN_ABORTED
            else:
                summary.status = RUN_COMPLETED

        self._finish(summary)
        return summary

    def _finish(self, summary: RunSummary) -> None:
        # A truncated walk leaves history behind the head uningested
        checkpoint = summary.head if (
            summary.status == RUN_COMPLETED
            and self._walk_exhausted
            and not summary.history_truncated
        ) else None
        self.store.finish_run(
            summary.run_id,
            status=summary.status,
            checkpoint=checkpoint,
            history_truncated=summary.history_truncated,
            ingested=summary.ingested,
            unchanged=summary.unchanged,
            overwritten=summary.overwritten,
            skipped=len(summary.skipped),
            conflicts=len(summary.conflicts)
        )
        logger.info(
            f"Run {summary.run_id} {summary.status}: {summary.ingested} ingested, "
            f"{summary.unchanged} unchanged, {summary.overwritten} overwritten, "
            f"{len(summary.skipped)} skipped, {len(summary.conflicts)} conflicts"
        )

    def _run_inline(self, commits: Iterable[RawCommit], summary: RunSummary) -> None:
        """Run every stage in this process (useful for debugging)."""
        summarizer = DiffSummarizer(self.reader.repo, self.rename_threshold, self.detect_copies)

        with tqdm(desc="Ingesting (single-process)", unit="commit") as pbar:
            for i, raw in enumerate(commits):
                if self._abort.is_set():
                    return
                result = process_batch(
                    summarizer, self.normalizer, WorkBatch(i, [raw]), self.summarize_timeout
                )
                self._consume(result, summary)
                pbar.update(1)
                pbar.set_postfix({
                    "skipped": len(summary.skipped),
                    "unchanged": summary.unchanged
                })

    def _start_workers(self) -> None:
        """Start worker processes, each reading from its own work queue."""
        self.result_queue = mp.Queue()
        self.stop_event = mp.Event()
        # Lock-free so a killed worker cannot leave them locked
        self.current_batch = mp.Array("q", [IDLE] * self.num_workers, lock=False)
        self.batch_started = mp.Array("d", self.num_workers, lock=False)
        self._restarts = 0

        self.workers = [None] * self.num_workers
        self.inboxes = [None] * self.num_workers
        self.assigned = [[] for _ in range(self.num_workers)]
        for slot in range(self.num_workers):
            self._spawn_worker(slot)

        logger.info(f"Started {self.num_workers} worker processes")

    def _spawn_worker(self, slot: int) -> None:
        """Start (or restart) the worker for a slot with an empty work queue."""
        if self.inboxes[slot] is not None:
            self.inboxes[slot].cancel_join_thread()
            self.inboxes[slot].close()

        inbox = mp.Queue()
        self.current_batch[slot] = IDLE
        worker = Process(
            target=worker_process,
            args=(
                str(self.reader.repo_path),
                self.rename_threshold,
                self.detect_copies,
                self.summarize_timeout,
                inbox,
                self.result_queue,
                self.stop_event,
                self.current_batch,
                self.batch_started,
                slot
            ),
            name=f"SummarizeWorker-{slot}"
        )
        worker.start()
        self.inboxes[slot] = inbox
        self.workers[slot] = worker

    def _stop_workers(self) -> None:
        """Stop all worker processes."""
        if self.stop_event:
            self.stop_event.set()

        for worker in self.workers:
            worker.join(timeout=5.0)
            if worker.is_alive():
                worker.terminate()

        # Batches never picked up stay behind; do not wait to flush them
        for inbox in self.inboxes:
            inbox.cancel_join_thread()
            inbox.close()

        self.workers.clear()
        self.inboxes.clear()
        self.assigned.clear()
        logger.info("All workers stopped")

    def _assign(self, slot: int, batch: WorkBatch) -> None:
        self.assigned[slot].append(batch)
        self.inboxes[slot].put(batch)

    def _dispatch(self, batches: Iterator[WorkBatch], per_worker: int) -> bool:
        """Top up every live worker's queue. Returns True once batches run out."""
        for slot, worker in enumerate(self.workers):
            if not worker.is_alive():
                continue
            while len(self.assigned[slot]) < per_worker:
                batch = next(batches, None)
                if batch is None:
                    return True
                self._assign(slot, batch)
        return False

    def _settle(self, batch_id: int) -> bool:
        """Drop a finished batch from its worker's list; False if already settled."""
        for assigned in self.assigned:
            for i, batch in enumerate(assigned):
                if batch.batch_id == batch_id:
                    del assigned[i]
                    return True
        return False

    def _reclaim(self) -> list[ResultBatch]:
        """
        Replace workers that died or overran their deadline.

        The batch such a worker was summarizing comes back as skipped
        commits, which the next run retries. Batches still waiting in its
        queue are handed to the replacement worker.

        Returns:
            Results standing in for the lost batches.
        """
        lost = []
        now = time.time()

        for slot, worker in enumerate(self.workers):
            held_id = self.current_batch[slot]
            held = next((b for b in self.assigned[slot] if b.batch_id == held_id), None)

            if not worker.is_alive():
                if not self.assigned[slot]:
                    continue
                kind = SKIP_WORKER_LOST
                reason = f"worker exited with code {worker.exitcode}"
                logger.error(f"Worker {slot}: {reason}, restarting")
            elif held is not None and self.summarize_timeout is not None and (
                now - self.batch_started[slot]
                > self.summarize_timeout * len(held.commits) + OVERRUN_GRACE
            ):
                kind = SKIP_TIMEOUT
                reason = "summarization deadline exceeded; worker terminated"
                logger.warning(f"Worker {slot}: batch {held_id} overran its deadline, restarting")
                worker.terminate()
                worker.join(timeout=5.0)
            else:
                continue

            if held is None:
                # Died before taking any work, e.g. the repository failed to open
                self._restarts += 1
                if self._restarts > MAX_RESTARTS * self.num_workers:
                    raise IngestionError("Summarize workers keep exiting before taking work")

            waiting = [b for b in self.assigned[slot] if b is not held]
            self.assigned[slot] = [held] if held is not None else []
            self._spawn_worker(slot)
            for batch in waiting:
                self._assign(slot, batch)
            if held is not None:
                lost.append(lost_batch(held, kind, reason))

        return lost

    def _run_parallel(self, commits: Iterable[RawCommit], summary: RunSummary) -> None:
        """Summarize across worker processes; write results as they arrive."""
        self._start_workers()

        batches = self._batches(commits)
        per_worker = max(1, self.queue_size // self.num_workers)
        exhausted = False

        try:
            start = time.time()
            with tqdm(desc="Ingesting commits", unit="commit") as pbar:
                while True:
                    if self._abort.is_set():
                        return
                    if not exhausted:
                        exhausted = self._dispatch(batches, per_worker)
                    if exhausted and not any(self.assigned):
                        return

                    results = self._reclaim()
                    if not results:
                        try:
                            results = [self.result_queue.get(timeout=1.0)]
                            self._restarts = 0
                        except Empty:
                            if not any(w.is_alive() for w in self.workers):
                                raise IngestionError("All summarize workers exited")
                            continue

                    for result in results:
                        # A batch reclaimed from a worker may still report late
                        if not self._settle(result.batch_id):
                            continue
                        self._consume(result, summary)

                        pbar.update(len(result.commits) + len(result.skipped))
                        elapsed = time.time() - start
                        pbar.set_postfix({
                            "skipped": len(summary.skipped),
                            "speed": f"{summary.commits_seen / elapsed:.1f}/s" if elapsed > 0 else "-"
                        })
        finally:
            self._stop_workers()
