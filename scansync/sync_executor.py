# sync_executor.py
"""
Replays the offline queue against the server.

One pass works on a snapshot of the queue taken when it starts; anything
enqueued while it runs waits for the next pass. Failed operations keep their
relative order at the front of the rebuilt queue.
"""
import logging
import threading
import time
from datetime import datetime
from typing import Optional, List, Tuple, Callable
from uuid import uuid4

from pydantic import BaseModel

from scansync.config import (
    BATCH_MAX_COUNTS, SYNC_BATCH_COUNTS, SYNC_DEVICE_ID, SYNC_OPERATION_DELAY_MS,
)
from scansync.conflicts import Accepted, Conflict, Rejected, Outcome
from scansync.offline_queue import (
    OperationQueue, QueuedOperation, DeadLetter, utcnow,
    REASON_CONFLICT, REASON_REJECTED, REASON_RETRIES_EXHAUSTED,
)
from scansync.schemas import OperationKind

log = logging.getLogger(__name__)

SKIP_OFFLINE = "offline"
SKIP_IN_PROGRESS = "in_progress"
SKIP_EMPTY = "empty"


class RetryPolicy:
    def __init__(self, max_retries: Optional[int] = None):
        self.max_retries = max_retries

    def ceiling(self, op: QueuedOperation) -> int:
        return self.max_retries if self.max_retries is not None else op.max_retries

    def register_failure(self, op: QueuedOperation, reason: str) -> Optional[QueuedOperation]:
        """Count a failed attempt; None means the operation is out of retries."""
        op.retry_count += 1
        op.last_error = reason
        if op.retry_count >= self.ceiling(op):
            return None
        return op


class SyncSession(BaseModel):
    started_at: Optional[datetime] = None
    is_in_progress: bool = False
    succeeded: int = 0
    failed: int = 0
    conflicted: int = 0


class SyncReport(BaseModel):
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    skipped_reason: Optional[str] = None
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    conflicted: int = 0
    rejected: int = 0
    dropped: int = 0
    remaining: int = 0


class SyncExecutor:
    def __init__(
        self,
        queue: OperationQueue,
        client,
        connectivity=None,
        policy: Optional[RetryPolicy] = None,
        delay_seconds: float = SYNC_OPERATION_DELAY_MS / 1000.0,
        sleep: Callable[[float], None] = time.sleep,
        batch_counts: bool = SYNC_BATCH_COUNTS,
        device_id: str = SYNC_DEVICE_ID,
    ):
        self.queue = queue
        self.client = client
        self.connectivity = connectivity
        self.policy = policy or RetryPolicy()
        self.delay_seconds = delay_seconds
        self.sleep = sleep
        self.batch_counts = batch_counts
        self.device_id = device_id or uuid4().hex
        self.session = SyncSession()
        self._guard = threading.Lock()

    @property
    def is_in_progress(self) -> bool:
        return self.session.is_in_progress

    def _online(self) -> bool:
        return self.connectivity is None or self.connectivity.is_online

    def run_pass(self) -> SyncReport:
        if not self._online():
            return SyncReport(skipped_reason=SKIP_OFFLINE)
        if not self._guard.acquire(blocking=False):
            return SyncReport(skipped_reason=SKIP_IN_PROGRESS)
        try:
            snapshot = self.queue.list()
            if not snapshot:
                return SyncReport(skipped_reason=SKIP_EMPTY, remaining=len(self.queue))

            self.session = SyncSession(started_at=utcnow(), is_in_progress=True)
            report = SyncReport(started_at=self.session.started_at)
            retained: List[QueuedOperation] = []
            log.info("Sync pass started: %d queued operations", len(snapshot))

            for i, group in enumerate(self._plan(snapshot)):
                if i:
                    self.sleep(self.delay_seconds)
                for op, outcome in self._dispatch(group):
                    self._settle(op, outcome, retained, report)

            self.queue.reconcile([o.id for o in snapshot], retained)
            report.finished_at = utcnow()
            if report.succeeded:
                self.queue.mark_synced(report.finished_at)
            report.remaining = len(self.queue)
            log.info(
                "Sync pass finished: %d succeeded, %d failed, %d conflicted, %d rejected, %d dropped, %d remaining",
                report.succeeded, report.failed, report.conflicted, report.rejected, report.dropped, report.remaining,
            )
            return report
        finally:
            self.session.is_in_progress = False
            self._guard.release()

    # --- dispatch ---
    def _plan(self, snapshot: List[QueuedOperation]) -> List[List[QueuedOperation]]:
        """
        Split the snapshot into dispatch units. Without batching every
        operation is its own unit; with batching, consecutive counts are
        grouped up to the batch limit.
        """
        if not self.batch_counts:
            return [[op] for op in snapshot]
        groups: List[List[QueuedOperation]] = []
        for op in snapshot:
            last = groups[-1] if groups else None
            if (
                op.kind == OperationKind.COUNT
                and last
                and last[0].kind == OperationKind.COUNT
                and len(last) < BATCH_MAX_COUNTS
            ):
                last.append(op)
            else:
                groups.append([op])
        return groups

    def _dispatch(self, group: List[QueuedOperation]) -> List[Tuple[QueuedOperation, Outcome]]:
        try:
            if len(group) > 1:
                return list(zip(group, self._submit_batch(group)))
            return [(group[0], self._submit_one(group[0]))]
        except Exception as e:
            log.exception("Sync dispatch failed for %d operation(s)", len(group))
            failure = Rejected(reason=f"{type(e).__name__}: {e}", retryable=True)
            return [(op, failure) for op in group]

    def _submit_one(self, op: QueuedOperation) -> Outcome:
        if op.kind == OperationKind.COUNT:
            return self.client.submit_count(op.payload)
        if op.kind == OperationKind.PRODUCT_CREATE:
            return self.client.create_product(op.payload)
        if op.kind == OperationKind.PRODUCT_UPDATE:
            return self.client.update_product(op.payload)
        if op.kind == OperationKind.PRODUCT_DELETE:
            return self.client.delete_product(op.payload)
        raise ValueError(f"Unknown operation kind: {op.kind}")

    def _submit_batch(self, group: List[QueuedOperation]) -> List[Outcome]:
        oldest = min(op.enqueued_at for op in group)
        sync_metadata = {
            "device_id": self.device_id,
            "batch_id": uuid4().hex,
            "offline_duration_ms": int((utcnow() - oldest).total_seconds() * 1000),
        }
        outcomes = self.client.submit_count_batch([op.payload for op in group], sync_metadata)
        if len(outcomes) != len(group):
            raise ValueError(f"Batch returned {len(outcomes)} results for {len(group)} counts")
        return outcomes

    # --- outcome partition ---
    def _settle(self, op: QueuedOperation, outcome: Outcome, retained: List[QueuedOperation], report: SyncReport):
        report.attempted += 1
        if isinstance(outcome, Accepted):
            report.succeeded += 1
            self.session.succeeded += 1
            return

        if isinstance(outcome, Conflict):
            report.conflicted += 1
            self.session.conflicted += 1
            log.warning(
                "Conflict on %s: expected %s, server has %s",
                op.id, outcome.expected, outcome.actual,
            )
            self._dead_letter(op, retained, DeadLetter(
                operation=op,
                reason=REASON_CONFLICT,
                detail="Conflict detected",
                conflict_data=outcome.conflict_data(),
            ))
            return

        self.session.failed += 1
        if not outcome.retryable:
            report.rejected += 1
            op.last_error = outcome.reason
            log.warning("Operation %s rejected (%s): %s", op.id, outcome.status_code, outcome.reason)
            self._dead_letter(op, retained, DeadLetter(operation=op, reason=REASON_REJECTED, detail=outcome.reason))
            return

        report.failed += 1
        kept = self.policy.register_failure(op, outcome.reason)
        if kept is not None:
            retained.append(kept)
            return

        report.dropped += 1
        log.error("Operation %s dropped after %d attempts: %s", op.id, op.retry_count, outcome.reason)
        self._dead_letter(op, retained, DeadLetter(operation=op, reason=REASON_RETRIES_EXHAUSTED, detail=outcome.reason))

    def _dead_letter(self, op: QueuedOperation, retained: List[QueuedOperation], entry: DeadLetter):
        try:
            self.queue.dead_letter(entry)
        except OSError:
            # Not recorded anywhere yet, so keep it queued for the next pass
            log.exception("Could not dead-letter operation %s; keeping it queued", op.id)
            retained.append(op)
