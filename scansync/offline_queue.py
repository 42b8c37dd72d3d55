# offline_queue.py
"""
Device-side queue of mutations the server has not confirmed yet.

Order matters: count deltas for the same product are not commutative, so the
queue is a plain list replayed front to back. Every mutation is written to
disk before the call returns, so a crash or restart loses nothing that was
accepted by `enqueue`.
"""
import json
import logging
import os
import tempfile
import threading
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any, Callable, Iterable
from uuid import uuid4

from pydantic import BaseModel, Field

from scansync.config import SYNC_MAX_RETRIES
from scansync.schemas import OperationKind, normalize_payload

log = logging.getLogger(__name__)

QUEUE_FILE_VERSION = 1

# Dead-letter reasons
REASON_CONFLICT = "conflict"
REASON_REJECTED = "rejected"
REASON_RETRIES_EXHAUSTED = "retries_exhausted"

_UNCHANGED = object()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueuedOperation(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    kind: OperationKind
    payload: Dict[str, Any]
    enqueued_at: datetime = Field(default_factory=utcnow)
    retry_count: int = 0
    max_retries: int = SYNC_MAX_RETRIES
    last_error: Optional[str] = None


class DeadLetter(BaseModel):
    operation: QueuedOperation
    reason: str
    detail: Optional[str] = None
    conflict_data: Optional[Dict[str, Any]] = None
    dead_lettered_at: datetime = Field(default_factory=utcnow)


class OperationQueue:
    def __init__(
        self,
        path: Optional[str] = None,
        max_retries: int = SYNC_MAX_RETRIES,
        on_enqueue: Optional[Callable[[QueuedOperation], None]] = None,
    ):
        self.path = Path(path) if path else None
        self.max_retries = max_retries
        self.on_enqueue = on_enqueue
        self._lock = threading.RLock()
        self._operations: List[QueuedOperation] = []
        self._dead_letter: List[DeadLetter] = []
        self._last_sync_at: Optional[datetime] = None
        self._load()

    # --- persistence ---
    def _load(self):
        if not self.path or not self.path.exists():
            return
        with open(self.path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        self._operations = [QueuedOperation.model_validate(o) for o in raw.get("operations", [])]
        self._dead_letter = [DeadLetter.model_validate(d) for d in raw.get("dead_letter", [])]
        last = raw.get("last_sync_at")
        self._last_sync_at = datetime.fromisoformat(last) if last else None
        log.info("Loaded %d queued operations from %s", len(self._operations), self.path)

    def _write(self, operations, dead_letter, last_sync_at):
        if not self.path:
            return
        doc = {
            "version": QUEUE_FILE_VERSION,
            "operations": [o.model_dump(mode="json") for o in operations],
            "dead_letter": [d.model_dump(mode="json") for d in dead_letter],
            "last_sync_at": last_sync_at.isoformat() if last_sync_at else None,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so a crash never leaves a half-written queue
        tmp = tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=self.path.parent, prefix=".queue-", suffix=".tmp", delete=False
        )
        try:
            with tmp:
                json.dump(doc, tmp)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp.name, self.path)
        except Exception:
            os.unlink(tmp.name)
            raise

    def _commit(self, operations=None, dead_letter=None, last_sync_at=_UNCHANGED):
        """
        Persist the new state, then swap it in. A failed write raises and
        leaves the in-memory queue exactly as it was.
        """
        operations = self._operations if operations is None else operations
        dead_letter = self._dead_letter if dead_letter is None else dead_letter
        last_sync_at = self._last_sync_at if last_sync_at is _UNCHANGED else last_sync_at
        self._write(operations, dead_letter, last_sync_at)
        self._operations = operations
        self._dead_letter = dead_letter
        self._last_sync_at = last_sync_at

    # --- public API ---
    def enqueue(self, kind, payload: Dict[str, Any], max_retries: Optional[int] = None) -> str:
        """
        Validate, append and persist one operation; returns its id.
        Raises pydantic.ValidationError for a malformed payload, which is
        therefore never queued, and OSError when the queue cannot be written.
        """
        kind = OperationKind(kind)
        op = QueuedOperation(
            kind=kind,
            payload=normalize_payload(kind, payload),
            max_retries=self.max_retries if max_retries is None else max_retries,
        )
        with self._lock:
            self._commit(operations=self._operations + [op])
        log.debug("Queued %s operation %s", kind.value, op.id)

        if self.on_enqueue:
            self.on_enqueue(op.model_copy(deep=True))
        return op.id

    def dequeue(self, operation_id: str) -> None:
        with self._lock:
            remaining = [o for o in self._operations if o.id != operation_id]
            if len(remaining) != len(self._operations):
                self._commit(operations=remaining)

    def list(self) -> List[QueuedOperation]:
        with self._lock:
            return [o.model_copy(deep=True) for o in self._operations]

    def __len__(self) -> int:
        with self._lock:
            return len(self._operations)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            by_kind = Counter(o.kind.value for o in self._operations)
            reasons = Counter(d.reason for d in self._dead_letter)
            oldest = min((o.enqueued_at for o in self._operations), default=None)
            return {
                "total": len(self._operations),
                "count_by_kind": {k.value: by_kind.get(k.value, 0) for k in OperationKind},
                "oldest_timestamp": oldest,
                "dead_letter": len(self._dead_letter),
                "dropped": reasons.get(REASON_RETRIES_EXHAUSTED, 0),
                "conflicted": reasons.get(REASON_CONFLICT, 0),
                "rejected": reasons.get(REASON_REJECTED, 0),
                "last_sync_at": self._last_sync_at,
            }

    def clear(self) -> None:
        """Manual recovery: drop every pending operation."""
        with self._lock:
            dropped = len(self._operations)
            self._commit(operations=[])
        log.warning("Cleared %d pending operations", dropped)

    # --- used by the sync executor ---
    def reconcile(self, processed_ids: Iterable[str], retained: List[QueuedOperation]) -> None:
        """
        Rebuild the queue after a pass: the operations to retry keep their
        relative order at the front, followed by anything enqueued while the
        pass was running. Operations cleared or dequeued during the pass stay
        gone.
        """
        processed = set(processed_ids)
        with self._lock:
            current = {o.id for o in self._operations}
            kept = [o.model_copy(deep=True) for o in retained if o.id in current]
            arrived = [o for o in self._operations if o.id not in processed]
            self._commit(operations=kept + arrived)

    def mark_synced(self, when: Optional[datetime] = None) -> None:
        with self._lock:
            self._commit(last_sync_at=when or utcnow())

    @property
    def last_sync_at(self) -> Optional[datetime]:
        return self._last_sync_at

    # --- dead-letter list ---
    def dead_letter(self, entry: DeadLetter) -> None:
        with self._lock:
            self._commit(dead_letter=self._dead_letter + [entry])

    def dead_letters(self) -> List[DeadLetter]:
        with self._lock:
            return [d.model_copy(deep=True) for d in self._dead_letter]

    def _find_dead_letter(self, operation_id: str) -> Optional[DeadLetter]:
        return next((d for d in self._dead_letter if d.operation.id == operation_id), None)

    def requeue_dead_letter(self, operation_id: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """
        Resubmit a dead-lettered operation at the back of the queue with a
        fresh retry budget, optionally with a corrected payload (e.g. the
        server's actual quantity as the new expected_previous_quantity).
        """
        with self._lock:
            found = self._find_dead_letter(operation_id)
            if found is None:
                return False
            op = found.operation.model_copy(deep=True)
            if payload is not None:
                op.payload = normalize_payload(op.kind, payload)
            op.retry_count = 0
            op.last_error = None
            self._commit(
                operations=self._operations + [op],
                dead_letter=[d for d in self._dead_letter if d is not found],
            )
        if self.on_enqueue:
            self.on_enqueue(op.model_copy(deep=True))
        return True

    def discard_dead_letter(self, operation_id: str) -> bool:
        with self._lock:
            found = self._find_dead_letter(operation_id)
            if found is None:
                return False
            self._commit(dead_letter=[d for d in self._dead_letter if d is not found])
            return True
