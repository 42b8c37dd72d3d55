import threading
from uuid import uuid4

import pytest

from scansync.conflicts import Accepted, Conflict, Rejected
from scansync.offline_queue import (
    OperationQueue, REASON_CONFLICT, REASON_REJECTED, REASON_RETRIES_EXHAUSTED,
)
from scansync.schemas import OperationKind
from scansync.sync_executor import RetryPolicy, SyncExecutor, SKIP_EMPTY, SKIP_IN_PROGRESS, SKIP_OFFLINE

OK = Accepted(status_code=201)
DOWN = Rejected(reason="HTTP 503", status_code=503, retryable=True)


class ScriptedClient:
    """Answers each call with the next scripted outcome (or a default)."""

    def __init__(self, outcomes=None, default=OK):
        self.outcomes = list(outcomes or [])
        self.default = default
        self.calls = []
        self.batches = []

    def _next(self, name, payload):
        self.calls.append((name, payload))
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def submit_count(self, payload):
        return self._next("count", payload)

    def create_product(self, payload):
        return self._next("product_create", payload)

    def update_product(self, payload):
        return self._next("product_update", payload)

    def delete_product(self, payload):
        return self._next("product_delete", payload)

    def submit_count_batch(self, counts, sync_metadata):
        self.batches.append((counts, sync_metadata))
        return [self._next("batch", c) for c in counts]


class Online:
    is_online = True


class Offline:
    is_online = False


def count(q, quantity, **extra):
    return q.enqueue(OperationKind.COUNT, dict(extra, product_id=str(uuid4()), quantity=quantity))


def make_executor(q, client, connectivity=None, **kwargs):
    kwargs.setdefault("sleep", lambda s: None)
    return SyncExecutor(q, client, connectivity or Online(), RetryPolicy(), **kwargs)


@pytest.fixture
def q(tmp_path):
    return OperationQueue(tmp_path / "queue.json")


def test_replays_in_enqueue_order(q):
    ids = [count(q, i) for i in range(4)]
    client = ScriptedClient()
    report = make_executor(q, client).run_pass()
    assert [p["quantity"] for _, p in client.calls] == [0, 1, 2, 3]
    assert report.succeeded == 4
    assert report.remaining == 0
    assert len(q) == 0
    assert q.last_sync_at is not None
    assert ids


def test_order_survives_a_failed_pass(q):
    ids = [count(q, i) for i in range(3)]
    report = make_executor(q, ScriptedClient(default=DOWN)).run_pass()
    assert report.failed == 3
    assert [o.id for o in q.list()] == ids
    assert all(o.retry_count == 1 for o in q.list())
    assert q.last_sync_at is None


def test_failed_operations_stay_in_front(q):
    a = count(q, 1)
    count(q, 2)
    c = count(q, 3)
    client = ScriptedClient([DOWN, OK, DOWN])
    make_executor(q, client).run_pass()
    assert [o.id for o in q.list()] == [a, c]


def test_retry_ceiling(q):
    op_id = count(q, 1)
    executor = make_executor(q, ScriptedClient(default=DOWN))
    for _ in range(2):
        executor.run_pass()
        assert [o.id for o in q.list()] == [op_id]

    report = executor.run_pass()
    assert report.dropped == 1
    assert q.list() == []
    assert q.stats()["dropped"] == 1
    dead = q.dead_letters()[0]
    assert dead.reason == REASON_RETRIES_EXHAUSTED
    assert dead.operation.retry_count == 3

    assert executor.run_pass().skipped_reason == SKIP_EMPTY


def test_retry_policy_override():
    policy = RetryPolicy(max_retries=1)
    q = OperationQueue()
    count(q, 1)
    op = q.list()[0]
    assert policy.register_failure(op, "boom") is None
    assert op.last_error == "boom"


def test_conflict_goes_to_dead_letter(q):
    count(q, 5, expected_previous_quantity=8)
    client = ScriptedClient([Conflict(expected=8, actual=10, product_name="Widget")])
    report = make_executor(q, client).run_pass()
    assert report.conflicted == 1
    assert len(q) == 0
    dead = q.dead_letters()[0]
    assert dead.reason == REASON_CONFLICT
    assert dead.conflict_data == {"expected": 8, "actual": 10, "product_name": "Widget"}
    assert len(client.calls) == 1


def test_terminal_rejection_is_not_retried(q):
    count(q, 5)
    client = ScriptedClient([Rejected(reason="Product not found", status_code=404)])
    executor = make_executor(q, client)
    report = executor.run_pass()
    assert report.rejected == 1
    assert q.dead_letters()[0].reason == REASON_REJECTED
    assert executor.run_pass().skipped_reason == SKIP_EMPTY
    assert len(client.calls) == 1


def test_client_exception_is_a_retryable_failure(q):
    count(q, 1)
    count(q, 2)
    client = ScriptedClient([RuntimeError("socket closed")])
    report = make_executor(q, client).run_pass()
    assert report.failed == 1
    assert report.succeeded == 1
    assert q.list()[0].last_error == "RuntimeError: socket closed"


def test_skips_when_offline(q):
    count(q, 1)
    client = ScriptedClient()
    report = make_executor(q, client, connectivity=Offline()).run_pass()
    assert report.skipped_reason == SKIP_OFFLINE
    assert client.calls == []
    assert len(q) == 1


def test_second_pass_while_first_in_flight_is_a_noop(q):
    count(q, 1)
    entered = threading.Event()
    release = threading.Event()

    class SlowClient(ScriptedClient):
        def submit_count(self, payload):
            entered.set()
            release.wait(5)
            return super().submit_count(payload)

    client = SlowClient()
    executor = make_executor(q, client)
    results = []
    worker = threading.Thread(target=lambda: results.append(executor.run_pass()))
    worker.start()
    assert entered.wait(5)

    assert executor.is_in_progress
    assert executor.run_pass().skipped_reason == SKIP_IN_PROGRESS

    release.set()
    worker.join(5)
    assert results[0].succeeded == 1
    assert len(client.calls) == 1
    assert not executor.is_in_progress


def test_operations_enqueued_during_a_pass_wait_for_the_next(q):
    count(q, 1)
    late_ids = []

    class EnqueueingClient(ScriptedClient):
        def submit_count(self, payload):
            if not late_ids:
                late_ids.append(count(q, 99))
            return super().submit_count(payload)

    client = EnqueueingClient()
    executor = make_executor(q, client)
    executor.run_pass()
    assert [p["quantity"] for _, p in client.calls] == [1]
    assert [o.id for o in q.list()] == late_ids

    executor.run_pass()
    assert [p["quantity"] for _, p in client.calls] == [1, 99]


def test_delay_between_operations_only(q):
    for i in range(3):
        count(q, i)
    slept = []
    make_executor(q, ScriptedClient(), delay_seconds=0.2, sleep=slept.append).run_pass()
    assert slept == [0.2, 0.2]


def test_mixed_kinds_dispatch_to_matching_calls(q):
    q.enqueue(OperationKind.PRODUCT_CREATE, {"name": "Nut"})
    pid = str(uuid4())
    q.enqueue(OperationKind.PRODUCT_UPDATE, {"id": pid, "price": 2.5})
    q.enqueue(OperationKind.PRODUCT_DELETE, {"id": pid})
    client = ScriptedClient()
    make_executor(q, client).run_pass()
    assert [name for name, _ in client.calls] == ["product_create", "product_update", "product_delete"]


def test_batch_mode_groups_consecutive_counts(q):
    a = count(q, 1)
    b = count(q, 2)
    q.enqueue(OperationKind.PRODUCT_CREATE, {"name": "Nut"})
    c = count(q, 3)
    client = ScriptedClient([OK, Conflict(expected=1, actual=2), OK, DOWN])
    executor = make_executor(q, client, batch_counts=True, device_id="scanner-9")
    report = executor.run_pass()

    assert [name for name, _ in client.calls] == ["batch", "batch", "product_create", "count"]
    counts, meta = client.batches[0]
    assert [p["quantity"] for p in counts] == [1, 2]
    assert meta["device_id"] == "scanner-9"
    assert meta["offline_duration_ms"] >= 0
    assert report.succeeded == 2
    assert report.conflicted == 1
    assert [o.id for o in q.list()] == [c]
    assert [d.operation.id for d in q.dead_letters()] == [b]
    assert a not in [o.id for o in q.list()]


def test_batch_mode_chunks_at_fifty(q):
    for i in range(120):
        count(q, i)
    client = ScriptedClient()
    make_executor(q, client, batch_counts=True).run_pass()
    assert [len(counts) for counts, _ in client.batches] == [50, 50, 20]
    assert len(q) == 0


def test_batch_transport_failure_fails_every_entry(q):
    ids = [count(q, i) for i in range(3)]

    class BrokenBatch(ScriptedClient):
        def submit_count_batch(self, counts, sync_metadata):
            raise ConnectionError("reset by peer")

    report = make_executor(q, BrokenBatch(), batch_counts=True).run_pass()
    assert report.failed == 3
    assert [o.id for o in q.list()] == ids


def test_clear_during_a_pass_sticks(q):
    count(q, 1)

    class ClearingClient(ScriptedClient):
        def submit_count(self, payload):
            q.clear()
            return super().submit_count(payload)

    report = make_executor(q, ClearingClient(default=DOWN)).run_pass()
    assert report.failed == 1
    assert len(q) == 0


def test_dead_letter_write_failure_keeps_operation_queued(q, monkeypatch):
    op_id = count(q, 5, expected_previous_quantity=8)

    def disk_full(entry):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(q, "dead_letter", disk_full)
    client = ScriptedClient([Conflict(expected=8, actual=10)])
    report = make_executor(q, client).run_pass()

    assert report.conflicted == 1
    assert [o.id for o in q.list()] == [op_id]
    assert q.dead_letters() == []
