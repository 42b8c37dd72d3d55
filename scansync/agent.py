# agent.py
import logging
import time
from typing import Optional, Dict, Any

from scansync.config import (
    SYNC_API_URL, SYNC_API_TOKEN, SYNC_USER_ID, SYNC_DEVICE_ID, SYNC_QUEUE_PATH,
    SYNC_INTERVAL_SECONDS, SYNC_OPERATION_DELAY_MS, SYNC_MAX_RETRIES, SYNC_BATCH_COUNTS,
)
from scansync.connectivity import ConnectivityMonitor
from scansync.offline_queue import OperationQueue, utcnow
from scansync.schemas import OperationKind
from scansync.sync_client import SyncClient
from scansync.sync_executor import SyncExecutor, RetryPolicy, SyncReport

log = logging.getLogger(__name__)


class SyncAgent:
    """Wires queue, client, executor and connectivity monitor for one device."""

    def __init__(
        self,
        queue_path: Optional[str] = SYNC_QUEUE_PATH,
        client=None,
        base_url: str = SYNC_API_URL,
        token: str = SYNC_API_TOKEN,
        user_id: str = SYNC_USER_ID,
        device_id: str = SYNC_DEVICE_ID,
        interval_seconds: int = SYNC_INTERVAL_SECONDS,
        delay_seconds: float = SYNC_OPERATION_DELAY_MS / 1000.0,
        max_retries: int = SYNC_MAX_RETRIES,
        batch_counts: bool = SYNC_BATCH_COUNTS,
        probe=None,
        scheduler=None,
        sleep=time.sleep,
    ):
        self.queue = OperationQueue(queue_path, max_retries=max_retries)
        self.client = client if client is not None else SyncClient(base_url, token=token, user_id=user_id)
        self.monitor = ConnectivityMonitor(probe=probe, interval_seconds=interval_seconds, scheduler=scheduler)
        self.executor = SyncExecutor(
            self.queue,
            self.client,
            connectivity=self.monitor,
            policy=RetryPolicy(),
            delay_seconds=delay_seconds,
            sleep=sleep,
            batch_counts=batch_counts,
            device_id=device_id,
        )
        self.monitor.attach(self.executor)
        self.queue.on_enqueue = self.monitor.request_sync

    # --- user actions ---
    def record_count(
        self,
        product_id: str,
        quantity: int,
        expected_previous_quantity: Optional[int] = None,
        verified: bool = False,
        **fields,
    ) -> str:
        payload: Dict[str, Any] = dict(fields)
        payload.update(
            product_id=product_id,
            quantity=quantity,
            expected_previous_quantity=expected_previous_quantity,
            verified=verified,
        )
        payload.setdefault("offline_timestamp", utcnow().isoformat())
        payload.setdefault("device_info", {"device_id": self.executor.device_id})
        return self.queue.enqueue(OperationKind.COUNT, payload)

    def queue_product_create(self, **fields) -> str:
        return self.queue.enqueue(OperationKind.PRODUCT_CREATE, fields)

    def queue_product_update(self, product_id: str, **fields) -> str:
        return self.queue.enqueue(OperationKind.PRODUCT_UPDATE, dict(fields, id=product_id))

    def queue_product_delete(self, product_id: str) -> str:
        return self.queue.enqueue(OperationKind.PRODUCT_DELETE, {"id": product_id})

    def sync_now(self) -> SyncReport:
        # Probe without triggering so this call runs exactly one pass
        self.monitor.check(trigger=False)
        return self.executor.run_pass()

    def status(self) -> Dict[str, Any]:
        stats = self.queue.stats()
        stats["online"] = self.monitor.is_online
        stats["sync_in_progress"] = self.executor.is_in_progress
        stats["device_id"] = self.executor.device_id
        return stats

    # --- lifecycle ---
    def start(self) -> None:
        self.monitor.start()

    def stop(self) -> None:
        self.monitor.stop()
