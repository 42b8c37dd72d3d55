# connectivity.py
import logging
import threading
from typing import Optional, Callable

from apscheduler.schedulers.background import BackgroundScheduler

from scansync.config import SYNC_INTERVAL_SECONDS

log = logging.getLogger(__name__)

TICK_JOB_ID = "connectivity-tick"
SYNC_JOB_ID = "sync-pass"


class ConnectivityMonitor:
    """
    Tracks whether the server is reachable and decides when a sync pass
    should start: on reconnect, after an enqueue, and on a fixed interval as
    a safety net.

    With a running scheduler, passes are submitted as one-shot jobs so the
    caller never blocks on the network. Without one they run inline.
    """

    def __init__(
        self,
        probe: Optional[Callable[[], bool]] = None,
        interval_seconds: int = SYNC_INTERVAL_SECONDS,
        scheduler=None,
        online: bool = False,
    ):
        self.probe = probe
        self.interval_seconds = interval_seconds
        self.scheduler = scheduler
        self.executor = None
        self._online = online
        self._owns_scheduler = False
        self._lock = threading.Lock()

    def attach(self, executor) -> None:
        self.executor = executor
        if self.probe is None:
            self.probe = executor.client.ping

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool, trigger: bool = True) -> None:
        with self._lock:
            was_online = self._online
            self._online = bool(online)
        if self._online and not was_online:
            log.info("Connection restored")
            if trigger:
                self.trigger()
        elif was_online and not self._online:
            log.info("Connection lost; sync suspended")

    def check(self, trigger: bool = True) -> bool:
        if self.probe is None:
            return self._online
        try:
            online = bool(self.probe())
        except Exception as e:
            log.warning("Connectivity probe raised %s: %s", type(e).__name__, e)
            online = False
        self.set_online(online, trigger=trigger)
        return online

    def tick(self) -> None:
        was_online = self._online
        # A reconnect triggers from set_online; only trigger here when it did not
        if self.check() and was_online and self.executor is not None and len(self.executor.queue):
            self.trigger()

    def request_sync(self, op=None) -> None:
        if not self._online or self.executor is None or self.executor.is_in_progress:
            return
        self.trigger()

    def trigger(self) -> None:
        if self.executor is None:
            return
        if self.scheduler is not None and self.scheduler.running:
            # A pending pass absorbs further triggers
            self.scheduler.add_job(
                self.executor.run_pass,
                id=SYNC_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        else:
            self.executor.run_pass()

    # --- lifecycle ---
    def start(self) -> None:
        if self.scheduler is None:
            self.scheduler = BackgroundScheduler()
            self._owns_scheduler = True
        self.scheduler.add_job(
            self.tick,
            "interval",
            seconds=self.interval_seconds,
            id=TICK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()
        log.info("Connectivity monitor started (interval=%ss)", self.interval_seconds)
        self.scheduler.add_job(self.tick)

    def stop(self) -> None:
        if self.scheduler is None:
            return
        if self.scheduler.get_job(TICK_JOB_ID):
            self.scheduler.remove_job(TICK_JOB_ID)
        if self._owns_scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
            self._owns_scheduler = False
        log.info("Connectivity monitor stopped")
