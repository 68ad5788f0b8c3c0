"""Promotes approved, time-scheduled deployments into execution."""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for_futures
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .models import DeploymentStatus
from .store import DeploymentStore, utcnow
from .utils.logging import get_logger

logger = get_logger(__name__)

MIN_INTERVAL = 10

Trigger = Callable[[str], Any]


class DeploymentScheduler:
    """Background poll loop over ``store.list_due_scheduled``.

    Each due deployment is claimed with ``store.claim_scheduled`` before it
    is handed to ``trigger`` on a worker pool, so one deployment is started
    at most once even when several schedulers share a store.
    """

    def __init__(
        self,
        store: DeploymentStore,
        trigger: Trigger,
        *,
        interval: float = 60,
        max_workers: int = 4,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if interval < MIN_INTERVAL:
            raise ValueError(f"Scheduler interval must be at least {MIN_INTERVAL} seconds")
        self.store = store
        self.trigger = trigger
        self.interval = interval
        self.max_workers = max_workers
        self._clock = clock

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._pool: Optional[ThreadPoolExecutor] = None
        self._futures: Dict[str, Future] = {}
        self._last_check: Optional[datetime] = None
        self._triggered = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                logger.warning("Scheduler is already running")
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, name="deployment-scheduler", daemon=True)
            self._thread.start()
        logger.info("Deployment scheduler started (interval %ss)", self.interval)

    def stop(self, wait: bool = True) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and wait and thread is not threading.current_thread():
            thread.join()
        with self._lock:
            self._thread = None
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)
        logger.info("Deployment scheduler stopped")

    def set_interval(self, interval: float) -> None:
        if interval < MIN_INTERVAL:
            raise ValueError(f"Scheduler interval must be at least {MIN_INTERVAL} seconds")
        self.interval = interval
        logger.info("Scheduler interval set to %ss", interval)

    def status(self) -> Dict[str, Any]:
        with self._lock:
            active = [key for key, future in self._futures.items() if not future.done()]
            return {
                "running": self.running,
                "interval": self.interval,
                "last_check": self._last_check.isoformat() if self._last_check else None,
                "triggered": self._triggered,
                "active": active,
            }

    def check_now(self) -> List[str]:
        """Run one scan; returns the ids claimed and submitted during it."""
        now = self._clock()
        claimed = []
        for record in self.store.list_due_scheduled(now):
            if not self.store.claim_scheduled(record.id, now):
                logger.debug("Deployment %s was claimed elsewhere", record.id)
                continue
            logger.info("Scheduled time reached for deployment %s", record.id)
            self._submit(record.id)
            claimed.append(record.id)
        with self._lock:
            self._last_check = now
            self._triggered += len(claimed)
        return claimed

    def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Block until every submitted deployment has finished."""
        with self._lock:
            futures = list(self._futures.values())
        wait_for_futures(futures, timeout=timeout)

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.check_now()
            except Exception:
                logger.exception("Scheduled deployment check failed")
            self._stop.wait(self.interval)

    def _submit(self, deployment_id: str) -> None:
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.max_workers, thread_name_prefix="scheduled-deploy"
                )
            self._futures = {key: f for key, f in self._futures.items() if not f.done()}
            self._futures[deployment_id] = self._pool.submit(self._run, deployment_id)

    def _run(self, deployment_id: str) -> None:
        try:
            self.trigger(deployment_id)
        except Exception as exc:
            logger.exception("Scheduled deployment %s failed to run", deployment_id)
            message = f"Scheduled execution failed: {exc}"
            self.store.update_status(deployment_id, DeploymentStatus.FAILED, error=message)
            self.store.append_log(deployment_id, f"[{self._clock().isoformat()}] {message}")
