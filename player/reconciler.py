"""
Periodic background reconciliation of the offline cache against the server.
"""

import logging
import threading
from typing import Optional

from shared.constants import DEFAULT_RECONCILE_INTERVAL_MINUTES
from shared.errors import TunelockerError
from .cache import OfflineCacheManager, ReconcileSummary

logger = logging.getLogger(__name__)


class CacheReconciler:
    """Runs ``OfflineCacheManager.reconcile`` every ``interval`` seconds on a daemon thread."""

    def __init__(self, cache: OfflineCacheManager,
                 interval: float = DEFAULT_RECONCILE_INTERVAL_MINUTES * 60):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.cache = cache
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_summary: Optional[ReconcileSummary] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def reconcile_once(self) -> Optional[ReconcileSummary]:
        try:
            self.last_summary = self.cache.reconcile()
        except TunelockerError as e:
            logger.warning("Cache reconciliation failed: %s", e)
            return None
        return self.last_summary

    def _run(self):
        logger.info("Cache reconciler started (every %.0fs)", self.interval)
        while not self._stop_event.wait(self.interval):
            self.reconcile_once()
        logger.info("Cache reconciler stopped")

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="cache-reconciler", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
