"""
Periodic purge of entries that are too old to serve even as a fallback.

Only useful when a stale bound is configured; with stale-forever
fallback nothing is ever purged.
"""
import logging
import threading
from typing import Optional

from .store import CacheStore

logger = logging.getLogger("cache.sweeper")


class CacheSweeper:
    """Background thread calling store.purge_stale every `interval` seconds."""

    def __init__(self, store: CacheStore, max_stale_seconds: float, interval: float = 120.0):
        self._store = store
        self._max_stale = max_stale_seconds
        self._interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> int:
        return self._store.purge_stale(self._max_stale)

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.run_once()
            except Exception as e:
                logger.warning(f"Cache sweep failed: {e}")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="cache-sweeper", daemon=True
        )
        self._thread.start()
        logger.info(
            f"Cache sweeper started (every {self._interval:.0f}s, "
            f"max stale {self._max_stale:.0f}s)"
        )

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
