"""
Single-flight upstream fetches per cache slot.

A slot is a (category, key) pair. While one fetch for a slot is running,
later misses on the same slot block on its Future and receive the same
entry or the same exception instead of issuing their own upstream call.
"""
import logging
import threading
from concurrent.futures import Future, TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Tuple

from .core import CacheCategory

logger = logging.getLogger("cache.coalescer")

Slot = Tuple[CacheCategory, str]


class RequestCoalescer:
    """
    Collapses concurrent fetches for the same slot into one.

    Usage:
        coalescer = RequestCoalescer(timeout=60)
        entry = coalescer.run(CacheCategory.REALTIME, "arrivals:42", fetch_and_store)

    The same key in two categories is two slots and never shares a fetch.
    """

    def __init__(self, timeout: float = 60.0):
        """
        Args:
            timeout: Max seconds a follower waits on the leader's fetch
        """
        self._timeout = timeout
        self._lock = threading.Lock()
        self._flights: Dict[Slot, Future] = {}
        self._joined = 0

    def run(self, category: CacheCategory, key: str, fetch_fn: Callable[[], Any]) -> Any:
        """
        Run fetch_fn for the slot, or join the fetch already running for it.

        Raises:
            TimeoutError: The leader's fetch outlived this caller's wait
            Exception: Whatever fetch_fn raised, for leader and followers alike
        """
        slot = (category, key)
        with self._lock:
            flight = self._flights.get(slot)
            leader = flight is None
            if leader:
                flight = Future()
                self._flights[slot] = flight
            else:
                self._joined += 1

        if leader:
            return self._lead(slot, flight, fetch_fn)

        logger.debug(f"Joining in-flight fetch for {category.value}/{key}")
        try:
            return flight.result(timeout=self._timeout)
        except FutureTimeout:
            logger.error(f"Gave up waiting on fetch for {category.value}/{key}")
            raise TimeoutError(
                f"Fetch for {category.value}/{key} still running after {self._timeout:.0f}s"
            ) from None

    def _lead(self, slot: Slot, flight: Future, fetch_fn: Callable[[], Any]) -> Any:
        try:
            flight.set_result(fetch_fn())
        except Exception as e:
            flight.set_exception(e)
        finally:
            with self._lock:
                del self._flights[slot]
        return flight.result()

    @property
    def active_fetches(self) -> int:
        with self._lock:
            return len(self._flights)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            slots = [f"{category.value}/{key}" for category, key in self._flights]
            joined = self._joined
        return {
            "active_fetches": len(slots),
            "active_slots": slots,
            "joined_total": joined,
        }
