# tick_store.py
import heapq
import logging
import threading
from typing import Dict, List, Tuple

logger = logging.getLogger(__name__)


class TickStore:
    """
    Raw tick storage keyed by timestamp. Holds no aggregates.

    :param _buckets (dict): maps a timestamp in milliseconds to a dict of instrument -> price.
    There is at most one price per (timestamp, instrument) pair, a later insert overwrites it.
    :param _timestamps (list): a min-heap of the distinct bucket timestamps, so eviction can
    stop at the first live timestamp instead of scanning every bucket.
    :param _lock (Lock): guards structural changes to _buckets and _timestamps and the
    enumeration done by snapshot_entries.
    """

    def __init__(self):
        self._buckets: Dict[int, Dict[str, float]] = {}
        self._timestamps: List[int] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._buckets)

    def insert(self, timestamp_ms: int, instrument: str, price: float) -> None:
        with self._lock:
            bucket = self._buckets.get(timestamp_ms)
            if bucket is None:
                bucket = {}
                self._buckets[timestamp_ms] = bucket
                heapq.heappush(self._timestamps, timestamp_ms)
            bucket[instrument] = price

    def evict_before(self, cutoff_ms: int) -> int:
        """
        Drop every bucket whose timestamp is <= cutoff_ms. The boundary itself is expired.
        Returns the number of buckets removed.
        """
        removed = 0
        with self._lock:
            while self._timestamps and self._timestamps[0] <= cutoff_ms:
                ts = heapq.heappop(self._timestamps)
                dropped = self._buckets.pop(ts, None)
                removed += 1
                logger.debug("Removing entries with timestamp %d: %s", ts, dropped)
        return removed

    def snapshot_entries(self) -> List[Tuple[str, float]]:
        """Point-in-time copy of every stored (instrument, price) pair."""
        with self._lock:
            return [
                (instrument, price)
                for bucket in self._buckets.values()
                for instrument, price in bucket.items()
            ]

    def timestamps(self) -> List[int]:
        with self._lock:
            return sorted(self._timestamps)
