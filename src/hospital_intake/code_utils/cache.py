import threading
import time
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Tuple

from hospital_intake.code_utils.models import IntakeEntry


class QueueCache:
    """
    Short-lived per-hospital cache of current_queue answers.

    Entries expire after ttl_seconds. Each cached list is tagged with the
    hospital's stored queue version (queue_versions table); a reader passes the
    version it just read from storage to get(), and any mismatch is a miss. Every
    writer bumps that version in its own transaction, so a write from another
    process invalidates this cache on the next read.

    Inside one process the queue manager also calls invalidate() after each
    write. That bumps a per-hospital generation: a reader takes the generation
    before querying storage and passes it to put(); if a write happened in
    between, the put is dropped instead of caching old positions.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._items: Dict[int, Tuple[float, Optional[int], List[IntakeEntry]]] = {}
        self._generations: Dict[int, int] = {}

    def generation(self, hospital_id: int) -> int:
        with self._lock:
            return self._generations.get(hospital_id, 0)

    def get(self, hospital_id: int, version: Optional[int] = None) -> Optional[List[IntakeEntry]]:
        with self._lock:
            item = self._items.get(hospital_id)
            if item is None:
                return None
            expires_at, cached_version, entries = item
            if self._clock() >= expires_at or (version is not None and version != cached_version):
                del self._items[hospital_id]
                return None
            return [replace(e) for e in entries]

    def put(
        self,
        hospital_id: int,
        entries: List[IntakeEntry],
        generation: Optional[int] = None,
        version: Optional[int] = None,
    ) -> bool:
        if self.ttl_seconds <= 0:
            return False
        with self._lock:
            if generation is not None and generation != self._generations.get(hospital_id, 0):
                return False
            self._items[hospital_id] = (
                self._clock() + self.ttl_seconds,
                version,
                [replace(e) for e in entries],
            )
            return True

    def invalidate(self, hospital_id: int) -> None:
        with self._lock:
            self._items.pop(hospital_id, None)
            self._generations[hospital_id] = self._generations.get(hospital_id, 0) + 1

    def clear(self) -> None:
        with self._lock:
            for hospital_id in list(self._items):
                self._generations[hospital_id] = self._generations.get(hospital_id, 0) + 1
            self._items.clear()
