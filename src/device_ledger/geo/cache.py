from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from device_ledger.core.models import LocationRecord

Clock = Callable[[], float]

DEFAULT_TTL_SECONDS = 3600


class TTLCache:
    """Origin -> LocationRecord with a fixed time-to-live.

    An entry inserted at T is served for lookups strictly before T + ttl and
    treated as absent from T + ttl on. `clock` returns seconds; inject a fake
    one in tests.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, *, clock: Clock = time.monotonic) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, Tuple[LocationRecord, float]] = {}
        self._lock = threading.Lock()

    def _expired(self, inserted_at: float, now: float) -> bool:
        return now - inserted_at >= self.ttl_seconds

    def get(self, key: str) -> Optional[LocationRecord]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            record, inserted_at = entry
            if self._expired(inserted_at, self._clock()):
                del self._entries[key]
                return None
            return record

    def put(self, key: str, record: LocationRecord) -> None:
        with self._lock:
            self._entries[key] = (record, self._clock())

    def sweep(self) -> int:
        """Drop expired entries; returns how many were removed."""
        with self._lock:
            now = self._clock()
            stale = [k for k, (_, ts) in self._entries.items() if self._expired(ts, now)]
            for k in stale:
                del self._entries[k]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
