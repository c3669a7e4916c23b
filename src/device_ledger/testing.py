from __future__ import annotations

import threading
from typing import List, Optional

from device_ledger.core.exceptions import PersistenceError, ProviderError
from device_ledger.core.models import Coordinates, DeviceRecord, LocationRecord
from device_ledger.storage.jsonl_store import LocalJsonlRecordStore


class FakeClock:
    """Manually advanced clock returning seconds."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubIpProvider:
    """
    Deterministic IP provider for tests.

    - returns `record` for every lookup, or raises ProviderError when `fail` is set
    - records every IP it was asked about in `calls`
    """

    def __init__(self, name: str, record: Optional[LocationRecord] = None, *, fail: bool = False) -> None:
        self.name = name
        self.record = record or LocationRecord(
            city="Mountain View",
            region="California",
            country_code="US",
            country="United States",
            timezone="America/Los_Angeles",
            latitude=37.386,
            longitude=-122.0838,
            isp="Google LLC",
            org="Google Public DNS",
        )
        self.fail = fail
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def lookup(self, ip: str) -> LocationRecord:
        with self._lock:
            self.calls.append(ip)
        if self.fail:
            raise ProviderError(self.name, "stub failure")
        return self.record


class StubReverseGeocoder:
    def __init__(self, record: Optional[LocationRecord] = None, *, fail: bool = False) -> None:
        self.name = "stub-reverse"
        self.record = record or LocationRecord(
            city="Madrid",
            region="Comunidad de Madrid",
            country_code="ES",
            country="Spain",
        )
        self.fail = fail
        self.calls: List[Coordinates] = []

    def reverse(self, coords: Coordinates) -> LocationRecord:
        self.calls.append(coords)
        if self.fail:
            raise ProviderError(self.name, "stub failure")
        return self.record


class RacingStore(LocalJsonlRecordStore):
    """Store whose existence pre-check always misses, forcing every caller to the insert."""

    def exists(self, fingerprint: str) -> bool:
        return False


class BrokenStore(LocalJsonlRecordStore):
    """Store whose inserts fail with a non-duplicate error."""

    def insert(self, record: DeviceRecord) -> bool:
        raise PersistenceError("disk on fire")
