from __future__ import annotations

from device_ledger.core.models import Admission, DeviceRecord
from device_ledger.storage.base import RecordStore


class DuplicateGuard:
    """Decide first sighting vs. duplicate for a fingerprint.

    `admit` is an optimistic existence lookup that lets callers skip
    enrichment for known devices; it races with concurrent submissions.
    `commit` is authoritative: the store's unique key on `fingerprint`
    accepts exactly one insert and reports every other one as a duplicate.
    """

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    def admit(self, fingerprint: str) -> Admission:
        if self._store.exists(fingerprint):
            return Admission.REJECTED
        return Admission.ACCEPTED

    def commit(self, record: DeviceRecord) -> Admission:
        if self._store.insert(record):
            return Admission.ACCEPTED
        return Admission.REJECTED
