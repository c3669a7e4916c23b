from __future__ import annotations

from typing import List, Optional, Protocol

from device_ledger.core.models import DeviceRecord, LocationRecord, ParsedUserAgent


class RecordStore(Protocol):
    """Durable DeviceRecords keyed uniquely by fingerprint.

    `insert` must be atomic across concurrent callers: exactly one insert per
    fingerprint returns True, every other one returns False. Failures other
    than a duplicate key raise PersistenceError.
    """

    def insert(self, record: DeviceRecord) -> bool: ...

    def exists(self, fingerprint: str) -> bool: ...

    def get(self, fingerprint: str) -> Optional[DeviceRecord]: ...

    def list_recent(self, limit: Optional[int] = None) -> List[DeviceRecord]: ...

    def count(self) -> int: ...

    def delete_all(self) -> int: ...

    def update(
        self,
        fingerprint: str,
        *,
        location: Optional[LocationRecord] = None,
        user_agent: Optional[ParsedUserAgent] = None,
    ) -> bool: ...

    def ping(self) -> None: ...

    def close(self) -> None: ...
