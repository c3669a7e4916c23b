from __future__ import annotations

import json
import os
import threading
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

from device_ledger.core.exceptions import PersistenceError
from device_ledger.core.models import DeviceRecord, LocationRecord, ParsedUserAgent


class LocalJsonlRecordStore:
    """Device ledger stored as JSONL, one record per line.

    - append-only for inserts; a single lock makes check-and-append atomic
      within the process
    - fingerprint index held in memory
    - `update` and `delete_all` rewrite the file via a temp file + rename

    Uniqueness only holds for one process; run the PostgreSQL store when
    several instances write concurrently.
    """

    def __init__(self, path: str) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._by_fp: Dict[str, DeviceRecord] = {}
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            if not self._path.exists():
                self._path.write_text("", encoding="utf-8")
            self._load_existing()
        except (OSError, ValueError, KeyError) as e:
            raise PersistenceError(f"cannot open ledger {self._path}: {e}") from e

    def _load_existing(self) -> None:
        text = self._path.read_text(encoding="utf-8")
        for line in text.splitlines():
            if not line.strip():
                continue
            rec = DeviceRecord.from_dict(json.loads(line))
            # First write wins, matching the insert contract.
            self._by_fp.setdefault(rec.fingerprint, rec)

    def insert(self, record: DeviceRecord) -> bool:
        with self._lock:
            if record.fingerprint in self._by_fp:
                return False
            try:
                with self._path.open("a", encoding="utf-8") as f:
                    f.write(json.dumps(record.to_dict(), ensure_ascii=False) + "\n")
            except OSError as e:
                raise PersistenceError(f"append failed: {e}") from e
            self._by_fp[record.fingerprint] = record
            return True

    def exists(self, fingerprint: str) -> bool:
        return fingerprint in self._by_fp

    def get(self, fingerprint: str) -> Optional[DeviceRecord]:
        return self._by_fp.get(fingerprint)

    def list_recent(self, limit: Optional[int] = None) -> List[DeviceRecord]:
        with self._lock:
            records = sorted(self._by_fp.values(), key=lambda r: r.captured_at, reverse=True)
        return records[:limit] if limit is not None else records

    def count(self) -> int:
        return len(self._by_fp)

    def delete_all(self) -> int:
        with self._lock:
            n = len(self._by_fp)
            self._rewrite({})
            self._by_fp = {}
            return n

    def update(
        self,
        fingerprint: str,
        *,
        location: Optional[LocationRecord] = None,
        user_agent: Optional[ParsedUserAgent] = None,
    ) -> bool:
        with self._lock:
            existing = self._by_fp.get(fingerprint)
            if existing is None:
                return False
            changes = {}
            if location is not None:
                changes["location"] = location
            if user_agent is not None:
                changes["user_agent"] = user_agent
            if not changes:
                return False
            updated = dict(self._by_fp)
            updated[fingerprint] = replace(existing, **changes)
            self._rewrite(updated)
            self._by_fp = updated
            return True

    def ping(self) -> None:
        if not os.access(self._path, os.W_OK):
            raise PersistenceError(f"ledger not writable: {self._path}")

    def close(self) -> None:
        # Nothing held open between calls.
        return None

    def _rewrite(self, records: Dict[str, DeviceRecord]) -> None:
        # The index is swapped only after this returns, so a failed rewrite
        # leaves memory and disk in agreement.
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            with tmp.open("w", encoding="utf-8") as f:
                for rec in records.values():
                    f.write(json.dumps(rec.to_dict(), ensure_ascii=False) + "\n")
            os.replace(tmp, self._path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise PersistenceError(f"rewrite failed: {e}") from e
