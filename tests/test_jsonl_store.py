import json
import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

from device_ledger.core.exceptions import PersistenceError
from device_ledger.core.models import DeviceRecord, LocationRecord, LocationSource, ParsedUserAgent
from device_ledger.storage.jsonl_store import LocalJsonlRecordStore

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_record(fp="a" * 64, *, minutes=0, origin="8.8.8.8", location=None):
    return DeviceRecord(
        fingerprint=fp,
        attributes_version=1,
        attributes={"origin": origin, "user_agent": "UA", "screen.resolution": "1920x1080"},
        origin=origin,
        captured_at=T0 + timedelta(minutes=minutes),
        location=location or LocationRecord(city="Paris", country="France", source=LocationSource.NETWORK_PRIMARY),
        user_agent=ParsedUserAgent(browser_name="Firefox"),
    )


class TestLocalJsonlRecordStore(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.path = Path(self._td.name) / "nested" / "ledger.jsonl"
        self.store = LocalJsonlRecordStore(str(self.path))

    def tearDown(self):
        self._td.cleanup()

    def test_insert_then_duplicate(self):
        self.assertTrue(self.store.insert(make_record()))
        self.assertFalse(self.store.insert(make_record(minutes=5)))
        self.assertEqual(self.store.count(), 1)
        self.assertTrue(self.store.exists("a" * 64))
        self.assertEqual(self.store.get("a" * 64).captured_at, T0)
        self.assertEqual(len(self.path.read_text(encoding="utf-8").splitlines()), 1)

    def test_records_survive_reopen(self):
        self.store.insert(make_record())
        reopened = LocalJsonlRecordStore(str(self.path))
        rec = reopened.get("a" * 64)
        self.assertEqual(rec.location.city, "Paris")
        self.assertEqual(rec.location.source, LocationSource.NETWORK_PRIMARY)
        self.assertEqual(rec.user_agent.browser_name, "Firefox")
        self.assertEqual(rec.captured_at, T0)

    def test_list_recent_newest_first(self):
        self.store.insert(make_record("a" * 64, minutes=0))
        self.store.insert(make_record("b" * 64, minutes=10))
        self.store.insert(make_record("c" * 64, minutes=5))
        self.assertEqual([r.fingerprint[0] for r in self.store.list_recent()], ["b", "c", "a"])
        self.assertEqual([r.fingerprint[0] for r in self.store.list_recent(limit=1)], ["b"])

    def test_concurrent_inserts_of_one_fingerprint(self):
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(50)

        def worker(i):
            barrier.wait()
            ok = self.store.insert(make_record(minutes=i))
            with lock:
                results.append(ok)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(results.count(True), 1)
        self.assertEqual(self.store.count(), 1)
        self.assertEqual(len(self.path.read_text(encoding="utf-8").splitlines()), 1)

    def test_update_rewrites_only_location(self):
        self.store.insert(make_record())
        new_loc = LocationRecord(city="Lyon", country="France", source=LocationSource.NETWORK_FALLBACK)
        self.assertTrue(self.store.update("a" * 64, location=new_loc))
        self.assertFalse(self.store.update("f" * 64, location=new_loc))
        self.assertFalse(self.store.update("a" * 64))

        reopened = LocalJsonlRecordStore(str(self.path))
        rec = reopened.get("a" * 64)
        self.assertEqual(rec.location.city, "Lyon")
        self.assertEqual(rec.captured_at, T0)
        self.assertEqual(rec.user_agent.browser_name, "Firefox")

    def test_delete_all(self):
        self.store.insert(make_record("a" * 64))
        self.store.insert(make_record("b" * 64))
        self.assertEqual(self.store.delete_all(), 2)
        self.assertEqual(self.store.count(), 0)
        self.assertEqual(self.path.read_text(encoding="utf-8"), "")
        self.assertTrue(self.store.insert(make_record("a" * 64)))

    def test_first_line_wins_on_load(self):
        lines = [make_record(minutes=0).to_dict(), make_record(minutes=9).to_dict()]
        self.path.write_text("\n".join(json.dumps(x) for x in lines) + "\n", encoding="utf-8")
        self.assertEqual(LocalJsonlRecordStore(str(self.path)).get("a" * 64).captured_at, T0)

    def test_corrupt_file_raises_persistence_error(self):
        self.path.write_text("{not json\n", encoding="utf-8")
        with self.assertRaises(PersistenceError):
            LocalJsonlRecordStore(str(self.path))

    def test_failed_delete_all_keeps_index_and_file_in_step(self):
        self.store.insert(make_record())
        with patch("device_ledger.storage.jsonl_store.os.replace", side_effect=OSError("disk full")):
            with self.assertRaises(PersistenceError):
                self.store.delete_all()
        self.assertEqual(self.store.count(), 1)
        self.assertFalse(self.store.insert(make_record(minutes=1)))
        self.assertEqual(len(self.path.read_text(encoding="utf-8").splitlines()), 1)
        self.assertFalse(self.path.with_suffix(".jsonl.tmp").exists())

    def test_failed_update_keeps_previous_record(self):
        self.store.insert(make_record())
        new_loc = LocationRecord(city="Lyon", country="France", source=LocationSource.NETWORK_FALLBACK)
        with patch("device_ledger.storage.jsonl_store.os.replace", side_effect=OSError("disk full")):
            with self.assertRaises(PersistenceError):
                self.store.update("a" * 64, location=new_loc)
        self.assertEqual(self.store.get("a" * 64).location.city, "Paris")
        self.assertEqual(LocalJsonlRecordStore(str(self.path)).get("a" * 64).location.city, "Paris")
        self.assertFalse(self.path.with_suffix(".jsonl.tmp").exists())

    def test_ping(self):
        self.store.ping()


if __name__ == "__main__":
    unittest.main()
