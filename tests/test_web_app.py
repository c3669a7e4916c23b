import tempfile
import unittest
from pathlib import Path

from device_ledger.config.settings import Settings
from device_ledger.core.exceptions import PersistenceError
from device_ledger.core.models import LocationSource
from device_ledger.geo.cache import TTLCache
from device_ledger.geo.resolver import GeoResolver
from device_ledger.storage.jsonl_store import LocalJsonlRecordStore
from device_ledger.testing import BrokenStore, StubIpProvider
from device_ledger.web.app import ADMIN_TOKEN_HEADER, EXTENSION_KEY, create_app, shutdown_app

CHROME = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
SUBMISSION = {"screen": {"resolution": "1920x1080"}, "browser": {"language": "en"}}
TOKEN = "s3cret"


class UnreadableStore(LocalJsonlRecordStore):
    def list_recent(self, limit=None):
        raise PersistenceError("read failed")


class AppTestCase(unittest.TestCase):
    store_cls = LocalJsonlRecordStore
    admin_token = TOKEN

    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        path = str(Path(self._td.name) / "ledger.jsonl")
        self.settings = Settings(ledger_path=path, admin_token=self.admin_token, backfill_rate_per_sec=1000.0)
        self.store = self.store_cls(path)
        self.primary = StubIpProvider("primary")
        self.resolver = GeoResolver(primary=self.primary, cache=TTLCache(3600))
        self.app = create_app(self.settings, store=self.store, resolver=self.resolver, start_scheduler=False)
        self.client = self.app.test_client()

    def tearDown(self):
        shutdown_app(self.app)
        self._td.cleanup()

    def capture(self, body=SUBMISSION, origin="8.8.8.8"):
        headers = {"X-Forwarded-For": origin, "User-Agent": CHROME}
        return self.client.post("/api/capture", json=body, headers=headers)

    def admin(self, method, url):
        return self.client.open(url, method=method, headers={ADMIN_TOKEN_HEADER: TOKEN})


class TestCaptureEndpoint(AppTestCase):
    def test_accept_then_duplicate(self):
        first = self.capture()
        self.assertEqual(first.status_code, 200)
        body = first.get_json()
        self.assertTrue(body["accepted"])
        self.assertFalse(body["duplicate"])
        self.assertEqual(len(body["id"]), 8)

        second = self.capture().get_json()
        self.assertEqual(second, {"accepted": False, "duplicate": True, "id": body["id"]})

    def test_origin_from_forwarded_for(self):
        self.capture(origin="203.0.113.5, 10.0.0.1")
        self.assertEqual(self.primary.calls, ["203.0.113.5"])
        self.assertEqual(self.store.list_recent()[0].origin, "203.0.113.5")

    def test_test_client_peer_is_local(self):
        self.client.post("/api/capture", json=SUBMISSION, headers={"User-Agent": CHROME})
        self.assertEqual(self.store.list_recent()[0].location.source, LocationSource.LOCAL_NETWORK)

    def test_non_json_body_is_empty_submission(self):
        resp = self.client.post("/api/capture", data="not json", content_type="text/plain", headers={"X-Forwarded-For": "8.8.8.8"})
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.get_json()["accepted"])

    def test_referrer_recorded(self):
        self.client.post(
            "/api/capture",
            json=SUBMISSION,
            headers={"X-Forwarded-For": "8.8.8.8", "User-Agent": CHROME, "Referer": "https://example.org/a"},
        )
        self.assertEqual(self.store.list_recent()[0].referrer, "https://example.org/a")

    def test_health(self):
        self.capture()
        self.assertEqual(self.client.get("/").get_json(), {"status": "ok", "records": 1})


class TestAdminEndpoints(AppTestCase):
    def test_reads_require_token(self):
        for url in ("/api/records", "/api/stats", "/api/locations"):
            self.assertEqual(self.client.get(url).status_code, 403, url)
            self.assertEqual(
                self.client.get(url, headers={ADMIN_TOKEN_HEADER: "wrong"}).status_code, 403, url
            )
            self.assertEqual(self.admin("GET", url).status_code, 200, url)

    def test_records_and_stats(self):
        self.capture()
        records = self.admin("GET", "/api/records").get_json()
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0]["location"]["source"], "network-primary")

        stats = self.admin("GET", "/api/stats").get_json()
        self.assertEqual(stats["total"], 1)
        self.assertEqual(stats["browsers"], {"Chrome": 1})

    def test_clear(self):
        self.capture()
        self.assertEqual(self.client.delete("/api/records").status_code, 403)
        self.assertEqual(self.admin("DELETE", "/api/records").get_json(), {"deleted": 1})
        self.assertEqual(self.store.count(), 0)

    def test_backfill_and_migrate(self):
        self.primary.fail = True
        self.capture()
        self.primary.fail = False
        self.resolver.cache.clear()

        self.assertEqual(self.client.post("/api/admin/backfill").status_code, 403)
        result = self.admin("POST", "/api/admin/backfill").get_json()
        self.assertEqual(result, {"scanned": 1, "updated": 1, "still_unresolved": 0})

        report = self.admin("GET", "/api/locations").get_json()
        self.assertEqual(report["unresolved"], 0)

        migrated = self.admin("POST", "/api/admin/migrate").get_json()
        self.assertEqual(migrated, {"scanned": 1, "migrated": 0})


class TestOpenAdmin(AppTestCase):
    admin_token = ""

    def test_no_token_configured_leaves_reads_open(self):
        self.assertEqual(self.client.get("/api/stats").status_code, 200)


class ClosingStore(LocalJsonlRecordStore):
    closed = False

    def close(self):
        self.closed = True


class TestShutdown(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        path = str(Path(self._td.name) / "ledger.jsonl")
        self.store = ClosingStore(path)
        resolver = GeoResolver(primary=StubIpProvider("primary"), cache=TTLCache(3600))
        self.app = create_app(Settings(ledger_path=path, geo_cache_sweep_seconds=600), store=self.store, resolver=resolver)

    def tearDown(self):
        svc = self.app.extensions[EXTENSION_KEY]
        if svc.scheduler is not None and svc.scheduler.running:
            svc.scheduler.shutdown(wait=False)
        self._td.cleanup()

    def test_stops_scheduler_and_closes_store(self):
        svc = self.app.extensions[EXTENSION_KEY]
        self.assertTrue(svc.scheduler.running)
        self.assertIsNotNone(svc.scheduler.get_job("geo_cache_sweep"))

        shutdown_app(self.app)
        self.assertFalse(svc.scheduler.running)
        self.assertTrue(self.store.closed)


class TestStoreFailures(AppTestCase):
    store_cls = BrokenStore

    def test_capture_failure_is_500(self):
        resp = self.capture()
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.get_json(), {"error": "internal error"})


class TestReadFailures(AppTestCase):
    store_cls = UnreadableStore

    def test_read_failure_is_500(self):
        resp = self.admin("GET", "/api/stats")
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.get_json(), {"error": "internal error"})


if __name__ == "__main__":
    unittest.main()
