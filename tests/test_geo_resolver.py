import unittest

from device_ledger.core.models import Coordinates, LocationSource
from device_ledger.geo.cache import TTLCache
from device_ledger.geo.resolver import GeoResolver
from device_ledger.testing import FakeClock, StubIpProvider, StubReverseGeocoder


class TestGeoResolver(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.cache = TTLCache(3600, clock=self.clock)
        self.primary = StubIpProvider("primary")
        self.secondary = StubIpProvider("secondary")
        self.reverse = StubReverseGeocoder()

    def _resolver(self, **kw):
        params = {"primary": self.primary, "secondary": self.secondary, "reverse": self.reverse, "cache": self.cache}
        params.update(kw)
        return GeoResolver(**params)

    def test_local_origin_skips_providers(self):
        r = self._resolver()
        for origin in ("127.0.0.1", "192.168.1.20", "10.0.0.4", "::1"):
            loc = r.resolve(origin)
            self.assertEqual(loc.source, LocationSource.LOCAL_NETWORK)
            self.assertEqual(loc.city, "Local Network")
            self.assertEqual(loc.country_code, "LAN")
        self.assertEqual(self.primary.calls, [])
        self.assertEqual(self.secondary.calls, [])
        self.assertEqual(len(self.cache), 0)

    def test_non_ip_origin_is_unresolved_without_calls(self):
        loc = self._resolver().resolve("unknown")
        self.assertEqual(loc.source, LocationSource.UNRESOLVED)
        self.assertEqual(self.primary.calls, [])

    def test_primary_success(self):
        loc = self._resolver().resolve("8.8.8.8")
        self.assertEqual(loc.source, LocationSource.NETWORK_PRIMARY)
        self.assertEqual(loc.city, "Mountain View")
        self.assertFalse(loc.cached)
        self.assertEqual(self.primary.calls, ["8.8.8.8"])
        self.assertEqual(self.secondary.calls, [])

    def test_secondary_after_primary_failure(self):
        self.primary.fail = True
        loc = self._resolver().resolve("8.8.8.8")
        self.assertEqual(loc.source, LocationSource.NETWORK_FALLBACK)
        self.assertEqual(self.secondary.calls, ["8.8.8.8"])

    def test_all_failed_is_unresolved_and_not_cached(self):
        self.primary.fail = True
        self.secondary.fail = True
        r = self._resolver()
        loc = r.resolve("8.8.8.8")
        self.assertEqual(loc.source, LocationSource.UNRESOLVED)
        self.assertIsNone(loc.city)
        self.assertEqual(len(self.cache), 0)
        r.resolve("8.8.8.8")
        self.assertEqual(len(self.primary.calls), 2)

    def test_cache_hit_within_ttl(self):
        r = self._resolver()
        r.resolve("8.8.8.8")
        self.clock.advance(3599)
        loc = r.resolve("8.8.8.8")
        self.assertTrue(loc.cached)
        self.assertEqual(loc.city, "Mountain View")
        self.assertEqual(len(self.primary.calls), 1)

    def test_re_resolves_after_ttl(self):
        r = self._resolver()
        r.resolve("8.8.8.8")
        self.clock.advance(3600)
        loc = r.resolve("8.8.8.8")
        self.assertFalse(loc.cached)
        self.assertEqual(len(self.primary.calls), 2)

    def test_device_coordinates_take_precedence(self):
        coords = Coordinates(40.4168, -3.7038, 20.0)
        loc = self._resolver().resolve("8.8.8.8", coords)
        self.assertEqual(loc.source, LocationSource.DEVICE_GPS)
        self.assertEqual(loc.city, "Madrid")
        self.assertEqual(loc.latitude, 40.4168)
        self.assertEqual(loc.longitude, -3.7038)
        # ISP and timezone still come from the network lookup.
        self.assertEqual(loc.isp, "Google LLC")
        self.assertEqual(loc.timezone, "America/Los_Angeles")
        self.assertEqual(self.reverse.calls, [coords])

    def test_reverse_failure_falls_back_to_network(self):
        self.reverse.fail = True
        loc = self._resolver().resolve("8.8.8.8", Coordinates(40.4, -3.7))
        self.assertEqual(loc.source, LocationSource.NETWORK_PRIMARY)
        self.assertEqual(loc.city, "Mountain View")

    def test_no_reverse_geocoder_uses_network(self):
        loc = self._resolver(reverse=None).resolve("8.8.8.8", Coordinates(40.4, -3.7))
        self.assertEqual(loc.source, LocationSource.NETWORK_PRIMARY)

    def test_sweep_cache(self):
        r = self._resolver()
        r.resolve("8.8.8.8")
        self.clock.advance(3600)
        self.assertEqual(r.sweep_cache(), 1)


if __name__ == "__main__":
    unittest.main()
