import json
import unittest
from unittest.mock import patch

import requests

from device_ledger.core.exceptions import ProviderError
from device_ledger.core.models import Coordinates
from device_ledger.geo.http_client import HttpClient, HttpConfig
from device_ledger.geo.providers import IpApiProvider, IpWhoisProvider, NominatimReverseGeocoder


def _response(payload, status=200):
    resp = requests.models.Response()
    resp.status_code = status
    resp._content = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    return resp


class ProviderTestCase(unittest.TestCase):
    def setUp(self):
        self.session = requests.Session()
        self.client = HttpClient(HttpConfig(user_agent="device-ledger-tests/1.0"), session=self.session)

    def tearDown(self):
        self.client.close()

    def respond(self, payload, status=200):
        return patch.object(self.session, "get", return_value=_response(payload, status))


class TestHttpClient(ProviderTestCase):
    def test_sets_user_agent_and_timeouts(self):
        with self.respond({"ok": True}) as get:
            self.assertEqual(self.client.get_json("p", "http://x"), {"ok": True})
        self.assertEqual(self.session.headers["User-Agent"], "device-ledger-tests/1.0")
        self.assertEqual(get.call_args.kwargs["timeout"], (3.0, 5.0))

    def test_timeout_is_provider_error(self):
        with patch.object(self.session, "get", side_effect=requests.Timeout("slow")):
            with self.assertRaises(ProviderError) as ctx:
                self.client.get_json("p", "http://x")
        self.assertEqual(ctx.exception.provider, "p")

    def test_connection_error_is_provider_error(self):
        with patch.object(self.session, "get", side_effect=requests.ConnectionError("refused")):
            with self.assertRaises(ProviderError):
                self.client.get_json("p", "http://x")

    def test_non_2xx(self):
        with self.respond({"message": "rate limited"}, status=429):
            with self.assertRaises(ProviderError):
                self.client.get_json("p", "http://x")

    def test_non_json_and_non_object(self):
        with self.respond(b"<html>oops</html>"):
            with self.assertRaises(ProviderError):
                self.client.get_json("p", "http://x")
        with self.respond([1, 2, 3]):
            with self.assertRaises(ProviderError):
                self.client.get_json("p", "http://x")


class TestIpApiProvider(ProviderTestCase):
    def test_success(self):
        payload = {
            "status": "success",
            "country": "United States",
            "countryCode": "US",
            "regionName": "Virginia",
            "city": "Ashburn",
            "lat": 39.03,
            "lon": -77.5,
            "timezone": "America/New_York",
            "isp": "Google LLC",
            "org": "Google Public DNS",
        }
        with self.respond(payload) as get:
            loc = IpApiProvider(self.client).lookup("8.8.8.8")
        self.assertEqual(get.call_args.args[0], "http://ip-api.com/json/8.8.8.8")
        self.assertEqual(loc.city, "Ashburn")
        self.assertEqual(loc.region, "Virginia")
        self.assertEqual(loc.country_code, "US")
        self.assertEqual(loc.timezone, "America/New_York")
        self.assertEqual(loc.latitude, 39.03)
        self.assertEqual(loc.isp, "Google LLC")

    def test_fail_status(self):
        with self.respond({"status": "fail", "message": "reserved range"}):
            with self.assertRaises(ProviderError) as ctx:
                IpApiProvider(self.client).lookup("8.8.8.8")
        self.assertIn("reserved range", str(ctx.exception))


class TestIpWhoisProvider(ProviderTestCase):
    def test_success(self):
        payload = {
            "success": True,
            "city": "Madrid",
            "region": "Madrid",
            "country": "Spain",
            "country_code": "ES",
            "latitude": 40.4,
            "longitude": -3.7,
            "timezone": {"id": "Europe/Madrid"},
            "connection": {"isp": "Telefonica de Espana", "org": "Movistar"},
        }
        with self.respond(payload):
            loc = IpWhoisProvider(self.client).lookup("80.58.61.250")
        self.assertEqual(loc.city, "Madrid")
        self.assertEqual(loc.timezone, "Europe/Madrid")
        self.assertEqual(loc.isp, "Telefonica de Espana")
        self.assertEqual(loc.org, "Movistar")

    def test_unsuccessful(self):
        with self.respond({"success": False, "message": "Invalid IP address"}):
            with self.assertRaises(ProviderError):
                IpWhoisProvider(self.client).lookup("8.8.8.8")


class TestNominatimReverseGeocoder(ProviderTestCase):
    def test_town_fallback_and_uppercase_country(self):
        payload = {"address": {"town": "Alcobendas", "state": "Comunidad de Madrid", "country": "España", "country_code": "es"}}
        with self.respond(payload) as get:
            loc = NominatimReverseGeocoder(self.client).reverse(Coordinates(40.54, -3.64))
        params = get.call_args.kwargs["params"]
        self.assertEqual(params["format"], "jsonv2")
        self.assertEqual(params["lat"], 40.54)
        self.assertEqual(loc.city, "Alcobendas")
        self.assertEqual(loc.country_code, "ES")
        self.assertEqual(loc.latitude, 40.54)

    def test_error_payload(self):
        with self.respond({"error": "Unable to geocode"}):
            with self.assertRaises(ProviderError):
                NominatimReverseGeocoder(self.client).reverse(Coordinates(0.1, 0.1))


if __name__ == "__main__":
    unittest.main()
