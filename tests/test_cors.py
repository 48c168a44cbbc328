import unittest
from unittest import mock

import azure.functions as func

from utils import cors
from utils.cors import _is_local_origin, _origin_matches, build_cors_headers


class CorsTests(unittest.TestCase):
    def test_matches_with_trailing_slash_and_case(self):
        self.assertTrue(
            _origin_matches("https://horizoncrm.io", "https://HORIZONCRM.io/")
        )

    def test_matches_wildcard_subdomain(self):
        self.assertTrue(
            _origin_matches("https://app.horizoncrm.io", "https://*.horizoncrm.io")
        )

    def test_does_not_match_different_host(self):
        self.assertFalse(
            _origin_matches("https://horizoncrm.io.evil.net", "https://*.horizoncrm.io")
        )

    def test_scheme_and_port_are_enforced_when_configured(self):
        self.assertTrue(
            _origin_matches("https://dialer.horizoncrm.io:8443", "https://dialer.horizoncrm.io:8443")
        )
        self.assertFalse(
            _origin_matches("http://dialer.horizoncrm.io:8443", "https://dialer.horizoncrm.io:8443")
        )

    def test_host_only_entry_matches_http_and_https(self):
        self.assertTrue(_origin_matches("http://horizoncrm.io", "horizoncrm.io"))
        self.assertTrue(_origin_matches("https://horizoncrm.io", "horizoncrm.io"))

    def test_local_origin_requires_loopback_host(self):
        self.assertTrue(_is_local_origin("http://localhost:5173"))
        self.assertTrue(_is_local_origin("http://127.0.0.1:8080"))
        self.assertFalse(_is_local_origin("https://horizoncrm.io"))

    def test_headers_allow_user_id_header_for_configured_origin(self):
        req = func.HttpRequest(
            method="OPTIONS",
            url="/api/voice/token",
            headers={"Origin": "https://app.horizoncrm.io"},
            body=b"",
        )
        with mock.patch.object(cors, "ALLOWED_ORIGINS", ["https://*.horizoncrm.io"]):
            headers = build_cors_headers(req, ["POST", "OPTIONS"])
        self.assertEqual(headers["Access-Control-Allow-Origin"], "https://app.horizoncrm.io")
        self.assertIn("x-user-id", headers["Access-Control-Allow-Headers"])
        self.assertIn("POST", headers["Access-Control-Allow-Methods"])


if __name__ == "__main__":
    unittest.main()
