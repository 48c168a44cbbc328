import json
import os
import unittest
from unittest import mock

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("CREDENTIALS_ENC_KEY", "unit-test-credentials-key")

import azure.functions as func
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import credentials_endpoints
import leads_endpoints
from shared.db import Base


def _request(method, url, payload=None, user_id="user-1", route_params=None):
    headers = {"Content-Type": "application/json"}
    if user_id:
        headers["x-user-id"] = user_id
    return func.HttpRequest(
        method=method,
        url=url,
        headers=headers,
        route_params=route_params or {},
        body=json.dumps(payload).encode("utf-8") if payload is not None else b"",
    )


def _body(resp):
    return json.loads(resp.get_body())


class CrmEndpointTestCase(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(bind=self.engine)
        self.Session = sessionmaker(bind=self.engine)
        self.patches = [
            mock.patch.object(credentials_endpoints, "SessionLocal", self.Session),
            mock.patch.object(leads_endpoints, "SessionLocal", self.Session),
        ]
        for patcher in self.patches:
            patcher.start()

    def tearDown(self):
        for patcher in self.patches:
            patcher.stop()
        self.engine.dispose()


class CredentialEndpointTests(CrmEndpointTestCase):
    def test_credentials_round_trip_masks_secrets(self):
        empty = credentials_endpoints._credentials_response(_request("GET", "http://localhost/api/credentials"), {})
        self.assertEqual(_body(empty), {"credentials": None})

        bad = credentials_endpoints._credentials_response(
            _request("PUT", "http://localhost/api/credentials", {"accountSid": "AC1"}), {}
        )
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(_body(bad)["error"], "Account SID, Auth Token, and Phone Number are required")

        saved = credentials_endpoints._credentials_response(
            _request(
                "PUT",
                "http://localhost/api/credentials",
                {"accountSid": "AC1", "authToken": "tok", "phoneNumber": "+18005550100"},
            ),
            {},
        )
        self.assertEqual(saved.status_code, 200)
        payload = _body(saved)["credentials"]
        self.assertTrue(payload["hasAuthToken"])
        self.assertFalse(payload["hasApiSecret"])
        self.assertNotIn("authToken", payload)

    def test_missing_user_is_unauthorized(self):
        resp = credentials_endpoints._credentials_response(
            _request("GET", "http://localhost/api/credentials", user_id=None), {}
        )
        self.assertEqual(resp.status_code, 401)

    def test_phone_number_management(self):
        url = "http://localhost/api/credentials/phone-numbers"
        first = _body(credentials_endpoints._phone_numbers_response(_request("POST", url, {"phoneNumber": "+18005550101"}), {}))
        self.assertTrue(first["items"][0]["isDefault"])
        second = credentials_endpoints._phone_numbers_response(
            _request("POST", url, {"phoneNumber": "+18005550102", "friendlyName": "East"}), {}
        )
        self.assertEqual(second.status_code, 201)
        second_id = [item["id"] for item in _body(second)["items"] if item["phoneNumber"] == "+18005550102"][0]

        dup = credentials_endpoints._phone_numbers_response(_request("POST", url, {"phoneNumber": "+18005550102"}), {})
        self.assertEqual(dup.status_code, 400)

        made_default = credentials_endpoints._phone_number_item_response(
            _request("POST", f"{url}/{second_id}/default", route_params={"lineId": str(second_id)}),
            {},
            make_default=True,
        )
        items = _body(made_default)["items"]
        self.assertEqual(items[0]["phoneNumber"], "+18005550102")
        self.assertEqual(sum(1 for item in items if item["isDefault"]), 1)

        deleted = credentials_endpoints._phone_number_item_response(
            _request("DELETE", f"{url}/{second_id}", route_params={"lineId": str(second_id)}),
            {},
            make_default=False,
        )
        items = _body(deleted)["items"]
        self.assertEqual([item["phoneNumber"] for item in items], ["+18005550101"])
        self.assertTrue(items[0]["isDefault"])

        missing = credentials_endpoints._phone_number_item_response(
            _request("DELETE", f"{url}/999", route_params={"lineId": "999"}), {}, make_default=False
        )
        self.assertEqual(missing.status_code, 404)


class LeadEndpointTests(CrmEndpointTestCase):
    def setUp(self):
        super().setUp()
        leads_endpoints._campaigns_response(
            _request("POST", "http://localhost/api/campaigns", {"id": "camp1", "name": "Spring"}), {}
        )
        for lead_id in ("camp1-lead-3", "camp1-lead-1"):
            leads_endpoints._create_lead_response(
                _request(
                    "POST",
                    "http://localhost/api/leads",
                    {"id": lead_id, "campaignId": "camp1", "name": f"Lead {lead_id[-1]}", "phone": "+15550000000"},
                ),
                {},
            )

    def _lead_request(self, method, lead_id, payload=None, suffix=""):
        return _request(
            method,
            f"http://localhost/api/leads/{lead_id}{suffix}",
            payload,
            route_params={"leadId": lead_id},
        )

    def test_campaigns_and_ordered_leads(self):
        campaigns = _body(leads_endpoints._campaigns_response(_request("GET", "http://localhost/api/campaigns"), {}))
        self.assertEqual([item["id"] for item in campaigns["items"]], ["camp1"])
        leads = leads_endpoints._campaign_leads_response(
            _request("GET", "http://localhost/api/campaigns/camp1/leads", route_params={"campaignId": "camp1"}),
            {},
        )
        self.assertEqual([item["id"] for item in _body(leads)["items"]], ["camp1-lead-1", "camp1-lead-3"])
        foreign = leads_endpoints._campaign_leads_response(
            _request("GET", "http://localhost/api/campaigns/camp1/leads", user_id="user-2", route_params={"campaignId": "camp1"}),
            {},
        )
        self.assertEqual(foreign.status_code, 404)

    def test_campaign_requires_name(self):
        resp = leads_endpoints._campaigns_response(_request("POST", "http://localhost/api/campaigns", {}), {})
        self.assertEqual(resp.status_code, 400)

    def test_patch_and_delete_lead(self):
        bad = leads_endpoints._lead_item_response(self._lead_request("PATCH", "camp1-lead-1", {"name": ""}), {})
        self.assertEqual(bad.status_code, 400)
        ok = leads_endpoints._lead_item_response(
            self._lead_request("PATCH", "camp1-lead-1", {"email": "lead@example.com"}), {}
        )
        self.assertEqual(_body(ok)["email"], "lead@example.com")
        self.assertEqual(leads_endpoints._lead_item_response(self._lead_request("DELETE", "camp1-lead-1"), {}).status_code, 200)
        self.assertEqual(leads_endpoints._lead_item_response(self._lead_request("DELETE", "camp1-lead-1"), {}).status_code, 404)

    def test_disposition_returns_next_lead(self):
        resp = leads_endpoints._disposition_response(
            self._lead_request("POST", "camp1-lead-1", {"outcome": "Voicemail", "note": "Left message"}, "/disposition"),
            {},
        )
        body = _body(resp)
        self.assertEqual(body["lead"]["status"], "Voicemail")
        self.assertEqual(body["lead"]["summary"], "Left message")
        self.assertEqual(body["nextLead"]["id"], "camp1-lead-3")

        last = leads_endpoints._disposition_response(
            self._lead_request("POST", "camp1-lead-3", {"outcome": "Booked"}, "/disposition"), {}
        )
        self.assertIsNone(_body(last)["nextLead"])

        placeholder = leads_endpoints._disposition_response(
            self._lead_request("POST", "camp1-lead-3", {"outcome": "Select Disposition..."}, "/disposition"), {}
        )
        self.assertEqual(placeholder.status_code, 400)

    def test_script_get_and_put(self):
        default = _body(leads_endpoints._script_response(_request("GET", "http://localhost/api/scripts"), {}))
        self.assertIn("PATTERN INTERRUPT", default["script"])
        saved = leads_endpoints._script_response(
            _request("PUT", "http://localhost/api/scripts", {"script": "Hello there"}), {}
        )
        self.assertEqual(_body(saved), {"script": "Hello there"})


if __name__ == "__main__":
    unittest.main()
