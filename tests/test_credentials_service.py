import os
import unittest

os.environ.setdefault("CREDENTIALS_ENC_KEY", "unit-test-credentials-key")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from shared.db import Base, TwilioCredential
from services.credentials_service import (
    REQUIRED_FIELDS_MISSING,
    add_phone_number,
    auth_token_for,
    caller_id_options,
    credentials_to_dict,
    delete_phone_number,
    find_credentials_by_number,
    list_phone_numbers,
    normalize_phone,
    resolve_caller_id,
    set_default_phone_number,
    upsert_credentials,
)
from utils.token_crypto import is_encrypted

VALID_PAYLOAD = {
    "accountSid": "AC" + "1" * 32,
    "authToken": "secret-auth-token",
    "phoneNumber": "+1 (800) 555-0100",
    "apiKey": "SK" + "2" * 32,
    "apiSecret": "secret-api",
    "twimlAppSid": "AP" + "3" * 32,
}


class CredentialsServiceTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(bind=self.engine)
        Session = sessionmaker(bind=self.engine)
        self.db = Session()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def test_upsert_encrypts_secrets_and_normalizes_number(self):
        credentials = upsert_credentials(self.db, "user-1", VALID_PAYLOAD)
        self.db.commit()
        self.assertEqual(credentials.phone_number, "+18005550100")
        self.assertTrue(is_encrypted(credentials.auth_token))
        self.assertTrue(is_encrypted(credentials.api_secret))
        self.assertEqual(auth_token_for(credentials), "secret-auth-token")

    def test_upsert_requires_core_fields(self):
        with self.assertRaises(ValueError) as ctx:
            upsert_credentials(self.db, "user-1", {"accountSid": "AC1"})
        self.assertEqual(str(ctx.exception), REQUIRED_FIELDS_MISSING)

    def test_blank_secrets_on_update_keep_stored_values(self):
        upsert_credentials(self.db, "user-1", VALID_PAYLOAD)
        self.db.commit()
        updated = upsert_credentials(
            self.db,
            "user-1",
            {**VALID_PAYLOAD, "authToken": "", "apiSecret": "", "forwardToNumber": "+1 410 555 1234"},
        )
        self.db.commit()
        self.assertEqual(self.db.query(TwilioCredential).count(), 1)
        self.assertEqual(auth_token_for(updated), "secret-auth-token")
        self.assertTrue(updated.api_secret)
        self.assertEqual(updated.forward_to_number, "+14105551234")

    def test_dict_masks_secrets(self):
        payload = credentials_to_dict(upsert_credentials(self.db, "user-1", VALID_PAYLOAD))
        self.assertNotIn("authToken", payload)
        self.assertNotIn("apiSecret", payload)
        self.assertTrue(payload["hasAuthToken"])
        self.assertTrue(payload["hasApiSecret"])
        self.assertIsNone(credentials_to_dict(None))

    def test_first_line_becomes_default_and_only_one_default(self):
        first = add_phone_number(self.db, "user-1", "+18005550101", friendly_name="Main")
        second = add_phone_number(self.db, "user-1", "+18005550102", is_default=True)
        self.db.commit()
        lines = list_phone_numbers(self.db, "user-1")
        self.assertEqual([line.id for line in lines], [second.id, first.id])
        self.assertEqual([bool(line.is_default) for line in lines], [True, False])

    def test_duplicate_line_rejected(self):
        add_phone_number(self.db, "user-1", "+18005550101")
        with self.assertRaises(ValueError):
            add_phone_number(self.db, "user-1", "+1 800 555 0101")

    def test_set_default_and_delete_reassigns_default(self):
        first = add_phone_number(self.db, "user-1", "+18005550101")
        second = add_phone_number(self.db, "user-1", "+18005550102")
        set_default_phone_number(self.db, "user-1", second.id)
        self.db.commit()
        self.assertTrue(delete_phone_number(self.db, "user-1", second.id))
        self.db.commit()
        remaining = list_phone_numbers(self.db, "user-1")
        self.assertEqual([line.id for line in remaining], [first.id])
        self.assertTrue(remaining[0].is_default)
        self.assertFalse(delete_phone_number(self.db, "user-2", first.id))

    def test_resolve_caller_id_prefers_owned_requested_line(self):
        upsert_credentials(self.db, "user-1", VALID_PAYLOAD)
        add_phone_number(self.db, "user-1", "+18005550101")
        add_phone_number(self.db, "user-1", "+18005550102")
        self.db.commit()
        self.assertEqual(
            caller_id_options(self.db, "user-1"),
            ["+18005550101", "+18005550102", "+18005550100"],
        )
        self.assertEqual(resolve_caller_id(self.db, "user-1", "+18005550102"), "+18005550102")
        self.assertEqual(resolve_caller_id(self.db, "user-1", "+19995550000"), "+18005550101")

    def test_resolve_caller_id_falls_back(self):
        upsert_credentials(self.db, "user-1", VALID_PAYLOAD)
        self.db.commit()
        self.assertEqual(resolve_caller_id(self.db, "user-1"), "+18005550100")
        self.assertEqual(resolve_caller_id(self.db, "nobody", fallback="+1 888 123 4567"), "+18881234567")

    def test_find_credentials_by_owned_number(self):
        upsert_credentials(self.db, "user-1", VALID_PAYLOAD)
        add_phone_number(self.db, "user-1", "+18005550109")
        self.db.commit()
        self.assertEqual(find_credentials_by_number(self.db, "+18005550100").user_id, "user-1")
        self.assertEqual(find_credentials_by_number(self.db, "+18005550109").user_id, "user-1")
        self.assertIsNone(find_credentials_by_number(self.db, "+18005550199"))

    def test_normalize_phone(self):
        self.assertEqual(normalize_phone(" +1 (410) 555-1234 "), "+14105551234")
        self.assertEqual(normalize_phone(None), "")


if __name__ == "__main__":
    unittest.main()
