import unittest

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from shared.db import Base, DialEvent
from services.call_service import count_dials, record_dial
from services.leads_service import create_campaign, create_lead, get_lead


class CallServiceTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(bind=self.engine)
        Session = sessionmaker(bind=self.engine)
        self.db = Session()
        create_campaign(self.db, "user-1", "Renewals", campaign_id="camp1")
        create_lead(self.db, "user-1", {"id": "camp1-lead-1", "campaignId": "camp1", "name": "Pat"})
        self.db.commit()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def test_dial_is_recorded_once_per_session(self):
        event, created = record_dial(
            self.db,
            session_id="sess-1:1",
            user_id="user-1",
            lead_id="camp1-lead-1",
            to_number="+15551230000",
        )
        self.db.commit()
        again, created_again = record_dial(
            self.db,
            session_id="sess-1:1",
            user_id="user-1",
            lead_id="camp1-lead-1",
            twilio_call_sid="CA1",
        )
        self.db.commit()
        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(event.id, again.id)
        self.assertEqual(again.twilio_call_sid, "CA1")
        self.assertEqual(event.campaign_id, "camp1")
        lead = get_lead(self.db, "user-1", "camp1-lead-1")
        self.assertEqual(lead.dial_count, 1)
        self.assertIsNotNone(lead.last_dialed_at)

    def test_each_session_counts_separately(self):
        record_dial(self.db, session_id="sess-1:1", user_id="user-1", lead_id="camp1-lead-1")
        record_dial(self.db, session_id="sess-1:2", user_id="user-1", lead_id="camp1-lead-1")
        self.db.commit()
        self.assertEqual(count_dials(self.db, "user-1", "camp1-lead-1"), 2)
        self.assertEqual(get_lead(self.db, "user-1", "camp1-lead-1").dial_count, 2)

    def test_manual_dial_without_lead(self):
        event, created = record_dial(self.db, session_id="sess-9:1", user_id="user-1", to_number="+15550000000")
        self.db.commit()
        self.assertTrue(created)
        self.assertIsNone(event.lead_id)
        self.assertEqual(self.db.query(DialEvent).count(), 1)

    def test_foreign_lead_is_not_incremented(self):
        record_dial(self.db, session_id="sess-2:1", user_id="user-2", lead_id="camp1-lead-1")
        self.db.commit()
        self.assertEqual(get_lead(self.db, "user-1", "camp1-lead-1").dial_count, 0)
        self.assertEqual(count_dials(self.db, "user-2"), 1)


if __name__ == "__main__":
    unittest.main()
