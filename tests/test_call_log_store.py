import unittest
from unittest import mock

from services import call_log_store
from services.call_log_store import (
    build_status_patch,
    get_call_log,
    list_call_logs,
    reset_memory_store_for_tests,
    upsert_call_log,
)


class CallLogStoreTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()
        self._client = mock.patch.object(call_log_store, "_get_table_client", return_value=None)
        self._client.start()

    def tearDown(self):
        self._client.stop()
        reset_memory_store_for_tests()

    def test_status_patch_marks_start_and_end(self):
        ringing = build_status_patch({"CallStatus": "ringing", "To": "+1555"}, now_iso="2026-01-01T00:00:00Z")
        self.assertEqual(ringing["startedAt"], "2026-01-01T00:00:00Z")
        self.assertNotIn("endedAt", ringing)
        done = build_status_patch({"CallStatus": "completed", "CallDuration": "42"}, now_iso="2026-01-01T00:01:00Z")
        self.assertEqual(done["endedAt"], "2026-01-01T00:01:00Z")
        self.assertEqual(done["duration"], 42)

    def test_bad_duration_is_ignored(self):
        patch = build_status_patch({"CallStatus": "completed", "CallDuration": "abc"})
        self.assertNotIn("duration", patch)

    def test_upsert_merges_and_keeps_first_start(self):
        upsert_call_log("user-1", "CA1", {"status": "initiated", "startedAt": "2026-01-01T00:00:00Z", "to": "+1555"})
        merged = upsert_call_log("user-1", "CA1", {"status": "completed", "startedAt": "2026-01-01T00:05:00Z"})
        self.assertEqual(merged["status"], "completed")
        self.assertEqual(merged["startedAt"], "2026-01-01T00:00:00Z")
        self.assertEqual(merged["to"], "+1555")
        self.assertEqual(get_call_log("user-1", "CA1")["status"], "completed")

    def test_logs_are_partitioned_by_user_and_sorted(self):
        upsert_call_log("user-1", "CA1", {"startedAt": "2026-01-01T00:00:00Z"})
        upsert_call_log("user-1", "CA2", {"startedAt": "2026-01-02T00:00:00Z"})
        upsert_call_log("user-2", "CA3", {"startedAt": "2026-01-03T00:00:00Z"})
        self.assertEqual([row["callSid"] for row in list_call_logs("user-1")], ["CA2", "CA1"])
        self.assertEqual(len(list_call_logs("user-1", limit=1)), 1)
        self.assertIsNone(get_call_log("user-2", "CA1"))

    def test_missing_keys_are_ignored(self):
        self.assertEqual(upsert_call_log("", "CA1", {"status": "x"}), {})
        self.assertEqual(list_call_logs(""), [])


if __name__ == "__main__":
    unittest.main()
