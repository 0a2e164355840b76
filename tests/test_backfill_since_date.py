import unittest
from datetime import datetime, timedelta

MIDDLE_DATE = datetime(2024, 5, 1, 12, 0, 0)
EARLIER_DATE = MIDDLE_DATE - timedelta(seconds=1)
RECENT_DATE = MIDDLE_DATE + timedelta(seconds=1)


class PartialSyncBackfillSinceTests(unittest.TestCase):
    def test_keeps_existing_when_new_is_empty(self):
        from jira_sync.sync.backfill_since_date import calc_new_backfill_since_date

        self.assertEqual(calc_new_backfill_since_date(MIDDLE_DATE, None, "partial", None), MIDDLE_DATE)

    def test_keeps_existing_when_new_is_earlier(self):
        from jira_sync.sync.backfill_since_date import calc_new_backfill_since_date

        self.assertEqual(calc_new_backfill_since_date(MIDDLE_DATE, EARLIER_DATE, "partial", None), MIDDLE_DATE)

    def test_keeps_existing_when_new_is_recent(self):
        from jira_sync.sync.backfill_since_date import calc_new_backfill_since_date

        self.assertEqual(calc_new_backfill_since_date(MIDDLE_DATE, RECENT_DATE, "partial", None), MIDDLE_DATE)


class FullSyncBackfillSinceTests(unittest.TestCase):
    def test_initial_sync_takes_new_date(self):
        from jira_sync.sync.backfill_since_date import calc_new_backfill_since_date

        self.assertEqual(calc_new_backfill_since_date(None, MIDDLE_DATE, "full", True), MIDDLE_DATE)

    def test_initial_sync_takes_empty_new_date(self):
        from jira_sync.sync.backfill_since_date import calc_new_backfill_since_date

        self.assertIsNone(calc_new_backfill_since_date(MIDDLE_DATE, None, "full", True))

    def test_empty_existing_stays_empty(self):
        from jira_sync.sync.backfill_since_date import calc_new_backfill_since_date

        self.assertIsNone(calc_new_backfill_since_date(None, None, "full", False))
        self.assertIsNone(calc_new_backfill_since_date(None, RECENT_DATE, "full", False))

    def test_existing_date_is_emptied_by_empty_new_date(self):
        from jira_sync.sync.backfill_since_date import calc_new_backfill_since_date

        self.assertIsNone(calc_new_backfill_since_date(RECENT_DATE, None, "full", False))

    def test_existing_date_is_kept_when_new_date_is_recent(self):
        from jira_sync.sync.backfill_since_date import calc_new_backfill_since_date

        self.assertEqual(calc_new_backfill_since_date(EARLIER_DATE, RECENT_DATE, "full", False), EARLIER_DATE)

    def test_new_date_is_used_when_earlier(self):
        from jira_sync.sync.backfill_since_date import calc_new_backfill_since_date

        self.assertEqual(calc_new_backfill_since_date(RECENT_DATE, EARLIER_DATE, "full", False), EARLIER_DATE)


if __name__ == "__main__":
    unittest.main()
