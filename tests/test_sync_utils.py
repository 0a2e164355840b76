import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

JIRA_HOST = "https://acme.atlassian.net"


def _session_factory():
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker
    from sqlalchemy.pool import StaticPool

    from jira_sync.models import Base

    engine = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


class _FakeBackfillQueue:
    def __init__(self, db=None):
        self.db = db
        self.sent = []
        self.repo_rows_at_send = None

    async def send_message(self, payload, delay_sec=0, log=None):
        from jira_sync.models import RepoSyncState

        if self.db is not None:
            self.repo_rows_at_send = self.db.query(RepoSyncState).count()
        self.sent.append((payload, delay_sec))
        return {"MessageId": "m-1"}


class FindOrStartSyncTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        from jira_sync.models import RepoSyncState, Subscription, SyncStatus

        self.db = _session_factory()()
        self.addCleanup(self.db.close)

        self.subscription = Subscription(
            jira_host=JIRA_HOST,
            github_installation_id=1234,
            sync_status=SyncStatus.COMPLETE,
            number_of_synced_repos=2,
            total_number_of_repos=2,
            repository_cursor="3",
            repository_status="complete",
            sync_warning="old warning",
        )
        self.db.add(self.subscription)
        self.db.flush()
        for repo_id in (1, 2):
            self.db.add(
                RepoSyncState(
                    subscription_id=self.subscription.id,
                    repo_id=repo_id,
                    repo_name=f"repo-{repo_id}",
                    repo_full_name=f"acme/repo-{repo_id}",
                    repo_owner="acme",
                    repo_url=f"https://github.com/acme/repo-{repo_id}",
                    pull_cursor="5",
                    pull_status="complete",
                    commit_cursor="7",
                    commit_status="complete",
                    failed_code="NOT_FOUND" if repo_id == 2 else None,
                )
            )
        self.db.commit()
        self.queue = _FakeBackfillQueue(self.db)

    def _repo_states(self):
        from jira_sync.models import RepoSyncState

        return self.db.query(RepoSyncState).order_by(RepoSyncState.repo_id).all()

    async def test_full_sync_without_target_tasks_restarts_from_scratch(self):
        from jira_sync.models import SyncStatus
        from jira_sync.sync.sync_utils import find_or_start_sync

        await find_or_start_sync(self.db, self.subscription, sync_type="full", backfill_queue=self.queue)

        self.assertEqual(self.queue.repo_rows_at_send, 0)
        self.assertEqual(self._repo_states(), [])
        self.assertEqual(self.subscription.sync_status, SyncStatus.PENDING)
        self.assertEqual(self.subscription.number_of_synced_repos, 0)
        self.assertIsNone(self.subscription.sync_warning)
        self.assertIsNone(self.subscription.repository_cursor)
        self.assertIsNone(self.subscription.repository_status)
        self.assertIsNone(self.subscription.total_number_of_repos)

        [(payload, delay)] = self.queue.sent
        self.assertEqual(delay, 0)
        message = payload.to_message()
        self.assertEqual(message["jiraHost"], JIRA_HOST)
        self.assertEqual(message["installationId"], 1234)
        self.assertEqual(message["syncType"], "full")
        self.assertIn("startTime", message)
        self.assertNotIn("commitsFromDate", message)
        self.assertEqual(message["gitHubAppConfig"]["gitHubBaseUrl"], "https://github.com")
        self.assertEqual(message["metricTags"]["backfillFrom"], "all-time")
        self.assertEqual(message["metricTags"]["syncType"], "full")

    async def test_partial_sync_keeps_cursors_and_clears_failed_codes(self):
        from jira_sync.sync.sync_utils import find_or_start_sync

        await find_or_start_sync(self.db, self.subscription, sync_type="partial", backfill_queue=self.queue)

        states = self._repo_states()
        self.assertEqual(len(states), 2)
        for state in states:
            self.assertEqual(state.pull_cursor, "5")
            self.assertEqual(state.pull_status, "complete")
            self.assertIsNone(state.failed_code)
        self.assertEqual(self.subscription.repository_cursor, "3")

    async def test_partial_targeted_sync_only_clears_statuses(self):
        from jira_sync.sync.sync_utils import find_or_start_sync

        await find_or_start_sync(
            self.db, self.subscription, sync_type="partial", target_tasks=["pull"], backfill_queue=self.queue
        )

        for state in self._repo_states():
            self.assertIsNone(state.pull_status)
            self.assertEqual(state.pull_cursor, "5")
            self.assertEqual(state.commit_status, "complete")
            self.assertIsNone(state.failed_code)
        self.assertEqual(self.subscription.repository_status, "complete")
        self.assertEqual(self.queue.sent[0][0].target_tasks, ["pull"])

    async def test_full_targeted_sync_clears_cursors_of_targeted_tasks(self):
        from jira_sync.sync.sync_utils import find_or_start_sync

        await find_or_start_sync(
            self.db,
            self.subscription,
            sync_type="full",
            target_tasks=["pull", "repository"],
            backfill_queue=self.queue,
        )

        states = self._repo_states()
        self.assertEqual(len(states), 2)
        for state in states:
            self.assertIsNone(state.pull_cursor)
            self.assertIsNone(state.pull_status)
            self.assertEqual(state.commit_cursor, "7")
            self.assertEqual(state.commit_status, "complete")
        self.assertIsNone(self.subscription.repository_status)
        self.assertIsNone(self.subscription.repository_cursor)
        self.assertIsNone(self.subscription.total_number_of_repos)

    async def test_explicit_commits_from_date_is_used_for_both_branches(self):
        from jira_sync.sync.sync_utils import find_or_start_sync

        since = datetime.utcnow() - timedelta(days=20)
        await find_or_start_sync(
            self.db, self.subscription, sync_type="full", commits_from_date=since, backfill_queue=self.queue
        )

        message = self.queue.sent[0][0].to_message()
        self.assertEqual(message["commitsFromDate"], message["branchCommitsFromDate"])
        self.assertTrue(message["commitsFromDate"].startswith(since.isoformat()[:19]))
        self.assertEqual(message["metricTags"]["backfillFrom"], "30d")

    async def test_lookback_windows_come_from_settings(self):
        from jira_sync.config import settings
        from jira_sync.sync.sync_utils import find_or_start_sync

        one_day_ms = 24 * 3600 * 1000
        with patch.object(settings, "sync_main_commit_time_limit", one_day_ms), patch.object(
            settings, "sync_branch_commit_time_limit", -1
        ):
            await find_or_start_sync(self.db, self.subscription, sync_type="full", backfill_queue=self.queue)

        message = self.queue.sent[0][0].to_message()
        main_since = datetime.fromisoformat(message["commitsFromDate"]).replace(tzinfo=None)
        self.assertAlmostEqual((datetime.utcnow() - main_since).total_seconds(), 24 * 3600, delta=60)
        self.assertNotIn("branchCommitsFromDate", message)

    async def test_initial_sync_adopts_requested_backfill_since(self):
        from jira_sync.models import Subscription
        from jira_sync.sync.sync_utils import find_or_start_sync

        subscription = Subscription(jira_host=JIRA_HOST, github_installation_id=99)
        self.db.add(subscription)
        self.db.commit()
        since = datetime(2024, 1, 1)

        await find_or_start_sync(
            self.db, subscription, sync_type="full", commits_from_date=since, backfill_queue=self.queue
        )

        self.assertEqual(subscription.backfill_since, since)

    async def test_partial_sync_never_moves_backfill_since(self):
        from jira_sync.sync.sync_utils import find_or_start_sync

        self.subscription.backfill_since = datetime(2024, 1, 1)
        self.db.commit()

        await find_or_start_sync(
            self.db,
            self.subscription,
            sync_type="partial",
            commits_from_date=datetime(2023, 1, 1),
            backfill_queue=self.queue,
        )

        self.assertEqual(self.subscription.backfill_since, datetime(2024, 1, 1))

    async def test_invalid_target_task_is_rejected(self):
        from jira_sync.sync.sync_utils import find_or_start_sync

        with self.assertRaises(ValueError):
            await find_or_start_sync(
                self.db, self.subscription, target_tasks=["issues"], backfill_queue=self.queue
            )
        self.assertEqual(self.queue.sent, [])

    async def test_enterprise_app_config(self):
        from jira_sync.models import GitHubServerApp
        from jira_sync.sync.sync_utils import find_or_start_sync

        app = GitHubServerApp(
            uuid="c0ffee",
            app_id=12,
            github_base_url="https://github.acme.com/",
            github_client_id="client",
            github_app_name="acme-app",
            installation_id=1,
        )
        self.db.add(app)
        self.db.flush()
        self.subscription.github_app_id = app.id
        self.db.commit()

        await find_or_start_sync(self.db, self.subscription, backfill_queue=self.queue)

        config = self.queue.sent[0][0].to_message()["gitHubAppConfig"]
        self.assertEqual(config["gitHubAppId"], app.id)
        self.assertEqual(config["uuid"], "c0ffee")
        self.assertEqual(config["gitHubBaseUrl"], "https://github.acme.com")
        self.assertEqual(config["gitHubApiUrl"], "https://github.acme.com/api/v3")

    async def test_missing_enterprise_app_raises(self):
        from jira_sync.sync.sync_utils import find_or_start_sync

        self.subscription.github_app_id = 404
        self.db.commit()

        with self.assertRaises(ValueError):
            await find_or_start_sync(self.db, self.subscription, backfill_queue=self.queue)
        self.assertEqual(self.queue.sent, [])


class BackfillFromDateBucketTests(unittest.TestCase):
    def test_buckets(self):
        from jira_sync.sync.sync_utils import backfill_from_date_to_bucket

        now = datetime.utcnow()
        self.assertEqual(backfill_from_date_to_bucket(None), "all-time")
        self.assertEqual(backfill_from_date_to_bucket(now - timedelta(hours=3)), "1d")
        self.assertEqual(backfill_from_date_to_bucket(now - timedelta(days=6)), "7d")
        self.assertEqual(backfill_from_date_to_bucket(now - timedelta(days=100)), "180d")
        self.assertEqual(backfill_from_date_to_bucket(now - timedelta(days=1000)), "older")


class CommitSinceDateTests(unittest.TestCase):
    def test_explicit_date_wins_over_flag(self):
        from jira_sync.config import settings
        from jira_sync.flags import NumberFlags
        from jira_sync.sync.sync_utils import get_commit_since_date

        explicit = datetime(2024, 2, 2)
        with patch.object(settings, "sync_main_commit_time_limit", 1000):
            self.assertEqual(
                get_commit_since_date(JIRA_HOST, NumberFlags.SYNC_MAIN_COMMIT_TIME_LIMIT, explicit), explicit
            )

    def test_unset_flag_means_no_cutoff(self):
        from jira_sync.config import settings
        from jira_sync.flags import NumberFlags
        from jira_sync.sync.sync_utils import get_commit_since_date

        with patch.object(settings, "sync_main_commit_time_limit", None):
            self.assertIsNone(get_commit_since_date(JIRA_HOST, NumberFlags.SYNC_MAIN_COMMIT_TIME_LIMIT))


if __name__ == "__main__":
    unittest.main()
