import unittest

JIRA_HOST = "https://acme.atlassian.net"
INSTALLATION_ID = 1234


def _session_factory():
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker
    from sqlalchemy.pool import StaticPool

    from jira_sync.models import Base

    engine = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def _repo(repo_id, day):
    return {
        "id": repo_id,
        "name": f"repo-{repo_id}",
        "full_name": f"acme/repo-{repo_id}",
        "owner": {"login": "acme"},
        "html_url": f"https://github.com/acme/repo-{repo_id}",
        "updated_at": f"2024-03-{day:02d}T10:00:00Z",
    }


REPOSITORIES = [_repo(1, 3), _repo(2, 2), _repo(3, 1)]


class _FakeGitHub:
    def __init__(self, per_page_repos=2):
        from jira_sync.clients.github_client import Page

        self.Page = Page
        self.installation_id = INSTALLATION_ID
        self.per_page_repos = per_page_repos
        self.calls = []
        self.branch_history_calls = []
        self.branch_history = []

    def get_repositories_page(self, per_page, cursor=None):
        self.calls.append(("repository", None, cursor))
        page = int(cursor or 1)
        start = (page - 1) * self.per_page_repos
        items = REPOSITORIES[start : start + self.per_page_repos]
        has_next = start + self.per_page_repos < len(REPOSITORIES)
        return self.Page(items, str(page + 1) if has_next else None, len(REPOSITORIES))

    def get_pull_requests_page(self, owner, repo, per_page, cursor=None):
        self.calls.append(("pull", repo, cursor))
        if cursor is None:
            return self.Page([{"number": 1, "title": "ACME-1 first", "head": {"ref": "main"}}], "2")
        return self.Page([{"number": 2, "title": "no key", "head": {"ref": "main"}}], None)

    def get_branches_page(self, owner, repo, per_page, cursor=None):
        self.calls.append(("branch", repo, cursor))
        return self.Page([{"name": "ACME-2-feature", "commit": {"sha": "abcdef123"}}], None)

    def get_commits_page(self, owner, repo, per_page, cursor=None, since=None, sha=None):
        if sha is not None:
            self.branch_history_calls.append((repo, sha, since))
            return self.Page(self.branch_history, None)
        self.calls.append(("commit", repo, cursor))
        return self.Page([], None)

    def get_workflow_runs_page(self, owner, repo, per_page, cursor=None):
        self.calls.append(("build", repo, cursor))
        return self.Page([], None)

    def get_deployments_page(self, owner, repo, per_page, cursor=None):
        self.calls.append(("deployment", repo, cursor))
        return self.Page([], None)


class _FakeJira:
    def __init__(self):
        self.dev_info = []
        self.builds = []
        self.deployments = []
        self.error = None

    def submit_dev_info(self, payload):
        if self.error is not None:
            raise self.error
        self.dev_info.append(payload)

    def submit_builds(self, payload):
        self.builds.append(payload)

    def submit_deployments(self, payload):
        self.deployments.append(payload)


def _payload(**overrides):
    from jira_sync.sqs.types import BackfillMessagePayload
    from jira_sync.sync.sync_utils import cloud_github_app_config

    values = dict(
        jira_host=JIRA_HOST,
        installation_id=INSTALLATION_ID,
        sync_type="full",
        start_time="2024-03-10T00:00:00+00:00",
        github_app_config=cloud_github_app_config(),
    )
    values.update(overrides)
    return BackfillMessagePayload(**values)


def _context(payload, receive_count=1, last_attempt=False):
    from jira_sync.logger import get_logger
    from jira_sync.sqs.types import SQSMessageContext

    return SQSMessageContext(
        message={"MessageId": "m-1", "ReceiptHandle": "r-1"},
        payload=payload.to_message(),
        log=get_logger("tests.backfill"),
        receive_count=receive_count,
        last_attempt=last_attempt,
    )


class BackfillTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        from jira_sync.models import Subscription, SyncStatus

        self.Session = _session_factory()
        self.github = _FakeGitHub()
        self.jira = _FakeJira()
        self.sent = []

        db = self.Session()
        subscription = Subscription(
            jira_host=JIRA_HOST, github_installation_id=INSTALLATION_ID, sync_status=SyncStatus.PENDING
        )
        db.add(subscription)
        db.commit()
        self.subscription_id = subscription.id
        db.close()

    def _processor(self):
        from jira_sync.sync.installation import BackfillProcessor

        async def send(payload, delay_sec=0, log=None):
            self.sent.append(payload)
            return {"MessageId": f"m-{len(self.sent)}"}

        return BackfillProcessor(
            send=send,
            session_factory=self.Session,
            github_factory=lambda installation_id, app_config: self.github,
            jira_factory=lambda jira_host: self.jira,
        )

    def _subscription(self, db):
        from jira_sync.models import Subscription

        return db.query(Subscription).filter(Subscription.id == self.subscription_id).one()


class BackfillProcessorTests(BackfillTestCase):
    async def test_backfill_runs_every_task_to_completion(self):
        from jira_sync.models import RepoSyncState, SyncStatus

        processor = self._processor()
        payload = _payload()
        await processor(_context(payload))
        # Each message handles one page and enqueues the next one
        while self.sent and len(self.sent) < 50:
            message = self.sent[-1]
            steps = len(self.sent)
            await processor(_context(payload.model_validate(message)))
            if len(self.sent) == steps:
                break

        # 2 discovery pages, 2 pull pages and 4 single-page tasks per repo, then the completion step
        self.assertEqual(len(self.sent), 2 + 3 * 6)

        db = self.Session()
        try:
            subscription = self._subscription(db)
            self.assertEqual(subscription.sync_status, SyncStatus.COMPLETE)
            self.assertEqual(subscription.total_number_of_repos, 3)
            self.assertEqual(subscription.number_of_synced_repos, 3)
            self.assertEqual(subscription.repository_status, "complete")
            for state in db.query(RepoSyncState).all():
                for task in ("pull", "branch", "commit", "build", "deployment"):
                    self.assertEqual(getattr(state, f"{task}_status"), "complete")
                self.assertEqual(state.pull_cursor, "2")
        finally:
            db.close()

        # Repositories in most recently updated order, tasks in fixed order
        repo_calls = [call for call in self.github.calls if call[0] != "repository"]
        self.assertEqual(
            repo_calls[:7],
            [
                ("pull", "repo-1", None),
                ("pull", "repo-1", "2"),
                ("branch", "repo-1", None),
                ("commit", "repo-1", None),
                ("build", "repo-1", None),
                ("deployment", "repo-1", None),
                ("pull", "repo-2", None),
            ],
        )
        # One pull request and one branch per repository carry issue keys
        self.assertEqual(len(self.jira.dev_info), 6)
        self.assertEqual(self.jira.builds, [])

    async def test_continuation_carries_the_same_payload(self):
        processor = self._processor()
        payload = _payload(target_tasks=["repository", "pull"], rate_limited=True)

        await processor(_context(payload))

        [continuation] = self.sent
        self.assertEqual(continuation["targetTasks"], ["repository", "pull"])
        self.assertEqual(continuation["syncType"], "full")
        self.assertNotIn("rateLimited", continuation)

    async def test_target_tasks_limit_the_backfill(self):
        processor = self._processor()
        payload = _payload(target_tasks=["repository", "branch"])
        await processor(_context(payload))
        while self.sent and len(self.sent) < 50:
            steps = len(self.sent)
            await processor(_context(payload))
            if len(self.sent) == steps:
                break

        tasks = {call[0] for call in self.github.calls}
        self.assertEqual(tasks, {"repository", "branch"})

    async def test_removed_subscription_stops_quietly(self):
        from jira_sync.models import Subscription

        db = self.Session()
        db.query(Subscription).delete()
        db.commit()
        db.close()

        await self._processor()(_context(_payload()))

        self.assertEqual(self.sent, [])
        self.assertEqual(self.github.calls, [])

    async def test_redelivered_discovery_page_does_not_duplicate_repositories(self):
        from jira_sync.logger import get_logger
        from jira_sync.models import RepoSyncState
        from jira_sync.sync.discovery import get_repository_task

        db = self.Session()
        try:
            for _ in range(2):
                result = get_repository_task(
                    db, get_logger("tests.discovery"), self.github, JIRA_HOST, None, None, 2, _payload()
                )
                db.commit()
            self.assertEqual(result.next_cursor, "2")
            self.assertEqual(db.query(RepoSyncState).count(), 2)

            state = db.query(RepoSyncState).filter(RepoSyncState.repo_id == 1).one()
            state.pull_cursor = "9"
            db.commit()
            get_repository_task(db, get_logger("tests.discovery"), self.github, JIRA_HOST, None, None, 2, _payload())
            db.commit()
            db.expire_all()
            self.assertEqual(db.query(RepoSyncState).filter(RepoSyncState.repo_id == 1).one().pull_cursor, "9")
            self.assertEqual(self._subscription(db).total_number_of_repos, 3)
        finally:
            db.close()


class BackfillErrorHandlingTests(BackfillTestCase):
    async def _discover(self, processor):
        payload = _payload()
        await processor(_context(payload))
        await processor(_context(payload))
        self.sent.clear()
        return payload

    async def test_unretryable_github_error_marks_task_failed_and_continues(self):
        from jira_sync.clients.errors import GitHubNotFoundError
        from jira_sync.models import RepoSyncState

        processor = self._processor()
        payload = await self._discover(processor)

        result = await processor.handle_error(GitHubNotFoundError(), _context(payload))

        self.assertFalse(result.is_failure)
        self.assertEqual(len(self.sent), 1)
        db = self.Session()
        try:
            state = db.query(RepoSyncState).filter(RepoSyncState.repo_id == 1).one()
            self.assertEqual(state.pull_status, "failed")
            self.assertEqual(state.failed_code, "NOT_FOUND")
        finally:
            db.close()

        # The next message moves on to the following task
        await processor(_context(payload))
        self.assertEqual(self.github.calls[-1], ("branch", "repo-1", None))

    async def test_retryable_error_is_retried_before_the_last_attempt(self):
        processor = self._processor()
        payload = await self._discover(processor)

        result = await processor.handle_error(RuntimeError("flaky"), _context(payload, receive_count=1))

        self.assertTrue(result.is_failure)
        self.assertTrue(result.retryable)
        self.assertEqual(self.sent, [])

    async def test_last_attempt_marks_task_failed(self):
        from jira_sync.models import RepoSyncState

        processor = self._processor()
        payload = await self._discover(processor)

        result = await processor.handle_error(
            RuntimeError("flaky"), _context(payload, receive_count=3, last_attempt=True)
        )

        self.assertFalse(result.is_failure)
        self.assertEqual(len(self.sent), 1)
        db = self.Session()
        try:
            state = db.query(RepoSyncState).filter(RepoSyncState.repo_id == 1).one()
            self.assertEqual(state.failed_code, "UNKNOWN")
        finally:
            db.close()

    async def test_failed_discovery_fails_the_sync(self):
        from jira_sync.models import SyncStatus

        processor = self._processor()

        result = await processor.handle_error(
            RuntimeError("boom"), _context(_payload(), receive_count=3, last_attempt=True)
        )

        self.assertFalse(result.is_failure)
        self.assertEqual(self.sent, [])
        db = self.Session()
        try:
            subscription = self._subscription(db)
            self.assertEqual(subscription.sync_status, SyncStatus.FAILED)
            self.assertEqual(subscription.repository_status, "failed")
        finally:
            db.close()

    async def test_exhausted_failure_is_counted_once(self):
        from unittest.mock import patch

        from jira_sync import metrics

        processor = self._processor()
        payload = await self._discover(processor)

        with patch.object(metrics, "emit_webhook_failed_metrics") as emit:
            await processor.handle_error(RuntimeError("flaky"), _context(payload, receive_count=1))
            emit.assert_not_called()

            await processor.handle_error(RuntimeError("boom"), _context(payload, receive_count=3, last_attempt=True))

        emit.assert_called_once_with("backfill")

    async def test_expected_errors_are_not_counted_as_failures(self):
        from unittest.mock import patch

        from jira_sync import metrics
        from jira_sync.clients.errors import GitHubNotFoundError

        processor = self._processor()
        payload = await self._discover(processor)

        with patch.object(metrics, "emit_webhook_failed_metrics") as emit:
            await processor.handle_error(GitHubNotFoundError(), _context(payload))

        emit.assert_not_called()

    async def test_jira_rejection_stops_the_sync(self):
        from jira_sync.clients.errors import JiraClientError
        from jira_sync.models import RepoSyncState, SyncStatus

        processor = self._processor()
        payload = await self._discover(processor)
        self.jira.error = JiraClientError("Jira site not found", status=404)

        with self.assertRaises(JiraClientError) as ctx:
            await processor(_context(payload))
        result = await processor.handle_error(ctx.exception, _context(payload))

        self.assertFalse(result.is_failure)
        self.assertFalse(result.retryable)
        self.assertEqual(self.sent, [])
        repo_calls = [call for call in self.github.calls if call[0] != "repository"]
        self.assertEqual(repo_calls, [("pull", "repo-1", None)])
        db = self.Session()
        try:
            subscription = self._subscription(db)
            self.assertEqual(subscription.sync_status, SyncStatus.FAILED)
            self.assertEqual(subscription.sync_warning, "Jira rejected the backfill: NOT_FOUND")
            self.assertEqual(db.query(RepoSyncState).filter(RepoSyncState.failed_code.isnot(None)).count(), 0)
        finally:
            db.close()

    async def test_completion_reports_failed_repositories(self):
        from jira_sync.clients.errors import GitHubNotFoundError
        from jira_sync.models import SyncStatus

        processor = self._processor()
        payload = await self._discover(processor)
        await processor.handle_error(GitHubNotFoundError(), _context(payload))
        while self.sent and len(self.sent) < 50:
            steps = len(self.sent)
            await processor(_context(payload))
            if len(self.sent) == steps:
                break

        db = self.Session()
        try:
            subscription = self._subscription(db)
            self.assertEqual(subscription.sync_status, SyncStatus.COMPLETE)
            self.assertEqual(subscription.sync_warning, "1 repositories could not be fully synced")
        finally:
            db.close()


class BranchTaskTests(BackfillTestCase):
    def _repository(self):
        from types import SimpleNamespace

        return SimpleNamespace(
            repo_id=1,
            repo_name="repo-1",
            repo_full_name="acme/repo-1",
            repo_owner="acme",
            repo_url="https://github.com/acme/repo-1",
        )

    def test_branch_history_is_bounded_by_branch_commits_from_date(self):
        from jira_sync.logger import get_logger
        from jira_sync.sync.tasks import get_branch_task

        self.github.branch_history = [
            {"sha": "abcdef123", "commit": {"message": "wip"}},
            {"sha": "0123456789", "commit": {"message": "OPS-7 shared fix"}},
        ]
        payload = _payload(branch_commits_from_date="2024-02-01T00:00:00+00:00")

        result = get_branch_task(
            None, get_logger("tests.branch"), self.github, JIRA_HOST, self._repository(), None, 20, payload
        )

        self.assertEqual(self.github.branch_history_calls, [("repo-1", "ACME-2-feature", "2024-02-01T00:00:00+00:00")])
        [repository] = result.jira_payload["repositories"]
        self.assertEqual([branch["name"] for branch in repository["branches"]], ["ACME-2-feature"])
        commits = {commit["id"]: commit["issueKeys"] for commit in repository["commits"]}
        self.assertEqual(commits, {"abcdef123": ["ACME-2"], "0123456789": ["OPS-7", "ACME-2"]})

    def test_branches_without_issue_keys_are_not_walked(self):
        from jira_sync.logger import get_logger
        from jira_sync.sync.tasks import get_branch_task

        self.github.get_branches_page = lambda owner, repo, per_page, cursor=None: self.github.Page(
            [{"name": "main", "commit": {"sha": "fff"}}], None
        )

        result = get_branch_task(
            None, get_logger("tests.branch"), self.github, JIRA_HOST, self._repository(), None, 20, _payload()
        )

        self.assertEqual(self.github.branch_history_calls, [])
        self.assertIsNone(result.jira_payload)


class NextTaskTests(BackfillTestCase):
    def test_repository_discovery_comes_first(self):
        from jira_sync.sync.installation import get_next_task

        db = self.Session()
        try:
            task = get_next_task(db, self._subscription(db))
            self.assertEqual(task.task, "repository")
            self.assertIsNone(task.cursor)
        finally:
            db.close()

    def test_failed_and_complete_tasks_are_skipped(self):
        from jira_sync.models import RepoSyncState
        from jira_sync.sync.installation import get_next_task

        db = self.Session()
        try:
            subscription = self._subscription(db)
            subscription.repository_status = "complete"
            db.add(
                RepoSyncState(
                    subscription_id=subscription.id,
                    repo_id=1,
                    repo_name="repo-1",
                    repo_full_name="acme/repo-1",
                    repo_owner="acme",
                    repo_url="https://github.com/acme/repo-1",
                    pull_status="complete",
                    branch_status="failed",
                    commit_status="pending",
                    commit_cursor="4",
                )
            )
            db.commit()

            task = get_next_task(db, subscription)
            self.assertEqual((task.task, task.repository_id, task.cursor), ("commit", 1, "4"))
            self.assertIsNone(get_next_task(db, subscription, ["pull", "branch"]))
        finally:
            db.close()


if __name__ == "__main__":
    unittest.main()
