"""
Integration Tests for the Sync Orchestrator
Runs full sync jobs against a temporary database and a scripted platform client.
"""

import threading
import time
import unittest
from datetime import timedelta
from unittest.mock import Mock

from cryptography.fernet import Fernet

from activity_sync.database.models import Commit, PullRequest, Repository, SyncJob
from activity_sync.platform_client import PlatformAPIError, PlatformAuthError
from activity_sync.sync.config_service import ConfigService, SchedulerConfig
from activity_sync.sync.errors import RepositoryNotFound
from activity_sync.sync.lease import InMemoryLeaseStore, SqlLeaseStore, repository_lease_key
from activity_sync.sync.orchestrator import SyncOrchestrator
from activity_sync.sync.rate_limiter import TokenBucketRateLimiter
from activity_sync.utils.crypto import CredentialError, decrypt_credential, encrypt_credential
from tests.support import DatabaseTestCase, FakePlatformClient, MovingClock, make_commit, make_pull_request

PAGE_SIZE = 10


class OrchestratorTestCase(DatabaseTestCase):

    def setUp(self):
        super().setUp()
        self.repository_id = self.add_repository()
        self.client = FakePlatformClient()
        self.retry_sleeps = []
        self.lease_store = SqlLeaseStore(self.db)
        self.config_service = ConfigService(self.db, defaults=SchedulerConfig(
            max_retries=3, retry_delay_minutes=1, notification_enabled=False
        ))
        self.orchestrator = self.make_orchestrator()

    def make_orchestrator(self, **kwargs):
        kwargs.setdefault('lease_store', self.lease_store)
        kwargs.setdefault('retry_sleep', self.retry_sleeps.append)
        return SyncOrchestrator(
            self.db,
            TokenBucketRateLimiter(60000, 1000),
            config_service=self.config_service,
            client_factory=lambda repository, token: self.client,
            page_size=PAGE_SIZE,
            target_branches=['main', 'master', 'maintenance/'],
            **kwargs
        )

    def get_job(self, job_id) -> SyncJob:
        with self.db.session_scope() as session:
            return session.get(SyncJob, job_id)

    def get_repository(self) -> Repository:
        with self.db.session_scope() as session:
            return session.get(Repository, self.repository_id)


class TestSyncScenarios(OrchestratorTestCase):
    """Test the full and incremental sync lifecycle."""

    def test_full_sync_of_never_synced_repository(self):
        """Test that 3 pages of 10 pull requests complete and stamp lastSyncAt with the job start."""
        self.client.pr_pages = [
            [make_pull_request(page * PAGE_SIZE + i) for i in range(PAGE_SIZE)]
            for page in range(3)
        ]

        result = self.orchestrator.sync_repository(self.repository_id, 'full')

        self.assertTrue(result.success)
        self.assertEqual(result.status, 'completed')
        self.assertTrue(result.has_new_data)
        self.assertEqual(result.records_processed, 30)

        job = self.get_job(result.job_id)
        self.assertEqual(job.status, 'completed')
        self.assertEqual(job.records_processed, 30)
        self.assertIsNone(job.error)
        self.assertEqual(self.get_repository().last_sync_at, job.started_at)

        # Full sync ignores any window
        self.assertEqual(self.client.calls[0], ('pull_requests', 0, None, None))
        self.assertTrue(self.client.closed)
        self.assertIsNone(self.lease_store.get(repository_lease_key(self.repository_id)))

    def test_incremental_sync_without_new_data(self):
        """Test that an empty incremental run completes and keeps lastSyncAt."""
        self.client.pr_pages = [[make_pull_request(1)]]
        first = self.orchestrator.sync_repository(self.repository_id, 'full')
        last_sync_at = self.get_repository().last_sync_at

        self.client = FakePlatformClient()
        result = self.orchestrator.sync_repository(self.repository_id, 'incremental')

        self.assertTrue(first.has_new_data)
        self.assertTrue(result.success)
        self.assertFalse(result.has_new_data)
        self.assertEqual(self.get_job(result.job_id).records_processed, 0)
        self.assertEqual(self.get_repository().last_sync_at, last_sync_at)

        _, _, since, until = self.client.calls[0]
        self.assertEqual(since, last_sync_at)
        self.assertEqual(until, self.get_job(result.job_id).started_at)

    def test_transient_failures_are_retried(self):
        """Test that a page failing twice then succeeding completes normally."""
        self.client.pr_pages = [[make_pull_request(1)]]
        self.client.failures = [PlatformAPIError('unavailable', 503), PlatformAPIError('unavailable', 503)]

        result = self.orchestrator.sync_repository(self.repository_id, 'full')

        self.assertTrue(result.success)
        self.assertIsNone(self.get_job(result.job_id).error)
        self.assertEqual(self.retry_sleeps, [60.0, 120.0])
        self.assertEqual(result.records_processed, 1)

    def test_concurrent_manual_syncs_defer(self):
        """Test that of 5 concurrent requests exactly one runs and 4 are deferred."""
        release = threading.Event()
        results = []
        done = threading.Condition()

        def block_until_released(skip):
            release.wait(10)

        self.client.on_pull_requests_page = block_until_released

        def request_sync():
            result = self.orchestrator.sync_repository(self.repository_id, 'incremental')
            with done:
                results.append(result)
                done.notify_all()

        threads = [threading.Thread(target=request_sync) for _ in range(5)]
        for thread in threads:
            thread.start()

        with done:
            done.wait_for(lambda: len(results) >= 4, timeout=10)
        release.set()
        for thread in threads:
            thread.join(10)

        self.assertEqual(len(results), 5)
        self.assertEqual(sum(1 for r in results if r.deferred), 4)
        self.assertEqual(sum(1 for r in results if r.status == 'completed'), 1)
        with self.db.session_scope() as session:
            self.assertEqual(session.query(SyncJob).count(), 1)

    def test_only_target_branches_are_kept(self):
        self.client.pr_pages = [[
            make_pull_request(1, target='refs/heads/main'),
            make_pull_request(2, target='refs/heads/feature/x'),
            make_pull_request(3, target='refs/heads/maintenance/2.0'),
        ]]
        self.client.commit_pages = [[make_commit('a1'), make_commit('b2')]]

        result = self.orchestrator.sync_repository(self.repository_id, 'full')

        self.assertEqual(result.records_processed, 4)
        with self.db.session_scope() as session:
            self.assertEqual(
                sorted(pr.external_id for pr in session.query(PullRequest).all()), ['1', '3']
            )
            self.assertEqual(session.query(Commit).count(), 2)

    def test_resync_is_idempotent(self):
        self.client.pr_pages = [[make_pull_request(1), make_pull_request(2)]]

        self.orchestrator.sync_repository(self.repository_id, 'full')
        result = self.orchestrator.sync_repository(self.repository_id, 'full')

        job = self.get_job(result.job_id)
        self.assertEqual((job.records_created, job.records_updated), (0, 2))
        with self.db.session_scope() as session:
            self.assertEqual(session.query(PullRequest).count(), 2)


class TestSyncFailures(OrchestratorTestCase):
    """Test failure, cancellation and alerting paths."""

    def test_auth_failure_is_not_retried(self):
        self.client.failures = [PlatformAuthError('Authentication failed', 401)]

        result = self.orchestrator.sync_repository(self.repository_id, 'incremental')

        self.assertFalse(result.success)
        self.assertEqual(result.status, 'failed')
        self.assertEqual(self.retry_sleeps, [])
        job = self.get_job(result.job_id)
        self.assertEqual(job.status, 'failed')
        self.assertIn('Authentication failed', job.error)
        self.assertIsNone(self.get_repository().last_sync_at)
        self.assertIsNone(self.lease_store.get(repository_lease_key(self.repository_id)))

    def test_exhausted_retries_fail_the_job(self):
        self.client.failures = [PlatformAPIError('down', 500)] * 4

        result = self.orchestrator.sync_repository(self.repository_id, 'full')

        self.assertEqual(result.status, 'failed')
        self.assertEqual(len(self.retry_sleeps), 3)

    def test_lease_is_held_through_retry_waits(self):
        """Test that a second sync stays deferred while the first waits out backoffs longer than the TTL in total."""
        self.config_service.update_config({'maxRetries': 5, 'retryDelayMinutes': 5})
        clock = MovingClock()
        lease_store = InMemoryLeaseStore(clock=clock)
        second = self.make_orchestrator(lease_store=lease_store, lease_ttl_seconds=1000)
        outcomes = []

        def wait(seconds):
            clock.now += timedelta(seconds=seconds)
            outcomes.append(second.sync_repository(self.repository_id, 'incremental').status)

        first = self.make_orchestrator(lease_store=lease_store, lease_ttl_seconds=1000, retry_sleep=wait)
        self.client.pr_pages = [[make_pull_request(1)]]
        self.client.failures = [PlatformAPIError('unavailable', 503)] * 3

        result = first.sync_repository(self.repository_id, 'full')

        self.assertEqual(result.status, 'completed')
        self.assertEqual(outcomes, ['deferred'] * 3)
        self.assertIsNone(lease_store.get(repository_lease_key(self.repository_id)))

    def test_cancel_ends_a_retry_wait(self):
        """Test that a cancel request during a one-minute backoff wait stops the run promptly."""
        orchestrator = self.make_orchestrator(retry_sleep=None)
        self.client.failures = [PlatformAPIError('unavailable', 503)] * 2
        timer = threading.Timer(0.2, orchestrator.cancel_sync, args=(self.repository_id,))
        self.client.on_pull_requests_page = lambda skip: timer.start()

        started = time.monotonic()
        try:
            result = orchestrator.sync_repository(self.repository_id, 'full')
        finally:
            timer.cancel()
            timer.join(5)

        self.assertEqual(result.status, 'cancelled')
        self.assertLess(time.monotonic() - started, 10)
        self.assertEqual(self.get_job(result.job_id).status, 'cancelled')
        self.assertIsNone(self.lease_store.get(repository_lease_key(self.repository_id)))

    def test_missing_credential_fails(self):
        repository_id = self.add_repository(name='no-token', credential=None)

        result = self.orchestrator.sync_repository(repository_id, 'full')

        self.assertEqual(result.status, 'failed')
        self.assertIn('no stored credential', result.error)
        self.assertEqual(self.client.calls, [])

    def test_unknown_repository(self):
        with self.assertRaises(RepositoryNotFound):
            self.orchestrator.sync_repository(9999, 'full')
        with self.assertRaises(RepositoryNotFound):
            self.orchestrator.start_sync(9999, 'full')
        self.assertIsNone(self.lease_store.get(repository_lease_key(9999)))

    def test_unknown_sync_type(self):
        with self.assertRaises(ValueError):
            self.orchestrator.sync_repository(self.repository_id, 'partial')

    def test_cancellation_between_pages(self):
        """Test that a cancel request stops the run at the next page boundary."""
        self.client.pr_pages = [[make_pull_request(i) for i in range(PAGE_SIZE)] for _ in range(3)]

        def cancel_on_second_page(skip):
            if skip == PAGE_SIZE:
                self.assertTrue(self.orchestrator.cancel_sync(self.repository_id))

        self.client.on_pull_requests_page = cancel_on_second_page

        result = self.orchestrator.sync_repository(self.repository_id, 'full')

        self.assertEqual(result.status, 'cancelled')
        self.assertFalse(result.success)
        job = self.get_job(result.job_id)
        self.assertEqual(job.status, 'cancelled')
        self.assertEqual(job.records_processed, PAGE_SIZE)
        self.assertIsNone(self.get_repository().last_sync_at)
        self.assertEqual([c[1] for c in self.client.calls if c[0] == 'pull_requests'], [0, PAGE_SIZE])

    def test_cancel_without_running_sync(self):
        self.assertFalse(self.orchestrator.cancel_sync(self.repository_id))

    def test_repeated_failures_alert(self):
        notifications = Mock()
        self.config_service.update_config({'notificationEnabled': True, 'notificationRecipients': ['ops']})
        orchestrator = self.make_orchestrator(notification_service=notifications)
        self.client.failures = [PlatformAuthError('denied', 403)]

        orchestrator.sync_repository(self.repository_id, 'full', batch_id='batch-1')

        notifications.send_repository_failure_notification.assert_called_once()
        args, kwargs = notifications.send_repository_failure_notification.call_args
        self.assertEqual(args[0], self.repository_id)
        self.assertEqual(args[2], ['ops'])
        self.assertEqual(kwargs['batch_id'], 'batch-1')


class TestSyncStatus(OrchestratorTestCase):

    def test_status_and_history(self):
        self.client.pr_pages = [[make_pull_request(1)]]
        self.orchestrator.sync_repository(self.repository_id, 'full')
        self.orchestrator.sync_repository(self.repository_id, 'incremental')

        status = self.orchestrator.get_sync_status(self.repository_id)
        history = self.orchestrator.get_sync_history(self.repository_id, page=1, page_size=1)

        self.assertFalse(status['isSyncing'])
        self.assertEqual(status['latestJob']['syncType'], 'incremental')
        self.assertEqual(len(history['jobs']), 1)
        self.assertEqual(history['pagination']['total'], 2)
        self.assertTrue(history['pagination']['hasNext'])

    def test_start_sync_runs_in_background(self):
        finished = threading.Event()
        self.client.close = finished.set

        result = self.orchestrator.start_sync(self.repository_id, 'full')

        self.assertEqual(result.status, 'started')
        self.assertTrue(finished.wait(10))

        key = repository_lease_key(self.repository_id)
        deadline = time.monotonic() + 10
        while self.lease_store.get(key) is not None and time.monotonic() < deadline:
            time.sleep(0.05)

        self.assertIsNone(self.lease_store.get(key))
        self.assertEqual(self.orchestrator.get_sync_status(self.repository_id)['latestJob']['status'], 'completed')


class TestCredentials(unittest.TestCase):

    def test_round_trip_with_key(self):
        key = Fernet.generate_key().decode('utf-8')
        stored = encrypt_credential('pat-token', key)

        self.assertNotEqual(stored, 'pat-token')
        self.assertEqual(decrypt_credential(stored, key), 'pat-token')

    def test_wrong_key(self):
        stored = encrypt_credential('pat-token', Fernet.generate_key().decode('utf-8'))

        with self.assertRaises(CredentialError):
            decrypt_credential(stored, Fernet.generate_key().decode('utf-8'))

    def test_missing_credential(self):
        with self.assertRaises(CredentialError):
            decrypt_credential(None, 'irrelevant')


if __name__ == '__main__':
    unittest.main()
