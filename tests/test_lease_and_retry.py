"""
Unit Tests for Leases and the Retry Policy
"""

import threading
import time
import unittest
from datetime import datetime, timedelta
from unittest.mock import Mock

from activity_sync.platform_client import PlatformAPIError, PlatformAuthError
from activity_sync.sync.errors import SyncCancelled
from activity_sync.sync.lease import InMemoryLeaseStore, SqlLeaseStore, repository_lease_key
from activity_sync.sync.orchestrator import is_retryable
from activity_sync.sync.retry import RetryPolicy
from tests.support import DatabaseTestCase, MovingClock


class LeaseStoreContract:
    """Behaviour shared by every lease store."""

    def make_store(self, clock):
        raise NotImplementedError

    def setUp(self):
        super().setUp()
        self.clock = MovingClock()
        self.store = self.make_store(self.clock)
        self.key = repository_lease_key(7)

    def test_acquire_is_exclusive(self):
        """Test that only one holder gets an unexpired lease."""
        lease = self.store.acquire(self.key, 60)

        self.assertIsNotNone(lease)
        self.assertIsNone(self.store.acquire(self.key, 60))
        self.assertEqual(self.store.get(self.key).holder, lease.holder)

    def test_expired_lease_is_taken_over(self):
        """Test that an abandoned lease can be acquired after its TTL."""
        stale = self.store.acquire(self.key, 60)
        self.clock.now += timedelta(seconds=61)

        self.assertIsNone(self.store.get(self.key))
        fresh = self.store.acquire(self.key, 60)
        self.assertIsNotNone(fresh)
        self.assertNotEqual(fresh.holder, stale.holder)

        # The previous holder lost its claim
        self.assertIsNone(self.store.renew(stale, 60))
        self.assertFalse(self.store.release(stale))

    def test_renew_extends_expiry(self):
        lease = self.store.acquire(self.key, 60)
        self.clock.now += timedelta(seconds=50)

        renewed = self.store.renew(lease, 60)
        self.clock.now += timedelta(seconds=50)

        self.assertEqual(renewed.expires_at, datetime(2026, 3, 2, 12, 1, 50))
        self.assertIsNone(self.store.acquire(self.key, 60))

    def test_release_frees_the_key(self):
        lease = self.store.acquire(self.key, 60)

        self.assertTrue(self.store.release(lease))
        self.assertIsNone(self.store.get(self.key))
        self.assertIsNotNone(self.store.acquire(self.key, 60))

    def test_hold_releases_on_exit(self):
        with self.store.hold(self.key, 60) as lease:
            self.assertIsNotNone(lease)
            with self.store.hold(self.key, 60) as second:
                self.assertIsNone(second)

        self.assertIsNone(self.store.get(self.key))


class TestInMemoryLeaseStore(LeaseStoreContract, unittest.TestCase):
    def make_store(self, clock):
        return InMemoryLeaseStore(clock=clock)


class TestSqlLeaseStore(LeaseStoreContract, DatabaseTestCase):
    def make_store(self, clock):
        return SqlLeaseStore(self.db, clock=clock)


class TestRetryPolicy(unittest.TestCase):
    """Test retry with exponential backoff."""

    def setUp(self):
        self.sleep = Mock()
        self.policy = RetryPolicy(max_retries=3, base_delay_seconds=60, sleep=self.sleep)

    def test_succeeds_after_transient_failures(self):
        """Test that two transient failures are retried with doubling delays."""
        fn = Mock(side_effect=[PlatformAPIError('busy', 503), PlatformAPIError('busy', 503), 'page'])

        result = self.policy.call(fn, is_retryable)

        self.assertEqual(result, 'page')
        self.assertEqual(fn.call_count, 3)
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [60, 120])

    def test_non_retryable_error_raises_immediately(self):
        fn = Mock(side_effect=PlatformAuthError('denied', 401))

        with self.assertRaises(PlatformAuthError):
            self.policy.call(fn, is_retryable)
        self.assertEqual(fn.call_count, 1)
        self.sleep.assert_not_called()

    def test_gives_up_after_max_attempts(self):
        """Test that maxRetries counts retries after the first attempt."""
        fn = Mock(side_effect=PlatformAPIError('down', 500))

        with self.assertRaises(PlatformAPIError):
            self.policy.call(fn, is_retryable)
        self.assertEqual(fn.call_count, 4)
        self.assertEqual(self.sleep.call_count, 3)

    def test_delay_is_capped(self):
        policy = RetryPolicy(max_retries=10, base_delay_seconds=120, max_delay_seconds=900)
        self.assertEqual(policy.delay_for(1), 120)
        self.assertEqual(policy.delay_for(3), 480)
        self.assertEqual(policy.delay_for(5), 900)

    def test_before_retry_hook_can_abort(self):
        fn = Mock(side_effect=PlatformAPIError('busy', 429))
        hook = Mock(side_effect=SyncCancelled())

        with self.assertRaises(SyncCancelled):
            self.policy.call(fn, is_retryable, before_retry=hook)
        self.assertEqual(fn.call_count, 1)

    def test_before_retry_runs_around_each_wait(self):
        """Test that the hook runs before and after every wait, not on success."""
        fn = Mock(side_effect=[PlatformAPIError('busy', 503), PlatformAPIError('busy', 503), 'page'])
        hook = Mock()

        self.policy.call(fn, is_retryable, before_retry=hook)

        self.assertEqual(hook.call_count, 4)

    def test_interrupt_ends_wait_early(self):
        """Test that setting the interrupt event wakes a long backoff wait."""
        policy = RetryPolicy(max_retries=3, base_delay_seconds=30)
        cancel = threading.Event()
        fn = Mock(side_effect=PlatformAPIError('busy', 503))

        def abort_if_cancelled():
            if cancel.is_set():
                raise SyncCancelled()

        timer = threading.Timer(0.1, cancel.set)
        timer.start()
        started = time.monotonic()
        try:
            with self.assertRaises(SyncCancelled):
                policy.call(fn, is_retryable, before_retry=abort_if_cancelled, interrupt=cancel)
        finally:
            timer.cancel()

        self.assertLess(time.monotonic() - started, 5)
        self.assertEqual(fn.call_count, 1)

    def test_longest_delay(self):
        self.assertEqual(RetryPolicy(max_retries=0, base_delay_seconds=60).longest_delay(), 0)
        self.assertEqual(RetryPolicy(max_retries=3, base_delay_seconds=60).longest_delay(), 240)
        self.assertEqual(RetryPolicy(max_retries=20, base_delay_seconds=60).longest_delay(), 900)

    def test_from_config(self):
        policy = RetryPolicy.from_config(max_retries=2, retry_delay_minutes=0.5)
        self.assertEqual(policy.max_attempts, 3)
        self.assertEqual(policy.delay_for(1), 30)

    def test_negative_retries_rejected(self):
        with self.assertRaises(ValueError):
            RetryPolicy(max_retries=-1)


if __name__ == '__main__':
    unittest.main()
