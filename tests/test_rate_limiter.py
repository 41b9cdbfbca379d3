"""
Unit Tests for the Token Bucket Rate Limiter
"""

import threading
import unittest

from activity_sync.sync.errors import RateLimitTimeout
from activity_sync.sync.rate_limiter import (
    BucketState, InMemoryBucketStore, SqlBucketStore, TokenBucketRateLimiter
)
from tests.support import DatabaseTestCase, FakeClock


class TestTokenBucket(unittest.TestCase):
    """Test token accounting with a controlled clock."""

    def setUp(self):
        self.clock = FakeClock()
        # 60/min = one token per second
        self.limiter = TokenBucketRateLimiter(60, 3, clock=self.clock, sleep=self.clock.sleep)

    def test_burst_then_deny(self):
        """Test that a full bucket grants the burst and then denies."""
        self.assertTrue(self.limiter.try_consume())
        self.assertTrue(self.limiter.try_consume())
        self.assertTrue(self.limiter.try_consume())
        self.assertFalse(self.limiter.try_consume())

    def test_refill_is_lazy_and_capped(self):
        """Test that tokens refill with elapsed time up to capacity."""
        for _ in range(3):
            self.limiter.try_consume()

        self.clock.now += 2
        self.assertTrue(self.limiter.try_consume(2))
        self.assertFalse(self.limiter.try_consume())

        self.clock.now += 3600
        self.assertEqual(self.limiter.status()['remaining'], 3)

    def test_acquire_waits_for_refill(self):
        """Test that acquire sleeps until a token is available."""
        for _ in range(3):
            self.limiter.try_consume()

        waited = self.limiter.acquire()

        self.assertAlmostEqual(waited, 1.0)
        self.assertEqual(self.clock.sleeps, [1.0])

    def test_acquire_times_out(self):
        """Test that acquire fails when the wait exceeds the max wait."""
        for _ in range(3):
            self.limiter.try_consume()

        with self.assertRaises(RateLimitTimeout) as ctx:
            self.limiter.acquire(max_wait_seconds=0.5)
        self.assertEqual(ctx.exception.max_wait_seconds, 0.5)
        self.assertEqual(self.clock.sleeps, [])

    def test_acquire_more_than_capacity(self):
        """Test that a request larger than the bucket is rejected."""
        with self.assertRaises(ValueError):
            self.limiter.acquire(4)

    def test_invalid_configuration(self):
        """Test that non-positive settings are rejected."""
        with self.assertRaises(ValueError):
            TokenBucketRateLimiter(0, 10)
        with self.assertRaises(ValueError):
            TokenBucketRateLimiter(60, 0)

    def test_configure_changes_capacity(self):
        """Test that reconfiguring caps the existing tokens at the new burst."""
        self.assertEqual(self.limiter.status()['remaining'], 3)
        self.limiter.configure(120, 1)
        self.assertTrue(self.limiter.try_consume())
        self.assertFalse(self.limiter.try_consume())
        self.assertEqual(self.limiter.status()['burstLimit'], 1)

    def test_status(self):
        """Test the status shape."""
        self.limiter.try_consume()
        status = self.limiter.status()

        self.assertEqual(status['remaining'], 2)
        self.assertEqual(status['rateLimitPerMinute'], 60)
        self.assertEqual(status['scope'], 'platform-api')
        self.assertIsNotNone(status['resetAt'])

    def test_concurrent_consumers_never_overdraw(self):
        """Test that concurrent consumers get exactly the available tokens."""
        limiter = TokenBucketRateLimiter(1, 20, clock=lambda: 1000.0)
        granted = []
        lock = threading.Lock()

        def consume():
            for _ in range(10):
                if limiter.try_consume():
                    with lock:
                        granted.append(1)

        threads = [threading.Thread(target=consume) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(granted), 20)


class TestInMemoryBucketStore(unittest.TestCase):
    """Test compare-and-set semantics."""

    def test_compare_and_set(self):
        store = InMemoryBucketStore()
        current = store.load('api', 5, 0.0)

        self.assertTrue(store.compare_and_set('api', current, BucketState(4.0, 0.0)))
        self.assertFalse(store.compare_and_set('api', current, BucketState(3.0, 0.0)))


class TestSqlBucketStore(DatabaseTestCase):
    """Test the database-backed bucket shared between limiters."""

    def test_limiters_share_budget(self):
        """Test that two limiters on one table draw from the same bucket."""
        clock = FakeClock()
        first = TokenBucketRateLimiter(60, 2, store=SqlBucketStore(self.db), clock=clock)
        second = TokenBucketRateLimiter(60, 2, store=SqlBucketStore(self.db), clock=clock)

        self.assertTrue(first.try_consume())
        self.assertTrue(second.try_consume())
        self.assertFalse(first.try_consume())
        self.assertFalse(second.try_consume())

        clock.now += 1
        self.assertTrue(second.try_consume())

    def test_stale_compare_and_set_fails(self):
        store = SqlBucketStore(self.db)
        current = store.load('api', 5, 10.0)

        self.assertTrue(store.compare_and_set('api', current, BucketState(4.0, 10.0)))
        self.assertFalse(store.compare_and_set('api', current, BucketState(3.0, 10.0)))
        self.assertEqual(store.load('api', 5, 11.0), BucketState(4.0, 10.0))


if __name__ == '__main__':
    unittest.main()
