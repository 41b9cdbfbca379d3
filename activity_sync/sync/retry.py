"""
Retry Policy Module
Reusable retry-with-exponential-backoff policy built on ``backoff``.
"""

import threading
import time
from itertools import islice
from typing import Callable, Iterator, Optional, TypeVar

import backoff

from activity_sync.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

MAX_DELAY_SECONDS = 900.0


class RetryPolicy:
    """
    Retry a callable on retryable errors with exponential backoff.

    The first retry waits ``base_delay_seconds``, each further retry doubles
    the wait up to ``max_delay_seconds``. ``backoff`` counts the attempts and
    decides when to give up; the pause itself runs in the ``on_backoff`` hook
    so that a cancellation event can cut it short.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay_seconds: float = 60.0,
        max_delay_seconds: float = MAX_DELAY_SECONDS,
        sleep: Optional[Callable[[float], None]] = None
    ):
        """
        Args:
            max_retries: Retries after the first attempt
            base_delay_seconds: Wait before the first retry
            max_delay_seconds: Cap on any single wait
            sleep: Replaces the wait entirely (tests); by default the policy
                waits on the interrupt event when one is given
        """
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self.max_retries = max_retries
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._sleep = sleep

    @classmethod
    def from_config(cls, max_retries: int, retry_delay_minutes: float,
                    sleep: Optional[Callable[[float], None]] = None) -> 'RetryPolicy':
        """Build a policy from the scheduler configuration fields."""
        return cls(
            max_retries=max_retries,
            base_delay_seconds=retry_delay_minutes * 60.0,
            sleep=sleep
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delays(self) -> Iterator[float]:
        """Endless backoff schedule: base, 2*base, 4*base ... capped."""
        schedule = backoff.expo(base=2, factor=self.base_delay_seconds, max_value=self.max_delay_seconds)
        next(schedule)  # generators from backoff yield once before the first value
        return schedule

    def delay_for(self, retry_number: int) -> float:
        """Backoff before the given retry (1-based)."""
        return next(islice(self.delays(), retry_number - 1, None))

    def longest_delay(self) -> float:
        """Longest single wait this policy can make; 0 when it never retries."""
        if self.max_retries == 0:
            return 0.0
        return self.delay_for(self.max_retries)

    def _pause(self, delay: float, interrupt: Optional[threading.Event]) -> None:
        if self._sleep is not None:
            self._sleep(delay)
        elif interrupt is not None:
            interrupt.wait(delay)
        else:
            time.sleep(delay)

    def call(
        self,
        fn: Callable[[], T],
        is_retryable: Callable[[Exception], bool],
        description: str = 'operation',
        before_retry: Optional[Callable[[], None]] = None,
        interrupt: Optional[threading.Event] = None
    ) -> T:
        """
        Run ``fn`` until it succeeds or retries are exhausted.

        Args:
            fn: Zero-argument callable to run
            is_retryable: Decides whether an exception is worth retrying
            description: Label used in retry logs
            before_retry: Hook run before and after each wait (e.g. lease
                renewal and a cancellation check); raising from it aborts
            interrupt: Event that ends a wait early when set

        Returns:
            Result of ``fn``

        Raises:
            The last exception when it is not retryable or retries are exhausted
        """
        delays = self.delays()

        def on_backoff(details):
            delay = next(delays)
            logger.warning(
                f"{description} failed (attempt {details['tries']}/{self.max_attempts}): "
                f"{details['exception']}. Retrying in {delay:.1f}s"
            )
            if before_retry:
                before_retry()
            self._pause(delay, interrupt)
            if before_retry:
                before_retry()

        @backoff.on_exception(
            backoff.constant,
            Exception,
            max_tries=self.max_attempts,
            giveup=lambda e: not is_retryable(e),
            on_backoff=on_backoff,
            jitter=None,
            logger=None,
            interval=0
        )
        def attempt():
            return fn()

        return attempt()
