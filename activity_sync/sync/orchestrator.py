"""
Sync Orchestrator Module
Runs one repository's sync job: lease, fetch window, paginated fetch through
the rate limiter and retry policy, reconciliation, and job/repository state.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import update

from activity_sync.config_manager import ConfigManager
from activity_sync.database.models import Repository, SyncJob
from activity_sync.database.queries import QueryHelpers, job_to_dict
from activity_sync.platform_client import PlatformAPIError, PlatformClient
from activity_sync.sync.config_service import SchedulerConfig
from activity_sync.sync.errors import RateLimitTimeout, RepositoryNotFound, SyncCancelled, SyncError
from activity_sync.sync.lease import Lease, repository_lease_key
from activity_sync.sync.reconciler import ReconcileStats, Reconciler
from activity_sync.sync.retry import RetryPolicy
from activity_sync.sync.transform import (
    is_target_branch, map_commit, map_pull_request, map_reviews, map_thread_comments
)
from activity_sync.utils.crypto import decrypt_credential
from activity_sync.utils.helpers import format_datetime, utcnow
from activity_sync.utils.logger import get_logger
from activity_sync.utils.metrics import record_sync_job

logger = get_logger(__name__)

SYNC_TYPES = ('full', 'incremental')
ACTIVE_STATUSES = ('pending', 'running')


@dataclass
class SyncResult:
    """Outcome of one sync_repository call."""
    repository_id: int
    success: bool
    status: str
    has_new_data: bool = False
    records_processed: int = 0
    duration: float = 0.0  # seconds
    error: Optional[str] = None
    job_id: Optional[int] = None
    deferred: bool = False

    @classmethod
    def deferral(cls, repository_id: int) -> 'SyncResult':
        return cls(
            repository_id=repository_id,
            success=False,
            status='deferred',
            error='Sync already in progress',
            deferred=True
        )

    def to_dict(self) -> Dict:
        return {
            'repositoryId': self.repository_id,
            'success': self.success,
            'status': self.status,
            'hasNewData': self.has_new_data,
            'recordsProcessed': self.records_processed,
            'duration': round(self.duration, 3),
            'error': self.error,
            'jobId': self.job_id,
            'deferred': self.deferred,
        }


@dataclass
class _RunContext:
    repository_id: int
    job_id: int
    started_at: datetime
    lease: Lease
    cancel_event: threading.Event
    retry: RetryPolicy
    stats: ReconcileStats = field(default_factory=ReconcileStats)


def is_retryable(error: Exception) -> bool:
    """Transient platform failures and limiter backpressure are retried."""
    if isinstance(error, PlatformAPIError):
        return error.is_transient
    return isinstance(error, RateLimitTimeout)


class SyncOrchestrator:
    """
    Per-repository sync runner.

    One instance is shared by the scheduler and the API; it is safe to call
    ``sync_repository`` for different repositories from several threads.
    """

    def __init__(
        self,
        db,
        rate_limiter,
        lease_store,
        config_service=None,
        notification_service=None,
        reconciler: Optional[Reconciler] = None,
        client_factory: Callable = None,
        lease_ttl_seconds: Optional[float] = None,
        page_size: Optional[int] = None,
        target_branches: Optional[List[str]] = None,
        retry_sleep: Optional[Callable[[float], None]] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            db: DatabaseConnection
            rate_limiter: Shared TokenBucketRateLimiter
            lease_store: Lease store used for the per-repository lease
            config_service: Source of runtime retry/notification settings
            notification_service: Receives repeated-failure alerts
            reconciler: Reconciler instance
            client_factory: Callable (repository, token) -> platform client
            lease_ttl_seconds: Lease TTL, renewed between pages
            page_size: Items requested per page
            target_branches: PR target branches to keep
            retry_sleep: Replaces the retry wait; by default it waits on the
                job's cancel event so cancellation ends the wait early
        """
        config = ConfigManager()
        sync_config = config.get_sync_config()

        self.db = db
        self.rate_limiter = rate_limiter
        self.lease_store = lease_store
        self.config_service = config_service
        self.notifications = notification_service
        self.reconciler = reconciler or Reconciler()
        self.client_factory = client_factory or PlatformClient.for_repository
        self.lease_ttl_seconds = lease_ttl_seconds or sync_config.get('lease_ttl_seconds', 3600)
        self.page_size = page_size or config.get_platform_config().get('page_size', 100)
        self.target_branches = target_branches or config.get_target_branches()
        self._retry_sleep = retry_sleep

        self._lock = threading.Lock()
        self._active: Dict[int, threading.Event] = {}

    def _runtime_config(self) -> SchedulerConfig:
        if self.config_service is not None:
            return self.config_service.get_config()
        return SchedulerConfig.from_settings()

    # ========================================
    # Public API
    # ========================================

    def sync_repository(self, repository_id: int, sync_type: str = 'incremental',
                        batch_id: Optional[str] = None) -> SyncResult:
        """
        Sync one repository.

        Args:
            repository_id: Repository ID
            sync_type: 'full' or 'incremental'
            batch_id: Scheduler batch the run belongs to

        Returns:
            SyncResult; a held lease yields a deferral result, not a failure

        Raises:
            ValueError: For an unknown sync type
            RepositoryNotFound: If the repository does not exist
        """
        if sync_type not in SYNC_TYPES:
            raise ValueError(f"Unknown sync type: {sync_type}")

        lease = self._acquire(repository_id)
        if lease is None:
            record_sync_job(repository_id, sync_type, 'deferred')
            return SyncResult.deferral(repository_id)
        return self._run_leased(repository_id, sync_type, batch_id, lease)

    def start_sync(self, repository_id: int, sync_type: str = 'incremental') -> SyncResult:
        """
        Acquire the lease in the caller's thread and run the sync in a background thread.

        Returns:
            A 'started' result, or a deferral when a sync is already in progress

        Raises:
            ValueError: For an unknown sync type
            RepositoryNotFound: If the repository does not exist
        """
        if sync_type not in SYNC_TYPES:
            raise ValueError(f"Unknown sync type: {sync_type}")

        with self.db.session_scope() as session:
            if session.get(Repository, repository_id) is None:
                raise RepositoryNotFound(repository_id)

        lease = self._acquire(repository_id)
        if lease is None:
            record_sync_job(repository_id, sync_type, 'deferred')
            return SyncResult.deferral(repository_id)

        thread = threading.Thread(
            target=self._run_in_background,
            args=(repository_id, sync_type, lease),
            name=f"manual-sync-{repository_id}",
            daemon=True
        )
        thread.start()
        return SyncResult(repository_id=repository_id, success=True, status='started')

    def _acquire(self, repository_id: int) -> Optional[Lease]:
        lease = self.lease_store.acquire(repository_lease_key(repository_id), self.lease_ttl_seconds)
        if lease is None:
            logger.info(f"Sync of repository {repository_id} already in progress, deferring")
        return lease

    def _run_in_background(self, repository_id: int, sync_type: str, lease: Lease) -> None:
        try:
            self._run_leased(repository_id, sync_type, None, lease)
        except Exception as e:
            logger.error(f"Manual sync of repository {repository_id} raised: {e}")

    def _run_leased(self, repository_id: int, sync_type: str, batch_id: Optional[str],
                    lease: Lease) -> SyncResult:
        """Run a sync under an acquired lease and always release it."""
        cancel_event = threading.Event()
        with self._lock:
            self._active[repository_id] = cancel_event

        try:
            return self._run(repository_id, sync_type, batch_id, lease, cancel_event)
        finally:
            with self._lock:
                self._active.pop(repository_id, None)
            if not self.lease_store.release(lease):
                logger.warning(f"Lease for repository {repository_id} was already lost at release")

    def cancel_sync(self, repository_id: int) -> bool:
        """
        Request cancellation of a running sync.

        Returns:
            True if a running or pending job was flagged
        """
        with self._lock:
            event = self._active.get(repository_id)
        if event is not None:
            event.set()

        with self.db.session_scope() as session:
            result = session.execute(
                update(SyncJob)
                .where(SyncJob.repository_id == repository_id, SyncJob.status.in_(ACTIVE_STATUSES))
                .values(cancel_requested=True)
            )
            flagged = result.rowcount

        if event is not None or flagged:
            logger.info(f"Cancellation requested for repository {repository_id}")
            return True
        return False

    def get_sync_status(self, repository_id: int) -> Dict:
        """
        Current sync status of a repository.

        Raises:
            RepositoryNotFound: If the repository does not exist
        """
        with self.db.session_scope() as session:
            helpers = QueryHelpers(session)
            repository = helpers.get_repository(repository_id)
            if repository is None:
                raise RepositoryNotFound(repository_id)

            latest = helpers.get_latest_job(repository_id)
            lease = self.lease_store.get(repository_lease_key(repository_id))

            return {
                'repositoryId': repository_id,
                'isSyncing': lease is not None,
                'lastSyncAt': format_datetime(repository.last_sync_at),
                'latestJob': job_to_dict(latest) if latest else None,
            }

    def get_sync_history(self, repository_id: int, page: int = 1, page_size: int = 20) -> Dict:
        """
        Paginated job history of a repository.

        Raises:
            RepositoryNotFound: If the repository does not exist
        """
        with self.db.session_scope() as session:
            helpers = QueryHelpers(session)
            if helpers.get_repository(repository_id) is None:
                raise RepositoryNotFound(repository_id)
            return helpers.get_sync_history(repository_id, page, page_size)

    # ========================================
    # Job Lifecycle
    # ========================================

    def _run(self, repository_id: int, sync_type: str, batch_id: Optional[str],
             lease: Lease, cancel_event: threading.Event) -> SyncResult:
        clock_start = time.monotonic()
        runtime = self._runtime_config()

        job_id, started_at, repository, window = self._start_job(repository_id, sync_type, batch_id)
        context = _RunContext(
            repository_id=repository_id,
            job_id=job_id,
            started_at=started_at,
            lease=lease,
            cancel_event=cancel_event,
            retry=RetryPolicy.from_config(runtime.max_retries, runtime.retry_delay_minutes, sleep=self._retry_sleep)
        )
        logger.info(
            f"Sync started: repository={repository_id} job={job_id} type={sync_type} "
            f"batch={batch_id} window={format_datetime(window[0])}..{format_datetime(window[1])}"
        )

        try:
            token = decrypt_credential(repository.encrypted_credential)
            client = self.client_factory(repository, token)
            try:
                self._sync_pull_requests(context, client, *window)
                self._sync_commits(context, client, *window)
            finally:
                close = getattr(client, 'close', None)
                if close:
                    close()
        except SyncCancelled:
            duration = time.monotonic() - clock_start
            self._finish_job(context, 'cancelled', duration, error='Cancelled by request')
            record_sync_job(repository_id, sync_type, 'cancelled', duration, context.stats.processed)
            logger.info(f"Sync cancelled: repository={repository_id} job={job_id}")
            return self._result(context, 'cancelled', duration, error='Cancelled by request')
        except Exception as e:
            duration = time.monotonic() - clock_start
            error = str(e)[:1000] or e.__class__.__name__
            self._finish_job(context, 'failed', duration, error=error)
            record_sync_job(repository_id, sync_type, 'failed', duration, context.stats.processed)
            logger.error(f"Sync failed: repository={repository_id} job={job_id}: {error}")
            self._alert_repeated_failures(repository_id, error, batch_id, runtime)
            return self._result(context, 'failed', duration, error=error)

        duration = time.monotonic() - clock_start
        self._finish_job(context, 'completed', duration)
        record_sync_job(repository_id, sync_type, 'completed', duration, context.stats.processed)
        logger.info(
            f"Sync completed: repository={repository_id} job={job_id} "
            f"records={context.stats.processed} in {duration:.1f}s"
        )
        return self._result(context, 'completed', duration)

    def _start_job(self, repository_id: int, sync_type: str,
                   batch_id: Optional[str]) -> Tuple[int, datetime, Repository, Tuple]:
        """Create the running job and compute the fetch window."""
        with self.db.session_scope() as session:
            repository = session.get(Repository, repository_id)
            if repository is None:
                raise RepositoryNotFound(repository_id)

            started_at = utcnow()
            job = SyncJob(
                repository_id=repository_id,
                batch_id=batch_id,
                status='running',
                sync_type=sync_type,
                started_at=started_at
            )
            session.add(job)
            session.flush()

            if sync_type == 'incremental':
                # A never-synced repository starts from the beginning
                window = (repository.last_sync_at, started_at)
            else:
                window = (None, None)

            session.expunge(repository)
            return job.id, started_at, repository, window

    def _finish_job(self, context: _RunContext, status: str, duration: float,
                    error: Optional[str] = None) -> None:
        """Write the terminal job state; advance lastSyncAt only when data was processed."""
        with self.db.session_scope() as session:
            job = session.get(SyncJob, context.job_id)
            job.status = status
            job.completed_at = utcnow()
            job.error = error
            job.duration_ms = int(duration * 1000)
            job.records_processed = context.stats.processed
            job.records_created = context.stats.created
            job.records_updated = context.stats.updated

            if status == 'completed' and context.stats.processed > 0:
                repository = session.get(Repository, context.repository_id)
                repository.last_sync_at = context.started_at

    def _result(self, context: _RunContext, status: str, duration: float,
                error: Optional[str] = None) -> SyncResult:
        return SyncResult(
            repository_id=context.repository_id,
            success=status == 'completed',
            status=status,
            has_new_data=status == 'completed' and context.stats.processed > 0,
            records_processed=context.stats.processed,
            duration=duration,
            error=error,
            job_id=context.job_id
        )

    def _alert_repeated_failures(self, repository_id: int, error: str, batch_id: Optional[str],
                                 runtime: SchedulerConfig) -> None:
        if self.notifications is None or not runtime.notification_enabled:
            return
        try:
            self.notifications.send_repository_failure_notification(
                repository_id, error, runtime.notification_recipients, batch_id=batch_id
            )
        except Exception as e:
            logger.error(f"Failed to send repository failure notification: {e}")

    # ========================================
    # Checkpoints
    # ========================================

    def _checkpoint(self, context: _RunContext) -> None:
        """
        Between pages: honour cancellation, renew the lease, record progress.

        Raises:
            SyncCancelled: If cancellation was requested
            SyncError: If the lease was lost
        """
        if context.cancel_event.is_set():
            raise SyncCancelled()

        with self.db.session_scope() as session:
            job = session.get(SyncJob, context.job_id)
            if job.cancel_requested:
                raise SyncCancelled()
            job.records_processed = context.stats.processed
            job.records_created = context.stats.created
            job.records_updated = context.stats.updated

        self._renew_lease(context)

    def _keep_alive(self, context: _RunContext) -> None:
        """
        Within a page (retry waits, per-PR fetches): honour cancellation and renew the lease.

        Raises:
            SyncCancelled: If cancellation was requested
            SyncError: If the lease was lost
        """
        if context.cancel_event.is_set():
            raise SyncCancelled()
        self._renew_lease(context)

    def _renew_lease(self, context: _RunContext) -> None:
        renewed = self.lease_store.renew(context.lease, self.lease_ttl_seconds)
        if renewed is None:
            raise SyncError(f"Lease for repository {context.repository_id} was lost")
        context.lease = renewed

    def _fetch(self, context: _RunContext, description: str, fetch: Callable):
        """Fetch one page through the rate limiter, retrying transient failures."""
        def attempt():
            self.rate_limiter.acquire()
            return fetch()

        return context.retry.call(
            attempt,
            is_retryable=is_retryable,
            description=f"repository {context.repository_id}: {description}",
            before_retry=partial(self._keep_alive, context),
            interrupt=context.cancel_event
        )

    # ========================================
    # Entity Sync
    # ========================================

    def _sync_pull_requests(self, context: _RunContext, client, since: Optional[datetime],
                            until: Optional[datetime]) -> None:
        skip = 0
        while True:
            self._checkpoint(context)
            page = self._fetch(
                context, f"pull requests page at {skip}",
                partial(client.fetch_pull_requests_page, skip=skip, top=self.page_size, since=since, until=until)
            )

            pull_requests = [
                pr for pr in page
                if is_target_branch(pr.get('targetRefName'), self.target_branches)
            ]

            threads_by_pr = {}
            for pr in pull_requests:
                self._keep_alive(context)
                pr_id = pr.get('pullRequestId')
                threads_by_pr[pr_id] = self._fetch(
                    context, f"threads of pull request {pr_id}",
                    partial(client.fetch_pull_request_threads, pr_id)
                )

            page_stats = ReconcileStats()
            with self.db.session_scope() as session:
                for pr in pull_requests:
                    threads = threads_by_pr.get(pr.get('pullRequestId')) or []
                    page_stats.merge(self.reconciler.reconcile_pull_request(
                        session,
                        context.repository_id,
                        map_pull_request(pr, threads),
                        map_reviews(pr, threads),
                        map_thread_comments(threads)
                    ))
            context.stats.merge(page_stats)

            logger.debug(
                f"Repository {context.repository_id}: pull request page at {skip} "
                f"({len(page)} fetched, {len(pull_requests)} on target branches)"
            )

            if len(page) < self.page_size:
                break
            skip += len(page)

    def _sync_commits(self, context: _RunContext, client, since: Optional[datetime],
                      until: Optional[datetime]) -> None:
        skip = 0
        while True:
            self._checkpoint(context)
            page = self._fetch(
                context, f"commits page at {skip}",
                partial(client.fetch_commits_page, skip=skip, top=self.page_size, since=since, until=until)
            )

            with self.db.session_scope() as session:
                page_stats = self.reconciler.reconcile_commits(
                    session, context.repository_id, [map_commit(c) for c in page]
                )
            context.stats.merge(page_stats)

            if len(page) < self.page_size:
                break
            skip += len(page)
