"""
Sync Scheduler Module
Periodic batch driver built on APScheduler.

Each tick syncs every enabled repository, at most ``maxConcurrentRepos`` at a
time, with ``delayBetweenReposSeconds`` between dispatches. A tick that finds
a batch still running is skipped.
"""

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Callable, Dict, List, Optional

import pytz
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from activity_sync.database.models import BatchExecution, SchedulerStateRecord
from activity_sync.database.queries import QueryHelpers
from activity_sync.sync.config_service import SchedulerConfig
from activity_sync.sync.orchestrator import SyncResult
from activity_sync.utils.helpers import chunk_list, format_datetime, utcnow
from activity_sync.utils.logger import get_logger
from activity_sync.utils.metrics import record_scheduler_execution, set_scheduler_running

logger = get_logger(__name__)

JOB_ID = 'repository-sync-batch'
STATE_ROW_ID = 1


class SyncScheduler:
    """Owns the batch timer and the shared scheduler state."""

    def __init__(
        self,
        db,
        orchestrator,
        config_service,
        notification_service=None,
        rate_limiter=None,
        scheduler: Optional[BackgroundScheduler] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the scheduler.

        Args:
            db: DatabaseConnection
            orchestrator: Shared SyncOrchestrator
            config_service: ConfigService holding the runtime configuration
            notification_service: Receives batch outcomes
            rate_limiter: Shared rate limiter, reconfigured on config updates
            scheduler: APScheduler instance (a BackgroundScheduler by default)
            sleep: Sleep used between dispatches
        """
        self.db = db
        self.orchestrator = orchestrator
        self.config_service = config_service
        self.notifications = notification_service
        self.rate_limiter = rate_limiter
        self._scheduler = scheduler or BackgroundScheduler(timezone=pytz.UTC)
        self._sleep = sleep
        self._batch_lock = threading.Lock()

        self._reset_stale_state()

    # ========================================
    # Timer Control
    # ========================================

    @property
    def is_started(self) -> bool:
        return self._scheduler.running and self._scheduler.get_job(JOB_ID) is not None

    def start(self) -> Dict:
        """Start periodic batches at the configured interval."""
        config = self.config_service.get_config()
        if not config.enabled:
            config = self.config_service.update_config({'enabled': True})

        if not self._scheduler.running:
            self._scheduler.start()

        self._scheduler.add_job(
            self._tick,
            IntervalTrigger(minutes=config.interval_minutes),
            id=JOB_ID,
            name='Repository sync batch',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._update_state(next_run_at=utcnow() + timedelta(minutes=config.interval_minutes))
        set_scheduler_running(True)

        logger.info(f"Scheduler started: every {config.interval_minutes} minutes")
        return self.get_status()

    def stop(self) -> Dict:
        """Stop scheduling new batches. A batch in progress runs to completion."""
        if self._scheduler.running and self._scheduler.get_job(JOB_ID) is not None:
            self._scheduler.remove_job(JOB_ID)

        if self.config_service.get_config().enabled:
            self.config_service.update_config({'enabled': False})
        self._update_state(next_run_at=None)
        set_scheduler_running(False)

        logger.info("Scheduler stopped")
        return self.get_status()

    def shutdown(self) -> None:
        """Shut down the timer thread."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        set_scheduler_running(False)

    def _tick(self) -> None:
        try:
            self.run_batch(trigger='scheduled')
        except Exception as e:
            logger.error(f"Scheduled batch failed: {e}")

    # ========================================
    # Batches
    # ========================================

    def run_now(self, sync_type: str = 'incremental') -> Dict:
        """Run one batch immediately, in the calling thread."""
        return self.run_batch(sync_type=sync_type, trigger='manual')

    def run_batch(self, sync_type: str = 'incremental', trigger: str = 'scheduled') -> Dict:
        """
        Run one batch unless another one is in progress.

        Returns:
            Batch summary, or a skip notice
        """
        if not self._batch_lock.acquire(blocking=False):
            logger.info(f"Batch already running, skipping {trigger} run")
            record_scheduler_execution('skipped')
            return {'skipped': True, 'reason': 'Batch already running'}

        try:
            return self._execute_batch(sync_type, trigger)
        finally:
            self._batch_lock.release()

    def _execute_batch(self, sync_type: str, trigger: str) -> Dict:
        config = self.config_service.get_config()
        batch_id = f"batch-{uuid.uuid4().hex}"
        started_at = utcnow()

        self._update_state(is_running=True, current_batch_id=batch_id, last_run_at=started_at)

        with self.db.session_scope() as session:
            repository_ids = QueryHelpers(session).get_enabled_repository_ids()

        logger.info(f"Batch {batch_id} started ({trigger}): {len(repository_ids)} repositories")

        results: List[SyncResult] = []
        batch_error = None
        try:
            groups = chunk_list(repository_ids, config.max_concurrent_repos)
            for index, group in enumerate(groups):
                is_last_group = index == len(groups) - 1
                results.extend(self._run_group(group, batch_id, sync_type, config, is_last_group))
        except Exception as e:
            batch_error = str(e)
            logger.error(f"Batch {batch_id} aborted: {e}")

        successes = sum(1 for r in results if r.success)
        deferred = sum(1 for r in results if r.deferred)
        failures = sum(1 for r in results if not r.success and not r.deferred and r.status != 'cancelled')
        last_error = batch_error or next((r.error for r in results if r.status == 'failed'), None)

        completed_at = utcnow()
        next_run_at = completed_at + timedelta(minutes=config.interval_minutes) if self.is_started else None

        with self.db.session_scope() as session:
            state = self._get_state(session)
            state.is_running = False
            state.current_batch_id = None
            state.total_repos_processed = (state.total_repos_processed or 0) + len(results)
            state.successful_syncs = (state.successful_syncs or 0) + successes
            state.failed_syncs = (state.failed_syncs or 0) + failures
            state.last_error = last_error
            state.next_run_at = next_run_at

            session.add(BatchExecution(
                batch_id=batch_id,
                started_at=started_at,
                completed_at=completed_at,
                repos_processed=len(results),
                successful_syncs=successes,
                failed_syncs=failures,
                deferred_syncs=deferred,
                error=batch_error
            ))

        logger.info(
            f"Batch {batch_id} completed: {len(results)} processed, {successes} succeeded, "
            f"{failures} failed, {deferred} deferred"
        )

        record_scheduler_execution('failed' if batch_error else 'completed')
        self._notify(batch_id, failures, len(results), config)

        return {
            'skipped': False,
            'batchId': batch_id,
            'processed': len(results),
            'successes': successes,
            'failures': failures,
            'deferred': deferred,
            'error': batch_error,
            'results': [r.to_dict() for r in results],
        }

    def _run_group(self, repository_ids: List[int], batch_id: str, sync_type: str,
                   config: SchedulerConfig, is_last_group: bool) -> List[SyncResult]:
        """Dispatch one group concurrently, spacing the dispatches."""
        futures = {}
        with ThreadPoolExecutor(max_workers=len(repository_ids), thread_name_prefix='sync') as executor:
            for index, repository_id in enumerate(repository_ids):
                futures[repository_id] = executor.submit(
                    self.orchestrator.sync_repository, repository_id, sync_type, batch_id
                )
                is_last = is_last_group and index == len(repository_ids) - 1
                if config.delay_between_repos_seconds > 0 and not is_last:
                    self._sleep(config.delay_between_repos_seconds)

        results = []
        for repository_id, future in futures.items():
            try:
                results.append(future.result())
            except Exception as e:
                logger.error(f"Sync of repository {repository_id} raised: {e}")
                results.append(SyncResult(
                    repository_id=repository_id,
                    success=False,
                    status='failed',
                    error=str(e)
                ))
        return results

    def _notify(self, batch_id: str, failures: int, processed: int, config: SchedulerConfig) -> None:
        if self.notifications is None or not config.notification_enabled:
            return

        try:
            if failures > 0 and failures >= self.notifications.failure_threshold:
                self.notifications.send_failure_notification(
                    batch_id, failures, processed, config.notification_recipients
                )
            elif failures == 0 and processed > 0:
                self.notifications.send_success_notification(
                    batch_id, processed, config.notification_recipients
                )
        except Exception as e:
            logger.error(f"Failed to send batch notification for {batch_id}: {e}")

    # ========================================
    # State & Configuration
    # ========================================

    def _get_state(self, session) -> SchedulerStateRecord:
        state = session.get(SchedulerStateRecord, STATE_ROW_ID)
        if state is None:
            state = SchedulerStateRecord(id=STATE_ROW_ID, is_running=False,
                                         total_repos_processed=0, successful_syncs=0, failed_syncs=0)
            session.add(state)
            session.flush()
        return state

    def _update_state(self, **values) -> None:
        with self.db.session_scope() as session:
            state = self._get_state(session)
            for name, value in values.items():
                setattr(state, name, value)

    def _reset_stale_state(self) -> None:
        """Clear a running flag left behind by a process that died mid-batch."""
        with self.db.session_scope() as session:
            state = self._get_state(session)
            if state.is_running:
                logger.warning(f"Resetting stale running state of batch {state.current_batch_id}")
                state.is_running = False
                state.current_batch_id = None
                state.last_error = 'Batch interrupted by process restart'

    def get_status(self) -> Dict:
        """Current scheduler state."""
        with self.db.session_scope() as session:
            state = self._get_state(session)
            return {
                'isStarted': self.is_started,
                'isRunning': bool(state.is_running),
                'lastRunAt': format_datetime(state.last_run_at),
                'nextRunAt': format_datetime(state.next_run_at),
                'currentBatchId': state.current_batch_id,
                'totalReposProcessed': state.total_repos_processed or 0,
                'successfulSyncs': state.successful_syncs or 0,
                'failedSyncs': state.failed_syncs or 0,
                'lastError': state.last_error,
            }

    def get_config(self) -> Dict:
        return self.config_service.get_config().to_dict()

    def update_config(self, updates: Dict) -> Dict:
        """
        Validate and apply a configuration update to the running components.

        Raises:
            ConfigValidationError: If the update is invalid
        """
        previous = self.config_service.get_config()
        config = self.config_service.update_config(updates)

        if config.interval_minutes != previous.interval_minutes and self.is_started:
            self._scheduler.reschedule_job(JOB_ID, trigger=IntervalTrigger(minutes=config.interval_minutes))
            self._update_state(next_run_at=utcnow() + timedelta(minutes=config.interval_minutes))
            logger.info(f"Scheduler rescheduled: every {config.interval_minutes} minutes")

        if self.rate_limiter is not None and (
            config.azure_rate_limit_per_minute != previous.azure_rate_limit_per_minute
            or config.azure_burst_limit != previous.azure_burst_limit
        ):
            self.rate_limiter.configure(config.azure_rate_limit_per_minute, config.azure_burst_limit)

        if previous.enabled != config.enabled:
            if config.enabled and not self.is_started:
                self.start()
            elif not config.enabled and self.is_started:
                self.stop()

        return config.to_dict()
