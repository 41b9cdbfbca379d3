"""
Application Context Module
Builds the process-wide sync components once and shares them.

Route handlers and the scheduler use the same rate limiter, lease store,
orchestrator, scheduler and notification service instances.
"""

import time
from typing import Optional

from flask import Flask, current_app

from activity_sync.config_manager import ConfigManager
from activity_sync.database.connection import DatabaseConnection, get_db
from activity_sync.sync.config_service import ConfigService
from activity_sync.sync.lease import SqlLeaseStore
from activity_sync.sync.notifications import NotificationService
from activity_sync.sync.orchestrator import SyncOrchestrator
from activity_sync.sync.rate_limiter import SqlBucketStore, TokenBucketRateLimiter
from activity_sync.sync.reconciler import Reconciler
from activity_sync.sync.scheduler import SyncScheduler
from activity_sync.sync.sink import ActivitySink
from activity_sync.utils.logger import get_logger

logger = get_logger(__name__)

EXTENSION_KEY = 'activity_sync'


class AppContext:
    """Holds one instance of each shared component."""

    def __init__(
        self,
        db: DatabaseConnection,
        config_service: ConfigService,
        rate_limiter: TokenBucketRateLimiter,
        lease_store,
        notifications: NotificationService,
        orchestrator: SyncOrchestrator,
        scheduler: SyncScheduler,
        reconciler: Reconciler,
        sink: ActivitySink
    ):
        self.db = db
        self.config_service = config_service
        self.rate_limiter = rate_limiter
        self.lease_store = lease_store
        self.notifications = notifications
        self.orchestrator = orchestrator
        self.scheduler = scheduler
        self.reconciler = reconciler
        self.sink = sink

    @classmethod
    def build(cls, db: Optional[DatabaseConnection] = None, **overrides) -> 'AppContext':
        """
        Wire the components from configuration.

        Args:
            db: Database connection; the process default when omitted
            **overrides: Replacement components by name (e.g. client_factory, lease_store)
        """
        config = ConfigManager()
        sync_config = config.get_sync_config()
        db = db or get_db()

        config_service = overrides.get('config_service') or ConfigService(db)
        runtime = config_service.get_config()

        rate_limiter = overrides.get('rate_limiter') or TokenBucketRateLimiter(
            runtime.azure_rate_limit_per_minute,
            runtime.azure_burst_limit,
            store=SqlBucketStore(db),
            max_wait_seconds=sync_config.get('rate_limit_max_wait_seconds', 120)
        )
        lease_store = overrides.get('lease_store') or SqlLeaseStore(db)
        notifications = overrides.get('notifications') or NotificationService(db)
        reconciler = overrides.get('reconciler') or Reconciler()

        orchestrator = SyncOrchestrator(
            db,
            rate_limiter,
            lease_store,
            config_service=config_service,
            notification_service=notifications,
            reconciler=reconciler,
            client_factory=overrides.get('client_factory'),
            retry_sleep=overrides.get('retry_sleep')
        )
        scheduler = SyncScheduler(
            db,
            orchestrator,
            config_service,
            notification_service=notifications,
            rate_limiter=rate_limiter,
            scheduler=overrides.get('scheduler'),
            sleep=overrides.get('sleep', time.sleep)
        )

        logger.info("Sync components initialized")
        return cls(db, config_service, rate_limiter, lease_store, notifications,
                   orchestrator, scheduler, reconciler, ActivitySink(db, reconciler))

    def init_app(self, app: Flask) -> None:
        app.extensions[EXTENSION_KEY] = self


def get_context() -> AppContext:
    """Shared context of the current Flask application."""
    return current_app.extensions[EXTENSION_KEY]
