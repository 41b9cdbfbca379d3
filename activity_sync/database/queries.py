"""
Database Query Helpers Module
Provides functions for sync history, monitoring metrics and per-repository stats.
"""

from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy import case, desc, func
from sqlalchemy.orm import Session

from activity_sync.database.models import (
    BatchExecution, Commit, PullRequest, Repository, SyncJob
)
from activity_sync.utils.helpers import format_datetime, paginate_info, utcnow
from activity_sync.utils.logger import get_logger

logger = get_logger(__name__)


def job_to_dict(job: SyncJob) -> Dict:
    """Serialize a sync job for API output."""
    return {
        'id': job.id,
        'repositoryId': job.repository_id,
        'batchId': job.batch_id,
        'status': job.status,
        'syncType': job.sync_type,
        'startedAt': format_datetime(job.started_at),
        'completedAt': format_datetime(job.completed_at),
        'error': job.error,
        'recordsProcessed': job.records_processed or 0,
        'recordsCreated': job.records_created or 0,
        'recordsUpdated': job.records_updated or 0,
        'durationMs': job.duration_ms,
        'cancelRequested': bool(job.cancel_requested),
    }


def batch_to_dict(batch: BatchExecution) -> Dict:
    """Serialize a batch execution for API output."""
    return {
        'batchId': batch.batch_id,
        'startedAt': format_datetime(batch.started_at),
        'executedAt': format_datetime(batch.completed_at),
        'processed': batch.repos_processed or 0,
        'successes': batch.successful_syncs or 0,
        'failures': batch.failed_syncs or 0,
        'deferred': batch.deferred_syncs or 0,
        'error': batch.error,
    }


class QueryHelpers:
    """Query helper functions for database operations."""

    def __init__(self, session: Session):
        """Initialize with database session."""
        self.session = session

    # ========================================
    # Sync Job Queries
    # ========================================

    def get_repository(self, repository_id: int) -> Optional[Repository]:
        return self.session.get(Repository, repository_id)

    def get_enabled_repository_ids(self) -> List[int]:
        """Ids of repositories eligible for scheduled sync."""
        rows = self.session.query(Repository.id).filter(
            Repository.enabled.is_(True)
        ).order_by(Repository.id).all()
        return [row.id for row in rows]

    def get_latest_job(self, repository_id: int) -> Optional[SyncJob]:
        """Get the most recent job of a repository."""
        return self.session.query(SyncJob).filter(
            SyncJob.repository_id == repository_id
        ).order_by(desc(SyncJob.id)).first()

    def get_sync_history(self, repository_id: int, page: int = 1, page_size: int = 20) -> Dict:
        """
        Get paginated sync jobs of a repository, newest first.

        Args:
            repository_id: Repository ID
            page: 1-based page number
            page_size: Jobs per page

        Returns:
            Dict with 'jobs' and 'pagination'
        """
        query = self.session.query(SyncJob).filter(SyncJob.repository_id == repository_id)
        total = query.count()
        jobs = query.order_by(desc(SyncJob.id)).offset((page - 1) * page_size).limit(page_size).all()

        return {
            'jobs': [job_to_dict(job) for job in jobs],
            'pagination': paginate_info(page, page_size, total)
        }

    # ========================================
    # Monitoring Queries
    # ========================================

    def get_metrics_summary(self, days: int = 7) -> Dict:
        """
        Get aggregate sync metrics over the last N days.

        Returns:
            Dict with job counts per status, success rate and average duration
        """
        since = utcnow() - timedelta(days=days)

        counts = dict(
            self.session.query(SyncJob.status, func.count(SyncJob.id))
            .filter(SyncJob.started_at >= since)
            .group_by(SyncJob.status)
            .all()
        )
        avg_duration = self.session.query(func.avg(SyncJob.duration_ms)).filter(
            SyncJob.started_at >= since,
            SyncJob.status == 'completed'
        ).scalar()
        records = self.session.query(func.coalesce(func.sum(SyncJob.records_processed), 0)).filter(
            SyncJob.started_at >= since
        ).scalar()

        total = sum(counts.values())
        completed = counts.get('completed', 0)
        finished = completed + counts.get('failed', 0)

        return {
            'periodDays': days,
            'totalJobs': total,
            'completedJobs': completed,
            'failedJobs': counts.get('failed', 0),
            'cancelledJobs': counts.get('cancelled', 0),
            'runningJobs': counts.get('running', 0),
            'successRate': round(completed / finished * 100, 1) if finished else None,
            'averageDurationMs': int(avg_duration) if avg_duration is not None else None,
            'recordsProcessed': int(records or 0),
            'repositories': self.session.query(Repository).count(),
            'enabledRepositories': self.session.query(Repository).filter(Repository.enabled.is_(True)).count(),
        }

    def get_repository_stats(self) -> List[Dict]:
        """Get per-repository sync and activity counters."""
        job_stats = {
            row.repository_id: row
            for row in self.session.query(
                SyncJob.repository_id,
                func.count(SyncJob.id).label('total'),
                func.sum(case((SyncJob.status == 'completed', 1), else_=0)).label('completed'),
                func.sum(case((SyncJob.status == 'failed', 1), else_=0)).label('failed')
            ).group_by(SyncJob.repository_id).all()
        }
        pr_counts = dict(
            self.session.query(PullRequest.repository_id, func.count(PullRequest.id))
            .group_by(PullRequest.repository_id).all()
        )
        commit_counts = dict(
            self.session.query(Commit.repository_id, func.count(Commit.id))
            .group_by(Commit.repository_id).all()
        )

        results = []
        for repository in self.session.query(Repository).order_by(Repository.id).all():
            stats = job_stats.get(repository.id)
            latest = self.get_latest_job(repository.id)
            results.append({
                'repositoryId': repository.id,
                'name': repository.name,
                'enabled': repository.enabled,
                'lastSyncAt': format_datetime(repository.last_sync_at),
                'totalJobs': stats.total if stats else 0,
                'completedJobs': int(stats.completed or 0) if stats else 0,
                'failedJobs': int(stats.failed or 0) if stats else 0,
                'pullRequests': pr_counts.get(repository.id, 0),
                'commits': commit_counts.get(repository.id, 0),
                'lastJobStatus': latest.status if latest else None,
            })
        return results

    def get_recent_batches(self, limit: int = 50) -> List[Dict]:
        """Get the most recent batch executions."""
        batches = self.session.query(BatchExecution).order_by(
            desc(BatchExecution.started_at), desc(BatchExecution.id)
        ).limit(limit).all()
        return [batch_to_dict(batch) for batch in batches]
