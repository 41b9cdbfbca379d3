"""
SQLAlchemy ORM Models
Defines all database models for the activity sync system.

All timestamps are stored as naive UTC datetimes.
"""

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Float, ForeignKey,
    Index, Integer, String, Text, UniqueConstraint, text
)
from sqlalchemy.orm import declarative_base, relationship

from activity_sync.utils.helpers import utcnow

Base = declarative_base()


# ============================================
# REPOSITORY & SYNC TRACKING MODELS
# ============================================

class Repository(Base):
    """Source-control repository registered for synchronization."""
    __tablename__ = 'repositories'

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    organization = Column(String(255), nullable=False)
    project = Column(String(255), nullable=False)
    base_url = Column(String(500), nullable=False)
    encrypted_credential = Column(Text)
    last_sync_at = Column(DateTime)  # incremental window boundary
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('organization', 'project', 'name', name='uq_repository_org_project_name'),
    )

    sync_jobs = relationship("SyncJob", back_populates="repository", cascade="all, delete-orphan")
    pull_requests = relationship("PullRequest", back_populates="repository", cascade="all, delete-orphan")
    commits = relationship("Commit", back_populates="repository", cascade="all, delete-orphan")


class SyncJob(Base):
    """One orchestrator run for one repository."""
    __tablename__ = 'sync_jobs'

    id = Column(Integer, primary_key=True)
    repository_id = Column(Integer, ForeignKey('repositories.id', ondelete='CASCADE'), nullable=False)
    batch_id = Column(String(64))
    status = Column(String(20), nullable=False, default='pending')  # pending, running, completed, failed, cancelled
    sync_type = Column(String(20), nullable=False, default='incremental')  # full, incremental
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    error = Column(Text)
    records_processed = Column(Integer, default=0)
    records_created = Column(Integer, default=0)
    records_updated = Column(Integer, default=0)
    duration_ms = Column(Integer)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_sync_job_repo_started', 'repository_id', 'started_at'),
    )

    repository = relationship("Repository", back_populates="sync_jobs")

    TERMINAL_STATUSES = ('completed', 'failed', 'cancelled')

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES


class SchedulerStateRecord(Base):
    """Singleton row holding the shared scheduler state."""
    __tablename__ = 'scheduler_state'

    id = Column(Integer, primary_key=True)
    is_running = Column(Boolean, nullable=False, default=False)
    last_run_at = Column(DateTime)
    next_run_at = Column(DateTime)
    current_batch_id = Column(String(64))
    total_repos_processed = Column(Integer, default=0)
    successful_syncs = Column(Integer, default=0)
    failed_syncs = Column(Integer, default=0)
    last_error = Column(Text)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class SyncSettings(Base):
    """Singleton row holding the runtime scheduler configuration."""
    __tablename__ = 'sync_settings'

    id = Column(Integer, primary_key=True)
    enabled = Column(Boolean, nullable=False, default=True)
    interval_minutes = Column(Integer, nullable=False)
    max_concurrent_repos = Column(Integer, nullable=False)
    delay_between_repos_seconds = Column(Float, nullable=False)
    max_retries = Column(Integer, nullable=False)
    retry_delay_minutes = Column(Float, nullable=False)
    notification_enabled = Column(Boolean, nullable=False, default=True)
    notification_recipients = Column(JSON, default=list)
    rate_limit_per_minute = Column(Integer, nullable=False)
    burst_limit = Column(Integer, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class NotificationSettings(Base):
    """Singleton row holding the notification delivery settings."""
    __tablename__ = 'notification_settings'

    id = Column(Integer, primary_key=True)
    slack_webhook_url = Column(String(500))
    failure_threshold = Column(Integer, nullable=False)
    success_notifications = Column(Boolean, nullable=False, default=False)
    repository_failure_threshold = Column(Integer, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class BatchExecution(Base):
    """Outcome log of one scheduler batch."""
    __tablename__ = 'batch_executions'

    id = Column(Integer, primary_key=True)
    batch_id = Column(String(64), nullable=False, unique=True)
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime)
    repos_processed = Column(Integer, default=0)
    successful_syncs = Column(Integer, default=0)
    failed_syncs = Column(Integer, default=0)
    deferred_syncs = Column(Integer, default=0)
    error = Column(Text)


# ============================================
# COORDINATION MODELS
# ============================================

class SyncLease(Base):
    """Exclusive, time-bounded claim on a resource (one row per key)."""
    __tablename__ = 'sync_leases'

    resource_key = Column(String(255), primary_key=True)
    holder = Column(String(255), nullable=False)
    acquired_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)


class RateLimitState(Base):
    """Token bucket counter for an external API scope."""
    __tablename__ = 'rate_limit_states'

    scope = Column(String(255), primary_key=True)
    tokens = Column(Float, nullable=False)
    last_refill_at = Column(Float, nullable=False)  # clock seconds


# ============================================
# ACTIVITY MODELS
# ============================================

class Developer(Base):
    """Internal developer identity."""
    __tablename__ = 'developers'

    id = Column(Integer, primary_key=True)
    external_id = Column(String(255), unique=True)
    login = Column(String(255), nullable=False, unique=True)
    email = Column(String(255))
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_developer_email', 'email'),
    )


class PullRequest(Base):
    """Pull request model."""
    __tablename__ = 'pull_requests'

    id = Column(Integer, primary_key=True)
    external_id = Column(String(100), nullable=False)
    repository_id = Column(Integer, ForeignKey('repositories.id', ondelete='CASCADE'), nullable=False)
    author_id = Column(Integer, ForeignKey('developers.id'), nullable=False)

    title = Column(Text, nullable=False)
    description = Column(Text)
    status = Column(String(20), nullable=False)  # active, completed, closed
    source_branch = Column(String(500))
    target_branch = Column(String(500))
    is_draft = Column(Boolean, default=False)

    # Dates
    created_date = Column(DateTime, nullable=False)
    first_review_date = Column(DateTime)
    merged_date = Column(DateTime)
    closed_date = Column(DateTime)

    # Derived metrics, recomputed on every upsert
    cycle_time_days = Column(Float)
    review_time_days = Column(Float)
    lead_time_days = Column(Float)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('external_id', 'repository_id', name='uq_pull_request_external_repo'),
    )

    repository = relationship("Repository", back_populates="pull_requests")
    author = relationship("Developer")
    reviews = relationship("Review", back_populates="pull_request", cascade="all, delete-orphan")
    comments = relationship("Comment", back_populates="pull_request", cascade="all, delete-orphan")


class Commit(Base):
    """Commit model."""
    __tablename__ = 'commits'

    id = Column(Integer, primary_key=True)
    external_id = Column(String(100), nullable=False)  # commit hash
    repository_id = Column(Integer, ForeignKey('repositories.id', ondelete='CASCADE'), nullable=False)
    author_id = Column(Integer, ForeignKey('developers.id'), nullable=False)
    message = Column(Text)
    committed_date = Column(DateTime, nullable=False)
    additions = Column(Integer, default=0)
    deletions = Column(Integer, default=0)
    edits = Column(Integer, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('external_id', 'repository_id', name='uq_commit_external_repo'),
    )

    repository = relationship("Repository", back_populates="commits")
    author = relationship("Developer")


class Review(Base):
    """Pull request review (one per reviewer)."""
    __tablename__ = 'reviews'

    id = Column(Integer, primary_key=True)
    external_id = Column(String(255), nullable=False)  # reviewer identity id
    pull_request_id = Column(Integer, ForeignKey('pull_requests.id', ondelete='CASCADE'), nullable=False)
    reviewer_id = Column(Integer, ForeignKey('developers.id'), nullable=False)
    status = Column(String(50), nullable=False)  # approved, approved_with_suggestions, waiting_for_author, rejected, no_response
    is_required = Column(Boolean, default=False)
    submitted_date = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('external_id', 'pull_request_id', name='uq_review_external_pr'),
    )

    pull_request = relationship("PullRequest", back_populates="reviews")
    reviewer = relationship("Developer")


class Comment(Base):
    """Pull request thread comment."""
    __tablename__ = 'comments'

    id = Column(Integer, primary_key=True)
    external_id = Column(String(100), nullable=False)  # "threadId:commentId"
    pull_request_id = Column(Integer, ForeignKey('pull_requests.id', ondelete='CASCADE'), nullable=False)
    author_id = Column(Integer, ForeignKey('developers.id'), nullable=False)
    content = Column(Text)
    created_date = Column(DateTime, nullable=False)
    updated_date = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('external_id', 'pull_request_id', name='uq_comment_external_pr'),
    )

    pull_request = relationship("PullRequest", back_populates="comments")
    author = relationship("Developer")


# ============================================
# NOTIFICATION MODELS
# ============================================

class Notification(Base):
    """User-facing notification."""
    __tablename__ = 'notifications'

    id = Column(Integer, primary_key=True)
    type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default='unread')  # unread, read, action_taken
    target_entity_id = Column(String(100), nullable=False)
    recipient_id = Column(String(255), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text)
    meta = Column('metadata', JSON, default=dict)
    read_at = Column(DateTime)
    action_taken_at = Column(DateTime)
    action_taken_by = Column(String(255))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        # At most one unresolved notification per (type, target, recipient)
        Index(
            'uq_notification_unread_target',
            'type', 'target_entity_id', 'recipient_id',
            unique=True,
            sqlite_where=text("status = 'unread'"),
            postgresql_where=text("status = 'unread'")
        ),
        Index('idx_notification_recipient_status', 'recipient_id', 'status'),
    )


class AccessRequest(Base):
    """Request for access that a single approver resolves."""
    __tablename__ = 'access_requests'

    id = Column(Integer, primary_key=True)
    requester = Column(String(255), nullable=False)
    resource = Column(String(255), nullable=False)
    reason = Column(Text)
    status = Column(String(20), nullable=False, default='pending')  # pending, approved
    approved_by = Column(String(255))
    approved_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
