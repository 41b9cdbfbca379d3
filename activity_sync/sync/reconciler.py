"""
Reconciler Module
Idempotent upserts of activity records keyed by natural key.

Every write recomputes the derived duration metrics from the record's own
timestamps, so replaying the same input leaves the stored state unchanged
apart from bookkeeping columns.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from activity_sync.database.models import Comment, Commit, PullRequest, Review
from activity_sync.sync.identity import IdentityResolver
from activity_sync.sync.transform import MappedRecord
from activity_sync.utils.helpers import days_between
from activity_sync.utils.logger import get_logger

logger = get_logger(__name__)

# entity type -> (model, natural key columns, required fields, actor column)
ENTITY_TYPES = {
    'pull_request': (PullRequest, ('external_id', 'repository_id'), ('title', 'status', 'created_date'), 'author_id'),
    'commit': (Commit, ('external_id', 'repository_id'), ('committed_date',), 'author_id'),
    'review': (Review, ('external_id', 'pull_request_id'), ('status',), 'reviewer_id'),
    'comment': (Comment, ('external_id', 'pull_request_id'), ('created_date',), 'author_id'),
}


@dataclass
class UpsertResult:
    """Outcome of one upsert."""
    created: bool
    record_id: int


@dataclass
class ReconcileStats:
    """Counters for a reconciled page."""
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0

    def add(self, result: UpsertResult) -> None:
        self.processed += 1
        if result.created:
            self.created += 1
        else:
            self.updated += 1

    def merge(self, other: 'ReconcileStats') -> None:
        self.processed += other.processed
        self.created += other.created
        self.updated += other.updated
        self.skipped += other.skipped


def apply_derived_metrics(record) -> None:
    """Recompute duration metrics of a pull request from its timestamps."""
    if not isinstance(record, PullRequest):
        return
    record.cycle_time_days = days_between(record.created_date, record.closed_date)
    record.review_time_days = days_between(record.created_date, record.first_review_date)
    record.lead_time_days = days_between(record.created_date, record.merged_date)


class Reconciler:
    """Turns mapped activity records into idempotent local upserts."""

    def __init__(self, identity_resolver: Optional[IdentityResolver] = None):
        self.identity = identity_resolver or IdentityResolver()

    def upsert(self, session: Session, entity_type: str, natural_key: Dict, fields: Dict) -> UpsertResult:
        """
        Insert or update one record by natural key.

        Args:
            session: Open session of the caller's transaction
            entity_type: One of 'pull_request', 'commit', 'review', 'comment'
            natural_key: Values of the natural key columns
            fields: Remaining column values

        Returns:
            UpsertResult telling whether a row was created

        Raises:
            ValueError: For an unknown entity type, an incomplete key or missing required fields
        """
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type}")

        model, key_columns, required, _ = ENTITY_TYPES[entity_type]
        missing_key = [c for c in key_columns if natural_key.get(c) is None]
        if missing_key:
            raise ValueError(f"{entity_type} natural key is missing {', '.join(missing_key)}")

        existing = self._find(session, model, natural_key)
        if existing is not None:
            self._update(existing, fields)
            session.flush()
            return UpsertResult(created=False, record_id=existing.id)

        missing = [f for f in required if fields.get(f) is None]
        if missing:
            raise ValueError(f"{entity_type} {natural_key.get('external_id')} is missing {', '.join(missing)}")

        record = model(**natural_key, **fields)
        apply_derived_metrics(record)
        try:
            with session.begin_nested():
                session.add(record)
                session.flush()
            return UpsertResult(created=True, record_id=record.id)
        except IntegrityError:
            # A concurrent writer inserted the same natural key first
            existing = self._find(session, model, natural_key)
            if existing is None:
                raise
            logger.debug(f"Upsert conflict on {entity_type} {natural_key}, updating existing row")
            self._update(existing, fields)
            session.flush()
            return UpsertResult(created=False, record_id=existing.id)

    @staticmethod
    def _find(session: Session, model, natural_key: Dict):
        return session.query(model).filter_by(**natural_key).first()

    @staticmethod
    def _update(record, fields: Dict) -> None:
        for name, value in fields.items():
            if getattr(record, name) != value:
                setattr(record, name, value)
        apply_derived_metrics(record)

    # ========================================
    # Record helpers
    # ========================================

    def upsert_record(self, session: Session, entity_type: str, parent_key: Dict,
                      record: MappedRecord) -> UpsertResult:
        """Resolve the record's actor and upsert it under its parent scope."""
        actor_column = ENTITY_TYPES[entity_type][3]
        fields = dict(record.fields)
        fields[actor_column] = self.identity.resolve_actor(session, record.actor)

        natural_key = dict(parent_key)
        natural_key['external_id'] = record.external_id
        return self.upsert(session, entity_type, natural_key, fields)

    def _upsert_many(self, session: Session, entity_type: str, parent_key: Dict,
                     records: Iterable[MappedRecord], stats: ReconcileStats) -> None:
        for record in records:
            try:
                stats.add(self.upsert_record(session, entity_type, parent_key, record))
            except ValueError as e:
                stats.skipped += 1
                logger.error(f"Skipping {entity_type} {record.external_id}: {e}")

    def reconcile_pull_request(
        self,
        session: Session,
        repository_id: int,
        pull_request: MappedRecord,
        reviews: List[MappedRecord],
        comments: List[MappedRecord]
    ) -> ReconcileStats:
        """
        Upsert a pull request together with its reviews and comments.

        Returns:
            Stats over all upserted records
        """
        stats = ReconcileStats()
        try:
            result = self.upsert_record(session, 'pull_request', {'repository_id': repository_id}, pull_request)
        except ValueError as e:
            stats.skipped += 1
            logger.error(f"Skipping pull request {pull_request.external_id}: {e}")
            return stats

        stats.add(result)
        child_key = {'pull_request_id': result.record_id}
        self._upsert_many(session, 'review', child_key, reviews, stats)
        self._upsert_many(session, 'comment', child_key, comments, stats)
        return stats

    def reconcile_commits(self, session: Session, repository_id: int,
                          commits: Iterable[MappedRecord]) -> ReconcileStats:
        """Upsert a page of commits."""
        stats = ReconcileStats()
        self._upsert_many(session, 'commit', {'repository_id': repository_id}, commits, stats)
        return stats
