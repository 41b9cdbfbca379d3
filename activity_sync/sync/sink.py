"""
Activity Sink Module
Bulk, idempotent upserts of activity payloads posted by a remote sync worker.

Payload fields use API (camelCase) names. Actors are tagged explicitly:
``{"kind": "developer", "developerId": 12}`` for an already resolved developer,
``{"kind": "external", "externalId": ..., "login": ..., "email": ..., "name": ...}``
for an identity that still needs resolution.
"""

from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from activity_sync.database.models import Developer, PullRequest, Repository
from activity_sync.sync.identity import Actor, ExternalIdentity, ResolvedDeveloper
from activity_sync.sync.reconciler import Reconciler
from activity_sync.sync.transform import MappedRecord, PR_STATUS_MAP
from activity_sync.utils.helpers import parse_datetime, sanitize_string
from activity_sync.utils.logger import get_logger

logger = get_logger(__name__)

REVIEW_STATUSES = ('approved', 'approved_with_suggestions', 'waiting_for_author', 'rejected', 'no_response')


def actor_from_payload(actor: Optional[Dict]) -> Optional[Actor]:
    """
    Parse a tagged actor.

    Raises:
        ValueError: On an unknown kind or a missing developer id
    """
    if actor is None:
        return None
    if not isinstance(actor, dict):
        raise ValueError("actor must be an object")

    kind = actor.get('kind')
    if kind == 'developer':
        developer_id = actor.get('developerId')
        if not isinstance(developer_id, int):
            raise ValueError("developer actor requires an integer developerId")
        return ResolvedDeveloper(developer_id=developer_id)
    if kind == 'external':
        return ExternalIdentity(
            external_id=actor.get('externalId'),
            login=actor.get('login'),
            email=actor.get('email'),
            display_name=actor.get('name')
        )
    raise ValueError(f"Unknown actor kind: {kind}")


def _required(item: Dict, key: str):
    value = item.get(key)
    if value is None or value == '':
        raise ValueError(f"{key} is required")
    return value


def _date(item: Dict, key: str, required: bool = False):
    raw = item.get(key)
    if raw is None:
        if required:
            raise ValueError(f"{key} is required")
        return None
    parsed = parse_datetime(raw)
    if parsed is None:
        raise ValueError(f"{key} is not a valid datetime")
    return parsed


def _first_line(error: Exception) -> str:
    # Database errors carry the statement and parameters on later lines
    text = str(error).strip()
    return text.splitlines()[0][:500] if text else error.__class__.__name__


class ActivitySink:
    """Validates payloads and feeds them to the reconciler one item at a time."""

    ENTITY_TYPES = ('pull_request', 'commit', 'review', 'comment')

    def __init__(self, db, reconciler: Optional[Reconciler] = None):
        self.db = db
        self.reconciler = reconciler or Reconciler()

    def bulk_upsert(self, entity_type: str, items: List[Dict]) -> Dict:
        """
        Upsert a list of payloads; a bad item does not affect the others.

        Returns:
            Dict with 'total', 'processed' and 'errors'
        """
        if entity_type not in self.ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type}")
        if not isinstance(items, list):
            raise ValueError("Payload must be a list")

        processed = 0
        errors = []
        for index, item in enumerate(items):
            try:
                if not isinstance(item, dict):
                    raise ValueError("item must be an object")
                with self.db.session_scope() as session:
                    self._upsert_item(session, entity_type, item)
                processed += 1
            except (ValueError, LookupError, TypeError, SQLAlchemyError) as e:
                if isinstance(e, SQLAlchemyError):
                    logger.warning(f"Bulk {entity_type} item {index} rejected by the database: {e}")
                errors.append({
                    'index': index,
                    'externalId': item.get('externalId') if isinstance(item, dict) else None,
                    'error': _first_line(e)
                })

        if errors:
            logger.warning(f"Bulk {entity_type} upsert: {len(errors)} of {len(items)} items rejected")
        return {'total': len(items), 'processed': processed, 'errors': errors}

    def _upsert_item(self, session: Session, entity_type: str, item: Dict) -> None:
        external_id = str(_required(item, 'externalId'))

        if entity_type in ('pull_request', 'commit'):
            repository_id = self._repository_id(session, item)
            parent_key = {'repository_id': repository_id}
        else:
            parent_key = {'pull_request_id': self._pull_request_id(session, item)}

        builder = getattr(self, f"_{entity_type}_record")
        record = builder(external_id, item)
        if isinstance(record.actor, ResolvedDeveloper) and session.get(Developer, record.actor.developer_id) is None:
            raise LookupError(f"Developer {record.actor.developer_id} not found")
        self.reconciler.upsert_record(session, entity_type, parent_key, record)

    @staticmethod
    def _repository_id(session: Session, item: Dict) -> int:
        repository_id = _required(item, 'repositoryId')
        if session.get(Repository, repository_id) is None:
            raise LookupError(f"Repository {repository_id} not found")
        return repository_id

    def _pull_request_id(self, session: Session, item: Dict) -> int:
        if item.get('pullRequestId') is not None:
            pull_request = session.get(PullRequest, item['pullRequestId'])
        else:
            repository_id = self._repository_id(session, item)
            pull_request = session.query(PullRequest).filter(
                PullRequest.external_id == str(_required(item, 'pullRequestExternalId')),
                PullRequest.repository_id == repository_id
            ).first()

        if pull_request is None:
            raise LookupError("Pull request not found")
        return pull_request.id

    @staticmethod
    def _pull_request_record(external_id: str, item: Dict) -> MappedRecord:
        status = _required(item, 'status')
        status = PR_STATUS_MAP.get(status, status)
        if status not in ('active', 'completed', 'closed'):
            raise ValueError(f"Invalid pull request status: {status}")

        return MappedRecord(
            external_id=external_id,
            actor=actor_from_payload(item.get('author')),
            fields={
                'title': sanitize_string(_required(item, 'title'), 1000),
                'description': sanitize_string(item.get('description')),
                'status': status,
                'source_branch': item.get('sourceBranch'),
                'target_branch': item.get('targetBranch'),
                'is_draft': bool(item.get('isDraft', False)),
                'created_date': _date(item, 'createdDate', required=True),
                'closed_date': _date(item, 'closedDate'),
                'merged_date': _date(item, 'mergedDate'),
                'first_review_date': _date(item, 'firstReviewDate'),
            }
        )

    @staticmethod
    def _commit_record(external_id: str, item: Dict) -> MappedRecord:
        return MappedRecord(
            external_id=external_id,
            actor=actor_from_payload(item.get('author')),
            fields={
                'message': sanitize_string(item.get('message')),
                'committed_date': _date(item, 'committedDate', required=True),
                'additions': int(item.get('additions') or 0),
                'deletions': int(item.get('deletions') or 0),
                'edits': int(item.get('edits') or 0),
            }
        )

    @staticmethod
    def _review_record(external_id: str, item: Dict) -> MappedRecord:
        status = _required(item, 'status')
        if status not in REVIEW_STATUSES:
            raise ValueError(f"Invalid review status: {status}")

        return MappedRecord(
            external_id=external_id,
            actor=actor_from_payload(item.get('reviewer')),
            fields={
                'status': status,
                'is_required': bool(item.get('isRequired', False)),
                'submitted_date': _date(item, 'submittedDate'),
            }
        )

    @staticmethod
    def _comment_record(external_id: str, item: Dict) -> MappedRecord:
        return MappedRecord(
            external_id=external_id,
            actor=actor_from_payload(item.get('author')),
            fields={
                'content': sanitize_string(item.get('content')),
                'created_date': _date(item, 'createdDate', required=True),
                'updated_date': _date(item, 'updatedDate'),
            }
        )
