"""
Transformation Module
Maps raw platform payloads to reconciler inputs.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from activity_sync.sync.identity import ExternalIdentity
from activity_sync.utils.helpers import parse_datetime, safe_get, sanitize_string, strip_ref_prefix

PR_STATUS_MAP = {
    'active': 'active',
    'abandoned': 'closed',
    'completed': 'completed',
}

VOTE_STATUS_MAP = {
    10: 'approved',
    5: 'approved_with_suggestions',
    -5: 'waiting_for_author',
    -10: 'rejected',
}

VOTE_THREAD_TYPE = 'VoteUpdate'


@dataclass
class MappedRecord:
    """One activity record ready for upsert."""
    external_id: str
    fields: Dict = field(default_factory=dict)
    actor: Optional[ExternalIdentity] = None


def actor_from_identity(identity: Optional[Dict]) -> Optional[ExternalIdentity]:
    """
    Build an external identity from a platform identity reference.

    ``uniqueName`` is the login; it doubles as the email when it looks like one.
    """
    if not identity:
        return None

    unique_name = identity.get('uniqueName')
    email = identity.get('mailAddress') or (unique_name if unique_name and '@' in unique_name else None)

    return ExternalIdentity(
        external_id=identity.get('id'),
        login=unique_name,
        email=email,
        display_name=identity.get('displayName')
    )


def actor_from_git_user(user: Optional[Dict]) -> Optional[ExternalIdentity]:
    """Build an external identity from a commit author/committer block."""
    if not user or not (user.get('email') or user.get('name')):
        return None

    return ExternalIdentity(
        login=user.get('email'),
        email=user.get('email'),
        display_name=user.get('name')
    )


def is_target_branch(ref_name: Optional[str], target_branches: List[str]) -> bool:
    """
    Check a PR target ref against the configured branches.

    Entries ending in '/' match as prefixes (e.g. 'maintenance/').
    """
    branch = strip_ref_prefix(ref_name)
    if not branch:
        return False

    for target in target_branches:
        if target.endswith('/'):
            if branch.startswith(target):
                return True
        elif branch == target:
            return True
    return False


def map_review_status(vote: Optional[int]) -> str:
    return VOTE_STATUS_MAP.get(vote, 'no_response')


# ========================================
# Pull Requests
# ========================================

def map_pull_request(payload: Dict, threads: Optional[List[Dict]] = None) -> MappedRecord:
    """
    Map a pull request payload.

    Args:
        payload: Pull request payload
        threads: Its comment threads, used to find the first review time

    Returns:
        Mapped record keyed by the pull request id
    """
    status = PR_STATUS_MAP.get(payload.get('status'), 'active')
    closed_date = parse_datetime(payload.get('closedDate'))
    author = actor_from_identity(payload.get('createdBy'))

    return MappedRecord(
        external_id=str(payload.get('pullRequestId')),
        actor=author,
        fields={
            'title': sanitize_string(payload.get('title'), 1000) or '(untitled)',
            'description': sanitize_string(payload.get('description')),
            'status': status,
            'source_branch': strip_ref_prefix(payload.get('sourceRefName')),
            'target_branch': strip_ref_prefix(payload.get('targetRefName')),
            'is_draft': bool(payload.get('isDraft', False)),
            'created_date': parse_datetime(payload.get('creationDate')),
            'closed_date': closed_date,
            'merged_date': closed_date if status == 'completed' else None,
            'first_review_date': first_review_date(threads or [], author.external_id if author else None),
        }
    )


def map_reviews(payload: Dict, threads: Optional[List[Dict]] = None) -> List[MappedRecord]:
    """Map the reviewers of a pull request to one review each (groups are skipped)."""
    voted_at = vote_dates(threads or [])
    reviews = []

    for reviewer in payload.get('reviewers') or []:
        if reviewer.get('isContainer') or not reviewer.get('id'):
            continue

        reviews.append(MappedRecord(
            external_id=str(reviewer['id']),
            actor=actor_from_identity(reviewer),
            fields={
                'status': map_review_status(reviewer.get('vote')),
                'is_required': bool(reviewer.get('isRequired', False)),
                'submitted_date': voted_at.get(reviewer['id']),
            }
        ))

    return reviews


def map_thread_comments(threads: List[Dict]) -> List[MappedRecord]:
    """Map human comments of PR threads; deleted and system comments are skipped."""
    comments = []

    for thread in threads:
        if thread.get('isDeleted'):
            continue

        for comment in thread.get('comments') or []:
            if comment.get('isDeleted') or comment.get('commentType') == 'system':
                continue

            created = parse_datetime(comment.get('publishedDate'))
            if created is None:
                continue

            comments.append(MappedRecord(
                external_id=f"{thread.get('id')}:{comment.get('id')}",
                actor=actor_from_identity(comment.get('author')),
                fields={
                    'content': sanitize_string(comment.get('content')),
                    'created_date': created,
                    'updated_date': parse_datetime(comment.get('lastUpdatedDate')),
                }
            ))

    return comments


def _is_vote_thread(thread: Dict) -> bool:
    return safe_get(thread, 'properties', 'CodeReviewThreadType', '$value') == VOTE_THREAD_TYPE


def vote_dates(threads: List[Dict]) -> Dict[str, datetime]:
    """Latest vote time per reviewer id, from vote-update threads."""
    dates: Dict[str, datetime] = {}

    for thread in threads:
        if not _is_vote_thread(thread):
            continue
        for comment in thread.get('comments') or []:
            voter = safe_get(comment, 'author', 'id')
            published = parse_datetime(comment.get('publishedDate'))
            if voter and published and (voter not in dates or published > dates[voter]):
                dates[voter] = published

    return dates


def first_review_date(threads: List[Dict], author_external_id: Optional[str]) -> Optional[datetime]:
    """Earliest vote or comment on a pull request by someone other than its author."""
    earliest = None

    for thread in threads:
        is_vote = _is_vote_thread(thread)
        for comment in thread.get('comments') or []:
            if not is_vote and comment.get('commentType') == 'system':
                continue
            if safe_get(comment, 'author', 'id') == author_external_id:
                continue

            published = parse_datetime(comment.get('publishedDate'))
            if published and (earliest is None or published < earliest):
                earliest = published

    return earliest


# ========================================
# Commits
# ========================================

def map_commit(payload: Dict) -> MappedRecord:
    """Map a commit payload."""
    change_counts = payload.get('changeCounts') or {}
    author = payload.get('author') or {}

    return MappedRecord(
        external_id=payload.get('commitId'),
        actor=actor_from_git_user(author),
        fields={
            'message': sanitize_string(payload.get('comment')),
            'committed_date': parse_datetime(author.get('date') or safe_get(payload, 'committer', 'date')),
            'additions': change_counts.get('Add', 0),
            'deletions': change_counts.get('Delete', 0),
            'edits': change_counts.get('Edit', 0),
        }
    )
