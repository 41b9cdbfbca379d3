"""
Shared Test Fixtures
Temporary SQLite databases, a scripted platform client and payload builders.
"""

import os
import shutil
import tempfile
import threading
import unittest
from datetime import datetime
from typing import Dict, List, Optional

from activity_sync.database.connection import DatabaseConnection
from activity_sync.database.models import Repository


class DatabaseTestCase(unittest.TestCase):
    """Test case with a fresh file-backed SQLite database per test."""

    def setUp(self):
        self._tmpdir = tempfile.mkdtemp(prefix='activity_sync_test_')
        self.db = DatabaseConnection(f"sqlite:///{os.path.join(self._tmpdir, 'test.db')}")
        self.db.create_schema()

    def tearDown(self):
        self.db.dispose()
        shutil.rmtree(self._tmpdir, ignore_errors=True)

    def add_repository(self, name: str = 'web-app', credential: Optional[str] = 'pat-token',
                       last_sync_at=None, enabled: bool = True) -> int:
        with self.db.session_scope() as session:
            repository = Repository(
                name=name,
                organization='contoso',
                project='platform',
                base_url='https://dev.azure.com',
                encrypted_credential=credential,
                last_sync_at=last_sync_at,
                enabled=enabled
            )
            session.add(repository)
            session.flush()
            return repository.id


class FakeClock:
    """Controllable seconds clock whose sleep advances time."""

    def __init__(self, now: float = 1000.0):
        self.now = now
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class MovingClock:
    """Datetime clock for lease stores, moved by hand."""

    def __init__(self):
        self.now = datetime(2026, 3, 2, 12, 0, 0)

    def __call__(self):
        return self.now


class FakePlatformClient:
    """
    Scripted platform client.

    Pages are served by ``skip // top``; queued ``failures`` are raised by the
    next fetch calls in order.
    """

    def __init__(self, pr_pages: List[List[Dict]] = None, commit_pages: List[List[Dict]] = None,
                 threads: Dict = None, failures: List[Exception] = None):
        self.pr_pages = list(pr_pages or [])
        self.commit_pages = list(commit_pages or [])
        self.threads = threads or {}
        self.failures = list(failures or [])
        self.calls: List[tuple] = []
        self.closed = False
        self.on_pull_requests_page = None
        self._lock = threading.Lock()

    def _next_failure(self) -> None:
        with self._lock:
            failure = self.failures.pop(0) if self.failures else None
        if failure is not None:
            raise failure

    @staticmethod
    def _page(pages: List[List[Dict]], skip: int, top: int) -> List[Dict]:
        index = skip // top
        return list(pages[index]) if index < len(pages) else []

    def fetch_pull_requests_page(self, skip=0, top=100, since=None, until=None):
        self.calls.append(('pull_requests', skip, since, until))
        if self.on_pull_requests_page:
            self.on_pull_requests_page(skip)
        self._next_failure()
        return self._page(self.pr_pages, skip, top)

    def fetch_commits_page(self, skip=0, top=100, since=None, until=None):
        self.calls.append(('commits', skip, since, until))
        self._next_failure()
        return self._page(self.commit_pages, skip, top)

    def fetch_pull_request_threads(self, pull_request_id):
        self.calls.append(('threads', pull_request_id))
        return list(self.threads.get(pull_request_id, []))

    def close(self):
        self.closed = True


def identity(identity_id: str = 'dev-1', name: str = 'Ada Lovelace',
             unique_name: str = 'ada@contoso.com') -> Dict:
    return {'id': identity_id, 'displayName': name, 'uniqueName': unique_name}


def make_pull_request(pr_id: int, target: str = 'refs/heads/main', status: str = 'active',
                      author: Dict = None, created: str = '2026-03-02T09:00:00Z',
                      closed: str = None, reviewers: List[Dict] = None) -> Dict:
    payload = {
        'pullRequestId': pr_id,
        'title': f"Change {pr_id}",
        'description': 'Details',
        'status': status,
        'sourceRefName': f"refs/heads/feature/{pr_id}",
        'targetRefName': target,
        'isDraft': False,
        'creationDate': created,
        'createdBy': author or identity(),
        'reviewers': reviewers or [],
    }
    if closed:
        payload['closedDate'] = closed
    return payload


def make_commit(commit_id: str, email: str = 'ada@contoso.com',
                date: str = '2026-03-02T10:00:00Z') -> Dict:
    return {
        'commitId': commit_id,
        'comment': f"Commit {commit_id}",
        'author': {'name': 'Ada Lovelace', 'email': email, 'date': date},
        'changeCounts': {'Add': 2, 'Edit': 1, 'Delete': 0},
    }
