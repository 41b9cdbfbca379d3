"""
Unit Tests for Payload Mapping
Tests each mapper with sample platform payloads.
"""

import unittest
from datetime import datetime

from activity_sync.sync.transform import (
    actor_from_git_user, actor_from_identity, first_review_date, is_target_branch,
    map_commit, map_pull_request, map_reviews, map_thread_comments
)
from tests.support import identity, make_commit, make_pull_request


def vote_thread(voter_id: str, published: str) -> dict:
    return {
        'id': 90,
        'properties': {'CodeReviewThreadType': {'$value': 'VoteUpdate'}},
        'comments': [{'id': 1, 'commentType': 'system', 'author': {'id': voter_id},
                      'publishedDate': published}],
    }


class TestPullRequestMapping(unittest.TestCase):
    """Test pull request payload mapping."""

    def test_completed_pull_request(self):
        payload = make_pull_request(7, status='completed', closed='2026-03-04T09:00:00Z')

        record = map_pull_request(payload)

        self.assertEqual(record.external_id, '7')
        self.assertEqual(record.fields['status'], 'completed')
        self.assertEqual(record.fields['target_branch'], 'main')
        self.assertEqual(record.fields['source_branch'], 'feature/7')
        self.assertEqual(record.fields['created_date'], datetime(2026, 3, 2, 9, 0))
        self.assertEqual(record.fields['merged_date'], datetime(2026, 3, 4, 9, 0))
        self.assertEqual(record.actor.external_id, 'dev-1')
        self.assertEqual(record.actor.email, 'ada@contoso.com')

    def test_abandoned_pull_request_is_closed_not_merged(self):
        record = map_pull_request(make_pull_request(8, status='abandoned', closed='2026-03-04T09:00:00Z'))

        self.assertEqual(record.fields['status'], 'closed')
        self.assertIsNone(record.fields['merged_date'])
        self.assertIsNotNone(record.fields['closed_date'])

    def test_first_review_ignores_author(self):
        threads = [
            {'id': 1, 'comments': [{'id': 1, 'author': {'id': 'dev-1'}, 'publishedDate': '2026-03-02T10:00:00Z'}]},
            vote_thread('dev-2', '2026-03-02T15:00:00Z'),
        ]

        self.assertEqual(first_review_date(threads, 'dev-1'), datetime(2026, 3, 2, 15, 0))

    def test_target_branches(self):
        targets = ['main', 'maintenance/']

        self.assertTrue(is_target_branch('refs/heads/main', targets))
        self.assertTrue(is_target_branch('refs/heads/maintenance/1.2', targets))
        self.assertFalse(is_target_branch('refs/heads/mainline', targets))
        self.assertFalse(is_target_branch(None, targets))


class TestReviewAndCommentMapping(unittest.TestCase):

    def test_reviews_skip_groups_and_map_votes(self):
        reviewers = [
            dict(identity('dev-2', 'Bob', 'bob@contoso.com'), vote=10, isRequired=True),
            dict(identity('dev-3', 'Cy', 'cy@contoso.com'), vote=-5),
            dict(identity('team-1', 'Team', 'team'), vote=0, isContainer=True),
            dict(identity('dev-4', 'Di', 'di@contoso.com'), vote=0),
        ]
        payload = make_pull_request(9, reviewers=reviewers)

        reviews = map_reviews(payload, [vote_thread('dev-2', '2026-03-03T08:00:00Z')])

        self.assertEqual([r.external_id for r in reviews], ['dev-2', 'dev-3', 'dev-4'])
        self.assertEqual([r.fields['status'] for r in reviews],
                         ['approved', 'waiting_for_author', 'no_response'])
        self.assertTrue(reviews[0].fields['is_required'])
        self.assertEqual(reviews[0].fields['submitted_date'], datetime(2026, 3, 3, 8, 0))
        self.assertIsNone(reviews[1].fields['submitted_date'])

    def test_comments_skip_deleted_and_system(self):
        threads = [
            {'id': 5, 'comments': [
                {'id': 1, 'content': 'Looks good', 'author': identity('dev-2'),
                 'publishedDate': '2026-03-02T11:00:00Z'},
                {'id': 2, 'content': 'gone', 'isDeleted': True, 'author': identity('dev-2'),
                 'publishedDate': '2026-03-02T11:05:00Z'},
                {'id': 3, 'content': 'policy', 'commentType': 'system', 'author': identity('dev-2'),
                 'publishedDate': '2026-03-02T11:06:00Z'},
            ]},
            {'id': 6, 'isDeleted': True, 'comments': [
                {'id': 1, 'content': 'old', 'author': identity('dev-2'), 'publishedDate': '2026-03-02T11:00:00Z'},
            ]},
        ]

        comments = map_thread_comments(threads)

        self.assertEqual([c.external_id for c in comments], ['5:1'])
        self.assertEqual(comments[0].fields['content'], 'Looks good')


class TestCommitMapping(unittest.TestCase):

    def test_commit(self):
        record = map_commit(make_commit('abc123'))

        self.assertEqual(record.external_id, 'abc123')
        self.assertEqual(record.fields['committed_date'], datetime(2026, 3, 2, 10, 0))
        self.assertEqual((record.fields['additions'], record.fields['edits']), (2, 1))
        self.assertEqual(record.actor.email, 'ada@contoso.com')

    def test_actors_from_empty_payloads(self):
        self.assertIsNone(actor_from_identity(None))
        self.assertIsNone(actor_from_git_user({}))


if __name__ == '__main__':
    unittest.main()
