"""
Unit Tests for the Runtime Configuration and the Platform Client
"""

import os
import shutil
import tempfile
import unittest
from datetime import datetime
from unittest.mock import Mock, patch

import requests

from activity_sync.config_manager import ConfigManager, parse_flag, substitute_env_vars
from activity_sync.platform_client import PlatformAPIError, PlatformAuthError, PlatformClient
from activity_sync.sync.config_service import ConfigService, SchedulerConfig
from activity_sync.sync.errors import ConfigValidationError
from tests.support import DatabaseTestCase


class TestConfigManager(unittest.TestCase):
    """Test YAML loading with environment substitution."""

    YAML = (
        "scheduler:\n"
        "  enabled: ${TEST_SCHEDULER_ENABLED:-true}\n"
        "  autostart: ${TEST_AUTOSTART:-}\n"
        "security:\n"
        "  api_keys: ${TEST_API_KEYS:-}\n"
        "platform:\n"
        "  base_url: ${TEST_BASE_URL}\n"
    )

    def setUp(self):
        self._tmpdir = tempfile.mkdtemp(prefix='activity_sync_config_')
        with open(os.path.join(self._tmpdir, 'config.yaml'), 'w', encoding='utf-8') as f:
            f.write(self.YAML)

    def tearDown(self):
        ConfigManager().reload()
        shutil.rmtree(self._tmpdir, ignore_errors=True)

    def load(self, **env):
        env['CONFIG_DIR'] = self._tmpdir
        with patch.dict(os.environ, env):
            os.environ.pop('TEST_BASE_URL', None)
            config = ConfigManager()
            config.reload()
        return config

    def test_defaults_and_flags(self):
        config = self.load()

        self.assertTrue(config.get_flag('scheduler', 'enabled'))
        self.assertFalse(config.get_flag('scheduler', 'autostart'))
        self.assertTrue(config.get_flag('scheduler', 'missing', default=True))
        self.assertEqual(config.get_api_keys(), [])
        self.assertEqual(config.get_platform_config()['base_url'], '${TEST_BASE_URL}')
        self.assertEqual(config.get_target_branches(), ['master', 'main', 'maintenance/'])

    def test_environment_overrides(self):
        config = self.load(TEST_SCHEDULER_ENABLED='false', TEST_AUTOSTART='yes', TEST_API_KEYS='alpha, beta,')

        self.assertFalse(config.get_flag('scheduler', 'enabled', default=True))
        self.assertTrue(config.get_flag('scheduler', 'autostart'))
        self.assertEqual(config.get_api_keys(), ['alpha', 'beta'])

    def test_substitution(self):
        with patch.dict(os.environ, {'TEST_HOST': 'db.internal'}):
            self.assertEqual(
                substitute_env_vars('host: ${TEST_HOST} port: ${TEST_PORT:-5432} x: ${TEST_UNSET}'),
                'host: db.internal port: 5432 x: ${TEST_UNSET}'
            )

    def test_parse_flag(self):
        self.assertTrue(parse_flag('On'))
        self.assertFalse(parse_flag('0'))
        self.assertTrue(parse_flag('', default=True))
        self.assertFalse(parse_flag(False, default=True))



class TestConfigService(DatabaseTestCase):
    """Test persisted scheduler configuration."""

    def setUp(self):
        super().setUp()
        self.service = ConfigService(self.db, defaults=SchedulerConfig(interval_minutes=15))

    def test_seeds_from_defaults(self):
        config = self.service.get_config()

        self.assertEqual(config.interval_minutes, 15)
        self.assertEqual(config.to_dict()['intervalMinutes'], 15)

    def test_update_is_persisted(self):
        self.service.update_config({'maxRetries': 5, 'notificationRecipients': ['ops@contoso.com']})

        reloaded = ConfigService(self.db, defaults=SchedulerConfig()).get_config()
        self.assertEqual(reloaded.max_retries, 5)
        self.assertEqual(reloaded.notification_recipients, ['ops@contoso.com'])
        self.assertEqual(reloaded.interval_minutes, 15)

    def test_validation_errors(self):
        """Test that every invalid field is reported and nothing is saved."""
        with self.assertRaises(ConfigValidationError) as ctx:
            self.service.update_config({
                'intervalMinutes': 0,
                'maxConcurrentRepos': 'five',
                'enabled': 'yes',
                'delayBetweenReposSeconds': -1,
            })

        self.assertEqual(len(ctx.exception.errors), 4)
        self.assertEqual(self.service.get_config().interval_minutes, 15)

    def test_retry_wait_must_fit_in_lease(self):
        """Test that a single retry wait as long as the sync lease is rejected."""
        service = ConfigService(self.db, defaults=SchedulerConfig(max_retries=3), lease_ttl_seconds=600)

        with self.assertRaises(ConfigValidationError) as ctx:
            service.update_config({'retryDelayMinutes': 15})
        self.assertIn('sync lease', ctx.exception.errors[0])

        # Waits of 60+120+240+480s outlast the lease in total; each one fits
        updated = service.update_config({'maxRetries': 4, 'retryDelayMinutes': 1})
        self.assertEqual(updated.max_retries, 4)

    def test_non_object_update(self):
        with self.assertRaises(ConfigValidationError):
            self.service.update_config(['intervalMinutes'])

    def test_recipients_must_be_strings(self):
        with self.assertRaises(ConfigValidationError):
            self.service.update_config({'notificationRecipients': ['ops', '']})


class TestPlatformClient(unittest.TestCase):
    """Test request building and error mapping with a mocked session."""

    def setUp(self):
        self.client = PlatformClient(
            'https://dev.azure.com/', 'contoso', 'platform', 'web-app', 'pat-token', page_size=50
        )
        self.session = Mock()
        self.client._session = self.session

    def respond(self, status_code=200, payload=None, text='{}'):
        response = Mock(status_code=status_code, text=text)
        response.json.return_value = payload if payload is not None else {}
        self.session.request.return_value = response

    def test_pull_requests_page_params(self):
        self.respond(payload={'value': [{'pullRequestId': 1}], 'count': 1})

        page = self.client.fetch_pull_requests_page(
            skip=100, top=50, since=datetime(2026, 3, 1, 8, 30), until=datetime(2026, 3, 2, 8, 30)
        )

        self.assertEqual(page, [{'pullRequestId': 1}])
        kwargs = self.session.request.call_args.kwargs
        self.assertEqual(
            kwargs['url'],
            'https://dev.azure.com/contoso/platform/_apis/git/repositories/web-app/pullrequests'
        )
        self.assertEqual(kwargs['params']['searchCriteria.status'], 'all')
        self.assertEqual(kwargs['params']['$skip'], 100)
        self.assertEqual(kwargs['params']['$top'], 50)
        self.assertEqual(kwargs['params']['searchCriteria.minTime'], '2026-03-01T08:30:00Z')
        self.assertEqual(kwargs['params']['api-version'], '7.1')

    def test_commits_page_without_window(self):
        self.respond(payload={'value': []})

        self.assertEqual(self.client.fetch_commits_page(), [])
        params = self.session.request.call_args.kwargs['params']
        self.assertEqual(params['searchCriteria.$top'], 50)
        self.assertNotIn('searchCriteria.fromDate', params)

    def test_auth_errors_are_not_transient(self):
        self.respond(status_code=401)

        with self.assertRaises(PlatformAuthError) as ctx:
            self.client.fetch_commits_page()
        self.assertFalse(ctx.exception.is_transient)

    def test_throttling_and_server_errors_are_transient(self):
        for status_code in (429, 500, 503):
            self.respond(status_code=status_code, text='busy')
            with self.assertRaises(PlatformAPIError) as ctx:
                self.client.fetch_pull_request_threads(1)
            self.assertTrue(ctx.exception.is_transient)
            self.assertEqual(ctx.exception.status_code, status_code)

    def test_not_found_is_permanent(self):
        self.respond(status_code=404)

        with self.assertRaises(PlatformAPIError) as ctx:
            self.client.fetch_pull_request_threads(1)
        self.assertFalse(ctx.exception.is_transient)

    def test_network_errors_are_transient(self):
        self.session.request.side_effect = requests.exceptions.Timeout('slow')

        with self.assertRaises(PlatformAPIError) as ctx:
            self.client.fetch_commits_page()
        self.assertTrue(ctx.exception.is_transient)

    def test_connection_check(self):
        self.respond(payload={'name': 'web-app'})
        self.assertTrue(self.client.test_connection())

        self.respond(status_code=403)
        self.assertFalse(self.client.test_connection())

    def test_for_repository(self):
        repository = Mock(base_url='https://example.test', organization='o', project='p')
        repository.name = 'r'

        client = PlatformClient.for_repository(repository, 'secret')

        self.assertEqual(client.repository_path, 'o/p/r')
        self.assertEqual(client.base_url, 'https://example.test')
        client.close()


if __name__ == '__main__':
    unittest.main()
