"""
Platform REST API Client Module
Handles all communication with the source-control platform REST API
(Azure DevOps Git endpoints).
"""

import time
from datetime import datetime
from typing import Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter

from activity_sync.config_manager import ConfigManager
from activity_sync.utils.logger import get_logger
from activity_sync.utils.metrics import record_platform_request, record_rate_limit

logger = get_logger(__name__)


class PlatformAPIError(Exception):
    """Custom exception for platform API errors."""

    def __init__(self, message: str, status_code: int = None, response: dict = None):
        self.message = message
        self.status_code = status_code
        self.response = response
        super().__init__(self.message)

    @property
    def is_transient(self) -> bool:
        """Network failures, timeouts, throttling and server errors are worth retrying."""
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class PlatformAuthError(PlatformAPIError):
    """Raised for 401/403 responses; retrying cannot succeed."""

    @property
    def is_transient(self) -> bool:
        return False


def _format_query_time(value: datetime) -> str:
    return value.strftime('%Y-%m-%dT%H:%M:%SZ')


class PlatformClient:
    """
    Platform REST API client for one repository.

    Every method fetches exactly one page (or one resource); the caller
    drives pagination, throttling and retries.
    """

    def __init__(
        self,
        base_url: str,
        organization: str,
        project: str,
        repository_name: str,
        token: str,
        api_version: str = '7.1',
        timeout: float = 30,
        page_size: int = 100
    ):
        """
        Initialize the client.

        Args:
            base_url: Platform base URL (e.g. https://dev.azure.com)
            organization: Organization name
            project: Project name
            repository_name: Repository name or id
            token: Personal access token
            api_version: REST API version sent with every request
            timeout: Per-request timeout in seconds
            page_size: Default page size
        """
        self.base_url = base_url.rstrip('/')
        self.organization = organization
        self.project = project
        self.repository_name = repository_name
        self.api_version = api_version
        self.timeout = timeout
        self.page_size = page_size

        self._session = self._create_session(token)

        logger.debug(f"Platform client initialized for {self.repository_path}")

    @classmethod
    def for_repository(cls, repository, token: str) -> 'PlatformClient':
        """Build a client for a stored repository using the 'platform' config section."""
        platform_config = ConfigManager().get_platform_config()
        return cls(
            base_url=repository.base_url or platform_config.get('base_url', 'https://dev.azure.com'),
            organization=repository.organization,
            project=repository.project,
            repository_name=repository.name,
            token=token,
            api_version=str(platform_config.get('api_version', '7.1')),
            timeout=platform_config.get('timeout_seconds', 30),
            page_size=platform_config.get('page_size', 100)
        )

    @property
    def repository_path(self) -> str:
        return f"{self.organization}/{self.project}/{self.repository_name}"

    def _create_session(self, token: str) -> requests.Session:
        """Create requests session with connection pooling."""
        session = requests.Session()

        # Personal access tokens use basic auth with an empty user name
        session.auth = ('', token)

        session.headers.update({
            'Accept': 'application/json',
            'Content-Type': 'application/json'
        })

        # Retries are handled by the sync engine's retry policy
        adapter = HTTPAdapter(pool_connections=4, pool_maxsize=4, max_retries=0)
        session.mount('https://', adapter)
        session.mount('http://', adapter)

        return session

    def _git_url(self, endpoint: str = '') -> str:
        url = (
            f"{self.base_url}/{self.organization}/{self.project}"
            f"/_apis/git/repositories/{self.repository_name}"
        )
        return f"{url}/{endpoint}" if endpoint else url

    def _make_request(self, method: str, url: str, params: Dict = None, endpoint: str = 'other') -> Dict:
        """
        Make HTTP request to the platform API.

        Args:
            method: HTTP method
            url: Absolute URL
            params: Query parameters
            endpoint: Metrics label of the called endpoint

        Returns:
            Response JSON

        Raises:
            PlatformAuthError: On 401/403
            PlatformAPIError: On any other failure
        """
        params = dict(params or {})
        params['api-version'] = self.api_version

        started = time.monotonic()
        try:
            response = self._session.request(
                method=method,
                url=url,
                params=params,
                timeout=self.timeout
            )
        except requests.exceptions.Timeout as e:
            record_platform_request(endpoint, 'timeout', time.monotonic() - started)
            raise PlatformAPIError(f"Request timed out: {e}")
        except requests.exceptions.RequestException as e:
            record_platform_request(endpoint, 'error', time.monotonic() - started)
            logger.error(f"Request failed: {e}")
            raise PlatformAPIError(f"Request failed: {str(e)}")

        record_platform_request(endpoint, str(response.status_code), time.monotonic() - started)

        if response.status_code == 401:
            raise PlatformAuthError("Authentication failed. Check the repository credential.", 401)
        elif response.status_code == 403:
            raise PlatformAuthError("Access forbidden. Check token permissions.", 403)
        elif response.status_code == 404:
            raise PlatformAPIError(f"Resource not found: {url}", 404)
        elif response.status_code == 429:
            record_rate_limit('remote')
            raise PlatformAPIError("Rate limited by platform", 429)
        elif response.status_code >= 400:
            raise PlatformAPIError(f"API error: {response.text[:500]}", response.status_code)

        try:
            return response.json() if response.text else {}
        except ValueError:
            raise PlatformAPIError("Invalid JSON in platform response", response.status_code)

    # ============================================
    # PAGE FETCHERS
    # ============================================

    def fetch_pull_requests_page(
        self,
        skip: int = 0,
        top: Optional[int] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None
    ) -> List[Dict]:
        """
        Fetch one page of pull requests in any status.

        Args:
            skip: Number of items to skip
            top: Page size
            since: Only PRs created at or after this time
            until: Only PRs created before this time

        Returns:
            List of pull request payloads
        """
        params = {
            'searchCriteria.status': 'all',
            '$skip': skip,
            '$top': top or self.page_size
        }
        if since:
            params['searchCriteria.minTime'] = _format_query_time(since)
        if until:
            params['searchCriteria.maxTime'] = _format_query_time(until)

        data = self._make_request('GET', self._git_url('pullrequests'), params, endpoint='pullrequests')
        return data.get('value', [])

    def fetch_commits_page(
        self,
        skip: int = 0,
        top: Optional[int] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None
    ) -> List[Dict]:
        """
        Fetch one page of commits.

        Args:
            skip: Number of items to skip
            top: Page size
            since: Only commits authored at or after this time
            until: Only commits authored before this time

        Returns:
            List of commit payloads
        """
        params = {
            'searchCriteria.$skip': skip,
            'searchCriteria.$top': top or self.page_size
        }
        if since:
            params['searchCriteria.fromDate'] = _format_query_time(since)
        if until:
            params['searchCriteria.toDate'] = _format_query_time(until)

        data = self._make_request('GET', self._git_url('commits'), params, endpoint='commits')
        return data.get('value', [])

    def fetch_pull_request_threads(self, pull_request_id) -> List[Dict]:
        """Fetch all comment threads of a pull request."""
        data = self._make_request(
            'GET', self._git_url(f'pullRequests/{pull_request_id}/threads'), endpoint='threads'
        )
        return data.get('value', [])

    def test_connection(self) -> bool:
        """
        Test connection to the repository.

        Returns:
            True if connection successful
        """
        try:
            data = self._make_request('GET', self._git_url(), endpoint='repository')
            logger.info(f"Connected to repository: {data.get('name', self.repository_name)}")
            return True
        except PlatformAPIError as e:
            logger.error(f"Connection test failed: {e}")
            return False

    def close(self) -> None:
        self._session.close()
