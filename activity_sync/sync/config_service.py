"""
Scheduler Configuration Module
Runtime scheduler settings persisted in the ``sync_settings`` table and seeded
from the YAML 'sync', 'scheduler' and 'notifications' sections.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from activity_sync.config_manager import ConfigManager, parse_flag
from activity_sync.database.models import SyncSettings
from activity_sync.sync.errors import ConfigValidationError
from activity_sync.sync.retry import RetryPolicy
from activity_sync.utils.logger import get_logger

logger = get_logger(__name__)

SETTINGS_ROW_ID = 1
DEFAULT_LEASE_TTL_SECONDS = 3600

# API name -> attribute name
API_FIELDS = {
    'enabled': 'enabled',
    'intervalMinutes': 'interval_minutes',
    'maxConcurrentRepos': 'max_concurrent_repos',
    'delayBetweenReposSeconds': 'delay_between_repos_seconds',
    'maxRetries': 'max_retries',
    'retryDelayMinutes': 'retry_delay_minutes',
    'notificationEnabled': 'notification_enabled',
    'notificationRecipients': 'notification_recipients',
    'azureRateLimitPerMinute': 'azure_rate_limit_per_minute',
    'azureBurstLimit': 'azure_burst_limit',
}

# attribute -> (minimum, maximum)
INTEGER_BOUNDS = {
    'interval_minutes': (1, 10080),
    'max_concurrent_repos': (1, 100),
    'max_retries': (0, 20),
    'azure_rate_limit_per_minute': (1, 100000),
    'azure_burst_limit': (1, 100000),
}
NUMBER_BOUNDS = {
    'delay_between_repos_seconds': (0, 3600),
    'retry_delay_minutes': (0, 1440),
}
BOOLEAN_FIELDS = ('enabled', 'notification_enabled')


@dataclass
class SchedulerConfig:
    """Runtime scheduler configuration."""
    enabled: bool = True
    interval_minutes: int = 30
    max_concurrent_repos: int = 5
    delay_between_repos_seconds: float = 2
    max_retries: int = 3
    retry_delay_minutes: float = 1
    notification_enabled: bool = True
    notification_recipients: List[str] = field(default_factory=list)
    azure_rate_limit_per_minute: int = 60
    azure_burst_limit: int = 10

    @classmethod
    def from_settings(cls, config: Optional[ConfigManager] = None) -> 'SchedulerConfig':
        """Build the defaults from the YAML configuration."""
        config = config or ConfigManager()
        sync = config.get_sync_config()
        scheduler = config.get_scheduler_config()
        notifications = config.get_notification_config()
        defaults = cls()

        return cls(
            enabled=parse_flag(scheduler.get('enabled', defaults.enabled)),
            interval_minutes=int(sync.get('interval_minutes', defaults.interval_minutes)),
            max_concurrent_repos=int(sync.get('max_concurrent_repos', defaults.max_concurrent_repos)),
            delay_between_repos_seconds=float(sync.get('delay_between_repos_seconds', defaults.delay_between_repos_seconds)),
            max_retries=int(sync.get('max_retries', defaults.max_retries)),
            retry_delay_minutes=float(sync.get('retry_delay_minutes', defaults.retry_delay_minutes)),
            notification_enabled=parse_flag(notifications.get('enabled', defaults.notification_enabled)),
            notification_recipients=list(notifications.get('recipients') or []),
            azure_rate_limit_per_minute=int(sync.get('rate_limit_per_minute', defaults.azure_rate_limit_per_minute)),
            azure_burst_limit=int(sync.get('burst_limit', defaults.azure_burst_limit)),
        )

    def to_dict(self) -> Dict:
        """Serialize with API (camelCase) names."""
        return {api_name: getattr(self, attr) for api_name, attr in API_FIELDS.items()}

    def with_updates(self, updates: Dict, lease_ttl_seconds: Optional[float] = None) -> 'SchedulerConfig':
        """
        Apply a partial update given with API names.

        Args:
            updates: Fields to change, with API (camelCase) names
            lease_ttl_seconds: Sync lease TTL that every single retry wait must stay under

        Raises:
            ConfigValidationError: On unknown fields or invalid values
        """
        if not isinstance(updates, dict):
            raise ConfigValidationError(["Configuration update must be an object"])

        unknown = [key for key in updates if key not in API_FIELDS]
        if unknown:
            raise ConfigValidationError([f"Unknown field: {key}" for key in unknown])

        changes = {API_FIELDS[key]: value for key, value in updates.items()}
        updated = replace(self, **changes)
        errors = updated.validate(lease_ttl_seconds)
        if errors:
            raise ConfigValidationError(errors)
        return updated

    def validate(self, lease_ttl_seconds: Optional[float] = None) -> List[str]:
        """Return a list of validation errors (empty when valid)."""
        errors = []

        for attr in BOOLEAN_FIELDS:
            if not isinstance(getattr(self, attr), bool):
                errors.append(f"{_api_name(attr)} must be a boolean")

        for attr, (low, high) in INTEGER_BOUNDS.items():
            value = getattr(self, attr)
            if isinstance(value, bool) or not isinstance(value, int):
                errors.append(f"{_api_name(attr)} must be an integer")
            elif not low <= value <= high:
                errors.append(f"{_api_name(attr)} must be between {low} and {high}")

        for attr, (low, high) in NUMBER_BOUNDS.items():
            value = getattr(self, attr)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                errors.append(f"{_api_name(attr)} must be a number")
            elif not low <= value <= high:
                errors.append(f"{_api_name(attr)} must be between {low} and {high}")

        recipients = self.notification_recipients
        if not isinstance(recipients, list) or not all(isinstance(r, str) and r.strip() for r in recipients):
            errors.append("notificationRecipients must be a list of non-empty strings")

        if not errors and lease_ttl_seconds:
            # The lease is renewed around each wait, so one wait must fit inside it
            longest = RetryPolicy.from_config(self.max_retries, self.retry_delay_minutes).longest_delay()
            if longest >= lease_ttl_seconds:
                errors.append(
                    f"retryDelayMinutes: a {longest:.0f}s retry wait would outlast the "
                    f"{lease_ttl_seconds:.0f}s sync lease"
                )

        return errors


def _api_name(attr: str) -> str:
    for api_name, name in API_FIELDS.items():
        if name == attr:
            return api_name
    return attr


class ConfigService:
    """Loads and persists the runtime scheduler configuration."""

    def __init__(self, db, defaults: Optional[SchedulerConfig] = None,
                 lease_ttl_seconds: Optional[float] = None):
        self.db = db
        self.defaults = defaults or SchedulerConfig.from_settings()
        self.lease_ttl_seconds = lease_ttl_seconds or float(
            ConfigManager().get_sync_config().get('lease_ttl_seconds', DEFAULT_LEASE_TTL_SECONDS)
        )

    def get_config(self) -> SchedulerConfig:
        """Current configuration, seeding the settings row from defaults on first use."""
        with self.db.session_scope() as session:
            row = session.get(SyncSettings, SETTINGS_ROW_ID)
            if row is None:
                row = SyncSettings(id=SETTINGS_ROW_ID)
                _copy_to_row(self.defaults, row)
                session.add(row)
                logger.info("Seeded scheduler configuration from defaults")
                return replace(self.defaults)
            return _from_row(row)

    def update_config(self, updates: Dict) -> SchedulerConfig:
        """
        Validate and persist a partial configuration update.

        Args:
            updates: Fields to change, with API (camelCase) names

        Returns:
            The new configuration

        Raises:
            ConfigValidationError: If the update is invalid
        """
        updated = self.get_config().with_updates(updates, self.lease_ttl_seconds)

        with self.db.session_scope() as session:
            row = session.get(SyncSettings, SETTINGS_ROW_ID)
            _copy_to_row(updated, row)

        logger.info(f"Scheduler configuration updated: {sorted(updates.keys())}")
        return updated


def _copy_to_row(config: SchedulerConfig, row: SyncSettings) -> None:
    row.enabled = config.enabled
    row.interval_minutes = config.interval_minutes
    row.max_concurrent_repos = config.max_concurrent_repos
    row.delay_between_repos_seconds = config.delay_between_repos_seconds
    row.max_retries = config.max_retries
    row.retry_delay_minutes = config.retry_delay_minutes
    row.notification_enabled = config.notification_enabled
    row.notification_recipients = list(config.notification_recipients)
    row.rate_limit_per_minute = config.azure_rate_limit_per_minute
    row.burst_limit = config.azure_burst_limit


def _from_row(row: SyncSettings) -> SchedulerConfig:
    return SchedulerConfig(
        enabled=row.enabled,
        interval_minutes=row.interval_minutes,
        max_concurrent_repos=row.max_concurrent_repos,
        delay_between_repos_seconds=row.delay_between_repos_seconds,
        max_retries=row.max_retries,
        retry_delay_minutes=row.retry_delay_minutes,
        notification_enabled=row.notification_enabled,
        notification_recipients=list(row.notification_recipients or []),
        azure_rate_limit_per_minute=row.rate_limit_per_minute,
        azure_burst_limit=row.burst_limit,
    )
