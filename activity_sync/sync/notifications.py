"""
Notification Service Module
Batch outcome digests, repeated-failure alerts and single-resolution actions.

Notifications are deduplicated per (type, target entity, recipient) while
unread. Digest delivery goes to Slack when a webhook is configured; email
delivery is logged only.
"""

import uuid
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from activity_sync.config_manager import ConfigManager, parse_flag
from activity_sync.database.models import AccessRequest, Notification, NotificationSettings, SyncJob
from activity_sync.sync.errors import ConfigValidationError, NotificationConflict, NotificationNotFound
from activity_sync.utils.helpers import format_datetime, paginate_info, utcnow
from activity_sync.utils.logger import get_logger
from activity_sync.utils.metrics import record_notification

logger = get_logger(__name__)

TYPE_SYNC_FAILURE = 'sync_failure'
TYPE_SYNC_SUCCESS = 'sync_success'
TYPE_REPOSITORY_FAILURE = 'repository_failure'
TYPE_ACCESS_REQUEST = 'access_request'

STATUS_UNREAD = 'unread'
STATUS_READ = 'read'
STATUS_ACTION_TAKEN = 'action_taken'

SETTINGS_ROW_ID = 1

# API name -> attribute name
DELIVERY_FIELDS = {
    'slackWebhookUrl': 'slack_webhook_url',
    'failureThreshold': 'failure_threshold',
    'successNotifications': 'success_notifications',
    'repositoryFailureThreshold': 'repository_failure_threshold',
}


def notification_to_dict(notification: Notification) -> Dict:
    """Serialize a notification for API output."""
    return {
        'id': notification.id,
        'type': notification.type,
        'status': notification.status,
        'targetEntityId': notification.target_entity_id,
        'recipientId': notification.recipient_id,
        'title': notification.title,
        'message': notification.message,
        'metadata': notification.meta or {},
        'readAt': format_datetime(notification.read_at),
        'actionTakenAt': format_datetime(notification.action_taken_at),
        'actionTakenBy': notification.action_taken_by,
        'createdAt': format_datetime(notification.created_at),
    }


@dataclass
class DeliveryConfig:
    """How batch outcomes are delivered; recipients and the on/off switch live in SchedulerConfig."""
    slack_webhook_url: Optional[str] = None
    failure_threshold: int = 1
    success_notifications: bool = False
    repository_failure_threshold: int = 3

    @classmethod
    def from_settings(cls, notification_config: Dict) -> 'DeliveryConfig':
        """Build the defaults from the YAML 'notifications' section."""
        return cls(
            slack_webhook_url=notification_config.get('slack_webhook_url') or None,
            failure_threshold=int(notification_config.get('failure_threshold', 1)),
            success_notifications=parse_flag(notification_config.get('success_notifications')),
            repository_failure_threshold=int(notification_config.get('repository_failure_threshold', 3)),
        )

    def to_dict(self) -> Dict:
        return {api_name: getattr(self, attr) for api_name, attr in DELIVERY_FIELDS.items()}

    def with_updates(self, updates: Dict) -> 'DeliveryConfig':
        """
        Apply a partial update given with API names.

        Raises:
            ConfigValidationError: On unknown fields or invalid values
        """
        if not isinstance(updates, dict):
            raise ConfigValidationError(["Configuration update must be an object"])

        unknown = [key for key in updates if key not in DELIVERY_FIELDS]
        if unknown:
            raise ConfigValidationError([f"Unknown field: {key}" for key in unknown])

        updated = replace(self, **{DELIVERY_FIELDS[key]: value for key, value in updates.items()})
        if updated.slack_webhook_url == '':
            updated.slack_webhook_url = None

        errors = []
        url = updated.slack_webhook_url
        if url is not None and not (isinstance(url, str) and url.startswith(('https://', 'http://'))):
            errors.append("slackWebhookUrl must be an http(s) URL or null")
        for api_name in ('failureThreshold', 'repositoryFailureThreshold'):
            value = getattr(updated, DELIVERY_FIELDS[api_name])
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                errors.append(f"{api_name} must be a positive integer")
        if not isinstance(updated.success_notifications, bool):
            errors.append("successNotifications must be a boolean")

        if errors:
            raise ConfigValidationError(errors)
        return updated


def _settings_row(config: DeliveryConfig) -> NotificationSettings:
    return NotificationSettings(
        id=SETTINGS_ROW_ID,
        slack_webhook_url=config.slack_webhook_url,
        failure_threshold=config.failure_threshold,
        success_notifications=config.success_notifications,
        repository_failure_threshold=config.repository_failure_threshold,
    )


class NotificationService:
    """Creates, delivers and resolves notifications."""

    def __init__(self, db, config: Optional[ConfigManager] = None, http_session: Optional[requests.Session] = None):
        """
        Initialize the service.

        Args:
            db: DatabaseConnection
            config: Configuration manager; defaults to the singleton
            http_session: Session used for webhook delivery
        """
        self.db = db
        notification_config = (config or ConfigManager()).get_notification_config()

        self.defaults = DeliveryConfig.from_settings(notification_config)
        self.webhook_timeout = notification_config.get('webhook_timeout_seconds', 10)

        self._http = http_session or requests.Session()

    # ========================================
    # Delivery Settings
    # ========================================

    def get_config(self) -> DeliveryConfig:
        """Current delivery settings, seeding the settings row from defaults on first use."""
        with self.db.session_scope() as session:
            row = session.get(NotificationSettings, SETTINGS_ROW_ID)
            if row is None:
                session.add(_settings_row(self.defaults))
                return replace(self.defaults)
            return DeliveryConfig(
                slack_webhook_url=row.slack_webhook_url,
                failure_threshold=row.failure_threshold,
                success_notifications=row.success_notifications,
                repository_failure_threshold=row.repository_failure_threshold,
            )

    def update_config(self, updates: Dict) -> DeliveryConfig:
        """
        Validate and persist a partial update of the delivery settings.

        Raises:
            ConfigValidationError: If the update is invalid
        """
        updated = self.get_config().with_updates(updates)

        with self.db.session_scope() as session:
            row = session.get(NotificationSettings, SETTINGS_ROW_ID)
            row.slack_webhook_url = updated.slack_webhook_url
            row.failure_threshold = updated.failure_threshold
            row.success_notifications = updated.success_notifications
            row.repository_failure_threshold = updated.repository_failure_threshold

        logger.info(f"Notification configuration updated: {sorted(updates.keys())}")
        return updated

    @property
    def failure_threshold(self) -> int:
        return self.get_config().failure_threshold

    def send_test_notification(self, kind: str, recipients: List[str]) -> int:
        """
        Send a sample failure or success digest to check delivery.

        Raises:
            ValueError: For a kind other than 'failure' or 'success'
        """
        batch_id = f"test-batch-{uuid.uuid4().hex[:12]}"
        if kind == 'failure':
            return self.send_failure_notification(batch_id, 1, 5, recipients)
        if kind == 'success':
            return self.send_success_notification(batch_id, 5, recipients)
        raise ValueError(f"Unknown notification type: {kind}")

    # ========================================
    # Batch Digests
    # ========================================

    def send_failure_notification(
        self,
        batch_id: str,
        failure_count: int,
        total_processed: int,
        recipients: List[str]
    ) -> int:
        """
        Report a batch's failures as one digest.

        Args:
            batch_id: Batch identifier
            failure_count: Failed repository syncs in the batch
            total_processed: Repositories processed in the batch
            recipients: Recipient ids

        Returns:
            Number of notifications created
        """
        if not recipients:
            logger.info(f"No recipients for failure digest of batch {batch_id}")
            return 0

        success_rate = ((total_processed - failure_count) / total_processed * 100) if total_processed else 0.0
        title = f"Sync: {failure_count} failures in batch {batch_id}"
        message = (
            f"Batch {batch_id} finished with {failure_count} failed of {total_processed} "
            f"repositories ({success_rate:.1f}% success). Check the sync logs and repository "
            f"configuration of the failed repositories."
        )
        metadata = {
            'batchId': batch_id,
            'failureCount': failure_count,
            'totalProcessed': total_processed,
            'successRate': round(success_rate, 1),
        }

        created = self._notify_all(TYPE_SYNC_FAILURE, batch_id, recipients, title, message, metadata)
        self._deliver(recipients, title, message, slack_text=f":warning: {title}\n{message}")
        logger.info(f"Failure notification sent for batch {batch_id} to {len(recipients)} recipients")
        return created

    def send_success_notification(self, batch_id: str, total_processed: int,
                                  recipients: Optional[List[str]] = None) -> int:
        """Report a clean batch, when success notifications are enabled."""
        if not self.get_config().success_notifications or not recipients:
            return 0

        title = f"Sync: batch {batch_id} completed successfully"
        message = f"Batch {batch_id} synchronized {total_processed} repositories without failures."

        created = self._notify_all(
            TYPE_SYNC_SUCCESS, batch_id, recipients, title, message,
            {'batchId': batch_id, 'totalProcessed': total_processed}
        )
        self._deliver(recipients, title, message)
        logger.info(f"Success notification sent for batch {batch_id}")
        return created

    def send_repository_failure_notification(
        self,
        repository_id: int,
        error_message: str,
        recipients: List[str],
        batch_id: Optional[str] = None
    ) -> int:
        """
        Alert when a repository keeps failing.

        Fires once the repository has at least ``repository_failure_threshold``
        failed jobs in the last 24 hours. Unread alerts are not duplicated.

        Returns:
            Number of notifications created
        """
        since = utcnow() - timedelta(hours=24)
        with self.db.session_scope() as session:
            failure_count = session.query(SyncJob).filter(
                SyncJob.repository_id == repository_id,
                SyncJob.status == 'failed',
                SyncJob.started_at >= since
            ).count()

        if failure_count < self.get_config().repository_failure_threshold or not recipients:
            return 0

        title = f"Sync: repository {repository_id} failing repeatedly"
        message = (
            f"Repository {repository_id} failed {failure_count} times in the last 24 hours. "
            f"Last error: {error_message}"
        )
        metadata = {'repositoryId': repository_id, 'failureCount': failure_count,
                    'lastError': error_message, 'batchId': batch_id}

        created = self._notify_all(TYPE_REPOSITORY_FAILURE, str(repository_id), recipients, title, message, metadata)
        if created:
            self._deliver(recipients, title, message, slack_text=f":rotating_light: {title}\n{message}")
        return created

    def _notify_all(self, notification_type: str, target_entity_id: str, recipients: List[str],
                    title: str, message: str, metadata: Dict) -> int:
        created = 0
        for recipient in recipients:
            _, was_created = self.create_if_absent(
                notification_type, target_entity_id, recipient, title, message, metadata
            )
            created += int(was_created)
        return created

    def _deliver(self, recipients: List[str], subject: str, message: str,
                 slack_text: Optional[str] = None) -> None:
        logger.info(f"Email notification to {', '.join(recipients)}: {subject}")
        record_notification('email', 'logged')

        webhook_url = self.get_config().slack_webhook_url
        if not webhook_url:
            return

        try:
            response = self._http.post(
                webhook_url,
                json={'text': slack_text or f"{subject}\n{message}", 'username': 'Activity Sync'},
                timeout=self.webhook_timeout
            )
            response.raise_for_status()
            logger.info("Slack notification sent successfully")
            record_notification('slack', 'sent')
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to send Slack notification: {e}")
            record_notification('slack', 'failed')

    # ========================================
    # Notification Primitives
    # ========================================

    def create_if_absent(
        self,
        notification_type: str,
        target_entity_id: str,
        recipient_id: str,
        title: str,
        message: str = None,
        metadata: Dict = None
    ) -> Tuple[Dict, bool]:
        """
        Create a notification unless an unread one exists for the same target and recipient.

        Returns:
            Tuple of (notification dict, created flag)
        """
        target_entity_id = str(target_entity_id)

        with self.db.session_scope() as session:
            existing = self._find_unread(session, notification_type, target_entity_id, recipient_id)
            if existing is not None:
                return notification_to_dict(existing), False

            notification = Notification(
                type=notification_type,
                status=STATUS_UNREAD,
                target_entity_id=target_entity_id,
                recipient_id=recipient_id,
                title=title,
                message=message,
                meta=metadata or {}
            )
            try:
                with session.begin_nested():
                    session.add(notification)
                    session.flush()
                return notification_to_dict(notification), True
            except IntegrityError:
                existing = self._find_unread(session, notification_type, target_entity_id, recipient_id)
                if existing is None:
                    raise
                return notification_to_dict(existing), False

    @staticmethod
    def _find_unread(session: Session, notification_type: str, target_entity_id: str,
                     recipient_id: str) -> Optional[Notification]:
        return session.query(Notification).filter(
            Notification.type == notification_type,
            Notification.target_entity_id == target_entity_id,
            Notification.recipient_id == recipient_id,
            Notification.status == STATUS_UNREAD
        ).first()

    def mark_as_read(self, notification_id: int) -> Dict:
        """
        Mark a notification read. Resolved notifications keep their status.

        Raises:
            NotificationNotFound: If the notification does not exist
        """
        with self.db.session_scope() as session:
            notification = self._get(session, notification_id)
            if notification.status == STATUS_UNREAD:
                notification.status = STATUS_READ
                notification.read_at = utcnow()
                session.flush()
            return notification_to_dict(notification)

    def mark_as_action_taken(self, notification_id: int, action_taken_by: str) -> Dict:
        """
        Mark a notification resolved. Already resolved notifications are left untouched.

        Raises:
            NotificationNotFound: If the notification does not exist
        """
        with self.db.session_scope() as session:
            notification = self._get(session, notification_id)
            if notification.status != STATUS_ACTION_TAKEN:
                self._resolve(notification, action_taken_by)
                session.flush()
            return notification_to_dict(notification)

    @staticmethod
    def _get(session: Session, notification_id: int) -> Notification:
        notification = session.get(Notification, notification_id)
        if notification is None:
            raise NotificationNotFound(f"Notification {notification_id} not found")
        return notification

    @staticmethod
    def _resolve(notification: Notification, action_taken_by: str) -> None:
        now = utcnow()
        notification.status = STATUS_ACTION_TAKEN
        notification.action_taken_at = now
        notification.action_taken_by = action_taken_by
        if notification.read_at is None:
            notification.read_at = now

    def resolve_with_action(
        self,
        notification_id: int,
        action_taken_by: str,
        action: Callable[[Session, Notification], Any]
    ) -> Any:
        """
        Run a single-resolution action triggered from a notification.

        In one transaction: lock every notification of the same (type, target),
        abort if the triggering one is already resolved, run the action, then
        resolve the triggering notification and every still-unread sibling.

        Args:
            notification_id: Triggering notification
            action_taken_by: Actor performing the action
            action: Callable doing the state change inside the transaction

        Returns:
            Whatever ``action`` returns

        Raises:
            NotificationNotFound: If the notification does not exist
            NotificationConflict: If the action was already taken
        """
        with self.db.session_scope() as session:
            notification = self._get(session, notification_id)

            # Same lock order for every approver of this target
            group = session.query(Notification).filter(
                Notification.type == notification.type,
                Notification.target_entity_id == notification.target_entity_id
            ).order_by(Notification.id).with_for_update().populate_existing().all()

            if notification.status == STATUS_ACTION_TAKEN:
                raise NotificationConflict(
                    f"Action already taken by {notification.action_taken_by or 'another user'}"
                )

            result = action(session, notification)

            self._resolve(notification, action_taken_by)
            siblings = 0
            for sibling in group:
                if sibling.id != notification.id and sibling.status == STATUS_UNREAD:
                    self._resolve(sibling, action_taken_by)
                    siblings += 1

            logger.info(
                f"Notification {notification_id} resolved by {action_taken_by}, "
                f"{siblings} sibling notifications resolved"
            )
            return result

    # ========================================
    # Access Requests
    # ========================================

    def create_access_request(self, requester: str, resource: str, recipients: List[str],
                              reason: str = None) -> Dict:
        """Create an access request and notify each approver."""
        with self.db.session_scope() as session:
            access_request = AccessRequest(requester=requester, resource=resource, reason=reason)
            session.add(access_request)
            session.flush()
            request_id = access_request.id

        for recipient in recipients:
            self.create_if_absent(
                TYPE_ACCESS_REQUEST, str(request_id), recipient,
                title=f"Access request from {requester}",
                message=f"{requester} requests access to {resource}" + (f": {reason}" if reason else ''),
                metadata={'accessRequestId': request_id, 'requester': requester, 'resource': resource}
            )

        return {'id': request_id, 'requester': requester, 'resource': resource, 'status': 'pending'}

    def approve_access_request(self, notification_id: int, approver: str) -> Dict:
        """
        Approve the access request referenced by a notification.

        Raises:
            NotificationNotFound: If the notification or request does not exist
            NotificationConflict: If the request was already approved
        """
        def approve(session: Session, notification: Notification) -> Dict:
            if notification.type != TYPE_ACCESS_REQUEST:
                raise NotificationConflict(f"Notification {notification.id} is not an access request")

            access_request = session.query(AccessRequest).filter(
                AccessRequest.id == int(notification.target_entity_id)
            ).with_for_update().populate_existing().first()
            if access_request is None:
                raise NotificationNotFound(f"Access request {notification.target_entity_id} not found")
            if access_request.status == 'approved':
                raise NotificationConflict("Access request already approved")

            access_request.status = 'approved'
            access_request.approved_by = approver
            access_request.approved_at = utcnow()
            return {
                'id': access_request.id,
                'requester': access_request.requester,
                'resource': access_request.resource,
                'status': access_request.status,
                'approvedBy': approver,
            }

        return self.resolve_with_action(notification_id, approver, approve)

    # ========================================
    # Listing & Cleanup
    # ========================================

    def list_notifications(self, recipient_id: str, status: Optional[str] = None,
                           page: int = 1, page_size: int = 20) -> Dict:
        """Paginated notifications of a recipient, newest first."""
        with self.db.session_scope() as session:
            query = session.query(Notification).filter(Notification.recipient_id == recipient_id)
            if status:
                query = query.filter(Notification.status == status)

            total = query.count()
            rows = query.order_by(Notification.created_at.desc(), Notification.id.desc()) \
                .offset((page - 1) * page_size).limit(page_size).all()

            return {
                'notifications': [notification_to_dict(n) for n in rows],
                'pagination': paginate_info(page, page_size, total)
            }

    def unread_count(self, recipient_id: str) -> int:
        with self.db.session_scope() as session:
            return session.query(Notification).filter(
                Notification.recipient_id == recipient_id,
                Notification.status == STATUS_UNREAD
            ).count()

    def cleanup_old_notifications(self, days: int = 30) -> int:
        """Delete notifications older than ``days`` days."""
        cutoff = utcnow() - timedelta(days=days)
        with self.db.session_scope() as session:
            deleted = session.query(Notification).filter(
                Notification.created_at < cutoff
            ).delete(synchronize_session=False)

        logger.info(f"Old notifications cleaned up: {deleted}")
        return deleted
