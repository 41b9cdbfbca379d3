"""
Notification API Blueprint
Provides REST endpoints for listing and resolving notifications.
"""

from flask import Blueprint, jsonify, request

from activity_sync.api.auth import require_api_key
from activity_sync.context import get_context
from activity_sync.sync.errors import ConfigValidationError, NotificationConflict, NotificationNotFound
from activity_sync.utils.logger import get_logger

logger = get_logger(__name__)

notifications_bp = Blueprint('notifications', __name__, url_prefix='/api/notifications')


@notifications_bp.route('', methods=['GET'])
@require_api_key
def list_notifications():
    """
    List notifications of a recipient.

    Query params:
        recipientId: Recipient (required)
        status: Optional status filter
        page, pageSize: Pagination
    """
    recipient_id = request.args.get('recipientId')
    if not recipient_id:
        return jsonify({'success': False, 'error': 'recipientId is required'}), 400

    try:
        page = max(int(request.args.get('page', 1)), 1)
        page_size = min(max(int(request.args.get('pageSize', 20)), 1), 100)
    except ValueError:
        return jsonify({'success': False, 'error': 'page and pageSize must be integers'}), 400

    try:
        data = get_context().notifications.list_notifications(
            recipient_id, status=request.args.get('status'), page=page, page_size=page_size
        )
        return jsonify({'success': True, 'data': data})
    except Exception as e:
        logger.error(f"Failed to list notifications: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@notifications_bp.route('/unread-count', methods=['GET'])
@require_api_key
def unread_count():
    """Count unread notifications of a recipient."""
    recipient_id = request.args.get('recipientId')
    if not recipient_id:
        return jsonify({'success': False, 'error': 'recipientId is required'}), 400

    try:
        count = get_context().notifications.unread_count(recipient_id)
        return jsonify({'success': True, 'data': {'count': count}})
    except Exception as e:
        logger.error(f"Failed to count notifications: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@notifications_bp.route('/<int:notification_id>/read', methods=['POST'])
@require_api_key
def mark_as_read(notification_id: int):
    """Mark a notification as read."""
    try:
        data = get_context().notifications.mark_as_read(notification_id)
        return jsonify({'success': True, 'data': data})
    except NotificationNotFound as e:
        return jsonify({'success': False, 'error': str(e)}), 404
    except Exception as e:
        logger.error(f"Failed to mark notification read: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@notifications_bp.route('/<int:notification_id>/action-taken', methods=['POST'])
@require_api_key
def mark_as_action_taken(notification_id: int):
    """
    Mark a notification as resolved.

    Body:
        actor: Who took the action
    """
    actor = (request.get_json(silent=True) or {}).get('actor')
    if not actor:
        return jsonify({'success': False, 'error': 'actor is required'}), 400

    try:
        data = get_context().notifications.mark_as_action_taken(notification_id, actor)
        return jsonify({'success': True, 'data': data})
    except NotificationNotFound as e:
        return jsonify({'success': False, 'error': str(e)}), 404
    except Exception as e:
        logger.error(f"Failed to mark notification resolved: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@notifications_bp.route('/<int:notification_id>/approve', methods=['POST'])
@require_api_key
def approve(notification_id: int):
    """
    Approve the access request behind a notification.

    Body:
        approver: Who approves

    Returns:
        200 on success, 409 if already approved
    """
    approver = (request.get_json(silent=True) or {}).get('approver')
    if not approver:
        return jsonify({'success': False, 'error': 'approver is required'}), 400

    try:
        data = get_context().notifications.approve_access_request(notification_id, approver)
        return jsonify({'success': True, 'message': 'Access request approved', 'data': data})
    except NotificationNotFound as e:
        return jsonify({'success': False, 'error': str(e)}), 404
    except NotificationConflict as e:
        return jsonify({'success': False, 'error': str(e)}), 409
    except Exception as e:
        logger.error(f"Approval failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@notifications_bp.route('/access-requests', methods=['POST'])
@require_api_key
def create_access_request():
    """
    Create an access request and notify its approvers.

    Body:
        requester, resource, recipients (list), reason (optional)
    """
    body = request.get_json(silent=True) or {}
    requester = body.get('requester')
    resource = body.get('resource')
    recipients = body.get('recipients')

    if not requester or not resource or not isinstance(recipients, list) or not recipients:
        return jsonify({
            'success': False,
            'error': 'requester, resource and a non-empty recipients list are required'
        }), 400

    try:
        data = get_context().notifications.create_access_request(
            requester, resource, recipients, reason=body.get('reason')
        )
        return jsonify({'success': True, 'data': data}), 201
    except Exception as e:
        logger.error(f"Failed to create access request: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@notifications_bp.route('/cleanup', methods=['POST'])
@require_api_key
def cleanup():
    """
    Delete old notifications.

    Body (optional):
        days: Age threshold in days (default 30)
    """
    try:
        days = int((request.get_json(silent=True) or {}).get('days', 30))
        deleted = get_context().notifications.cleanup_old_notifications(days)
        return jsonify({'success': True, 'data': {'deleted': deleted}})
    except (TypeError, ValueError):
        return jsonify({'success': False, 'error': 'days must be an integer'}), 400
    except Exception as e:
        logger.error(f"Notification cleanup failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@notifications_bp.route('/config', methods=['GET'])
@require_api_key
def get_config():
    """Get the notification delivery settings."""
    try:
        return jsonify({'success': True, 'data': get_context().notifications.get_config().to_dict()})
    except Exception as e:
        logger.error(f"Failed to get notification config: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@notifications_bp.route('/config', methods=['PUT'])
@require_api_key
def update_config():
    """
    Update the notification delivery settings.

    Body:
        Any subset of slackWebhookUrl, failureThreshold, successNotifications,
        repositoryFailureThreshold
    """
    try:
        config = get_context().notifications.update_config(request.get_json(silent=True))
        return jsonify({
            'success': True,
            'message': 'Notification configuration updated successfully',
            'data': config.to_dict()
        })
    except ConfigValidationError as e:
        return jsonify({'success': False, 'error': str(e), 'details': e.errors}), 400
    except Exception as e:
        logger.error(f"Failed to update notification config: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@notifications_bp.route('/test', methods=['POST'])
@require_api_key
def send_test():
    """
    Send a sample digest through the configured channels.

    Body (optional):
        type: 'failure' (default) or 'success'
        recipients: Overrides the configured notification recipients
    """
    body = request.get_json(silent=True) or {}
    kind = body.get('type', 'failure')
    if kind not in ('failure', 'success'):
        return jsonify({'success': False, 'error': "type must be 'failure' or 'success'"}), 400

    context = get_context()
    recipients = body.get('recipients') or context.config_service.get_config().notification_recipients
    if not isinstance(recipients, list) or not recipients:
        return jsonify({'success': False, 'error': 'No notification recipients configured'}), 400

    try:
        created = context.notifications.send_test_notification(kind, recipients)
        return jsonify({
            'success': True,
            'message': f"Test {kind} notification sent",
            'data': {'created': created, 'recipients': recipients}
        })
    except Exception as e:
        logger.error(f"Test notification failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500
