"""
Scheduler API Blueprint
Provides REST endpoints for scheduler configuration and control.
"""

from flask import Blueprint, jsonify, request

from activity_sync.api.auth import require_api_key
from activity_sync.context import get_context
from activity_sync.sync.errors import ConfigValidationError
from activity_sync.utils.logger import get_logger

logger = get_logger(__name__)

scheduler_bp = Blueprint('scheduler', __name__, url_prefix='/api/scheduler')


@scheduler_bp.route('/config', methods=['GET'])
@require_api_key
def get_config():
    """Get the runtime scheduler configuration."""
    try:
        return jsonify({
            'success': True,
            'data': get_context().scheduler.get_config()
        })
    except Exception as e:
        logger.error(f"Failed to get scheduler config: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@scheduler_bp.route('/config', methods=['PUT'])
@require_api_key
def update_config():
    """
    Update the scheduler configuration.

    Body:
        Any subset of intervalMinutes, maxConcurrentRepos, delayBetweenReposSeconds,
        maxRetries, retryDelayMinutes, notificationEnabled, notificationRecipients,
        azureRateLimitPerMinute, azureBurstLimit, enabled

    Returns:
        JSON with the updated configuration
    """
    try:
        updates = request.get_json(silent=True)
        config = get_context().scheduler.update_config(updates)
        return jsonify({
            'success': True,
            'message': 'Configuration updated successfully',
            'data': config
        })
    except ConfigValidationError as e:
        return jsonify({'success': False, 'error': str(e), 'details': e.errors}), 400
    except Exception as e:
        logger.error(f"Failed to update scheduler config: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@scheduler_bp.route('/status', methods=['GET'])
@require_api_key
def get_status():
    """Get the scheduler state."""
    try:
        return jsonify({
            'success': True,
            'data': get_context().scheduler.get_status()
        })
    except Exception as e:
        logger.error(f"Failed to get scheduler status: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@scheduler_bp.route('/start', methods=['POST'])
@require_api_key
def start_scheduler():
    """Start periodic batches."""
    try:
        status = get_context().scheduler.start()
        return jsonify({'success': True, 'message': 'Scheduler started', 'data': status})
    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@scheduler_bp.route('/stop', methods=['POST'])
@require_api_key
def stop_scheduler():
    """Stop periodic batches."""
    try:
        status = get_context().scheduler.stop()
        return jsonify({'success': True, 'message': 'Scheduler stopped', 'data': status})
    except Exception as e:
        logger.error(f"Failed to stop scheduler: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@scheduler_bp.route('/run-now', methods=['POST'])
@require_api_key
def run_now():
    """
    Run one batch immediately.

    Body (optional):
        syncType: 'incremental' (default) or 'full'

    Returns:
        JSON with the batch summary, 409 if a batch is already running
    """
    try:
        body = request.get_json(silent=True) or {}
        sync_type = body.get('syncType', 'incremental')
        if sync_type not in ('full', 'incremental'):
            return jsonify({'success': False, 'error': f"Invalid syncType: {sync_type}"}), 400

        logger.info(f"Batch triggered via API: syncType={sync_type}")
        summary = get_context().scheduler.run_now(sync_type)

        if summary.get('skipped'):
            return jsonify({'success': False, 'error': summary['reason']}), 409
        return jsonify({'success': True, 'data': summary})
    except Exception as e:
        logger.error(f"Batch run failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500
