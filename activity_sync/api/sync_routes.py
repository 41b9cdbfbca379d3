"""
Sync API Blueprint
Provides REST endpoints for manual repository syncs and their status.
"""

from flask import Blueprint, jsonify, request

from activity_sync.api.auth import require_api_key
from activity_sync.context import get_context
from activity_sync.sync.errors import RepositoryNotFound
from activity_sync.utils.logger import get_logger

logger = get_logger(__name__)

sync_bp = Blueprint('sync', __name__, url_prefix='/api/sync')


@sync_bp.route('/<int:repository_id>', methods=['POST'])
@require_api_key
def start_sync(repository_id: int):
    """
    Start a manual sync of one repository.

    Body:
        syncType: 'incremental' (default) or 'full'

    Query params:
        wait: If 'true', run in the request and return the final result

    Returns:
        202 when started, 200 with the result when waited, 409 when already in progress
    """
    try:
        body = request.get_json(silent=True) or {}
        sync_type = body.get('syncType', 'incremental')
        if sync_type not in ('full', 'incremental'):
            return jsonify({'success': False, 'error': f"Invalid syncType: {sync_type}"}), 400

        orchestrator = get_context().orchestrator
        wait = request.args.get('wait', 'false').lower() == 'true'

        logger.info(f"Manual sync triggered via API: repository={repository_id} type={sync_type} wait={wait}")

        if wait:
            result = orchestrator.sync_repository(repository_id, sync_type)
        else:
            result = orchestrator.start_sync(repository_id, sync_type)

        if result.deferred:
            return jsonify({'success': False, 'error': result.error, 'data': result.to_dict()}), 409
        return jsonify({'success': result.success, 'data': result.to_dict()}), (200 if wait else 202)

    except RepositoryNotFound as e:
        return jsonify({'success': False, 'error': str(e)}), 404
    except Exception as e:
        logger.error(f"Manual sync failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@sync_bp.route('/<int:repository_id>', methods=['DELETE'])
@require_api_key
def cancel_sync(repository_id: int):
    """Request cancellation of a running sync."""
    try:
        if not get_context().orchestrator.cancel_sync(repository_id):
            return jsonify({'success': False, 'error': 'No sync in progress'}), 404
        return jsonify({'success': True, 'message': 'Cancellation requested'})
    except Exception as e:
        logger.error(f"Cancel failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@sync_bp.route('/<int:repository_id>/status', methods=['GET'])
@require_api_key
def get_sync_status(repository_id: int):
    """Get the sync status of a repository."""
    try:
        return jsonify({
            'success': True,
            'data': get_context().orchestrator.get_sync_status(repository_id)
        })
    except RepositoryNotFound as e:
        return jsonify({'success': False, 'error': str(e)}), 404
    except Exception as e:
        logger.error(f"Failed to get sync status: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@sync_bp.route('/<int:repository_id>/history', methods=['GET'])
@require_api_key
def get_sync_history(repository_id: int):
    """
    Get the job history of a repository.

    Query params:
        page: Page number (default 1)
        pageSize: Jobs per page (default 20, max 100)
    """
    try:
        page = max(int(request.args.get('page', 1)), 1)
        page_size = min(max(int(request.args.get('pageSize', 20)), 1), 100)
    except ValueError:
        return jsonify({'success': False, 'error': 'page and pageSize must be integers'}), 400

    try:
        return jsonify({
            'success': True,
            'data': get_context().orchestrator.get_sync_history(repository_id, page, page_size)
        })
    except RepositoryNotFound as e:
        return jsonify({'success': False, 'error': str(e)}), 404
    except Exception as e:
        logger.error(f"Failed to get sync history: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500
