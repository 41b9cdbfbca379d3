"""
Sync Data API Blueprint
Bulk activity sinks used when reconciliation runs behind a process boundary.
"""

from flask import Blueprint, jsonify, request

from activity_sync.api.auth import require_api_key
from activity_sync.context import get_context
from activity_sync.utils.logger import get_logger

logger = get_logger(__name__)

sync_data_bp = Blueprint('sync_data', __name__, url_prefix='/api/sync-data')

ENTITY_ROUTES = {
    'pull-requests': 'pull_request',
    'commits': 'commit',
    'reviews': 'review',
    'comments': 'comment',
}


@sync_data_bp.route('/<entity>', methods=['POST'])
@require_api_key
def bulk_upsert(entity: str):
    """
    Upsert a list of activity records.

    Path:
        entity: pull-requests, commits, reviews or comments

    Body:
        JSON array of records (or an object with an 'items' array)

    Returns:
        JSON with total, processed and errors
    """
    entity_type = ENTITY_ROUTES.get(entity)
    if entity_type is None:
        return jsonify({'success': False, 'error': f"Unknown entity: {entity}"}), 404

    body = request.get_json(silent=True)
    items = body.get('items') if isinstance(body, dict) else body
    if not isinstance(items, list):
        return jsonify({'success': False, 'error': 'Body must be a JSON array of records'}), 400

    try:
        result = get_context().sink.bulk_upsert(entity_type, items)
        logger.info(f"Bulk {entity} upsert: {result['processed']}/{result['total']} processed")
        return jsonify({'success': not result['errors'], 'data': result})
    except Exception as e:
        logger.error(f"Bulk {entity} upsert failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500
