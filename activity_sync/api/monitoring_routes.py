"""
Monitoring API Blueprint
Provides REST endpoints for sync metrics, batch logs, repository stats and health.
"""

from flask import Blueprint, Response, jsonify, request

from activity_sync.api.auth import require_api_key
from activity_sync.context import get_context
from activity_sync.database.queries import QueryHelpers
from activity_sync.utils.helpers import format_datetime, utcnow
from activity_sync.utils.logger import get_logger
from activity_sync.utils.metrics import render

logger = get_logger(__name__)

monitoring_bp = Blueprint('monitoring', __name__, url_prefix='/api')


@monitoring_bp.route('/monitoring/metrics', methods=['GET'])
@require_api_key
def get_metrics():
    """
    Get aggregate sync metrics.

    Query params:
        days: Period in days (default 7)
    """
    try:
        days = int(request.args.get('days', 7))
        with get_context().db.session_scope() as session:
            metrics = QueryHelpers(session).get_metrics_summary(days)

        return jsonify({'success': True, 'data': metrics})
    except ValueError:
        return jsonify({'success': False, 'error': 'days must be an integer'}), 400
    except Exception as e:
        logger.error(f"Failed to get metrics: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@monitoring_bp.route('/monitoring/prometheus', methods=['GET'])
def get_prometheus_metrics():
    """Process and sync instrumentation in the Prometheus text format, for scrapers."""
    body, content_type = render()
    return Response(body, content_type=content_type)


@monitoring_bp.route('/monitoring/logs', methods=['GET'])
@require_api_key
def get_batch_logs():
    """
    Get recent batch executions.

    Query params:
        limit: Number of batches (default 50)
    """
    try:
        limit = min(int(request.args.get('limit', 50)), 500)
        with get_context().db.session_scope() as session:
            batches = QueryHelpers(session).get_recent_batches(limit)

        return jsonify({'success': True, 'data': batches, 'count': len(batches)})
    except ValueError:
        return jsonify({'success': False, 'error': 'limit must be an integer'}), 400
    except Exception as e:
        logger.error(f"Failed to get batch logs: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@monitoring_bp.route('/monitoring/repository-stats', methods=['GET'])
@require_api_key
def get_repository_stats():
    """Get per-repository sync statistics."""
    try:
        with get_context().db.session_scope() as session:
            stats = QueryHelpers(session).get_repository_stats()

        return jsonify({'success': True, 'data': stats})
    except Exception as e:
        logger.error(f"Failed to get repository stats: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@monitoring_bp.route('/monitoring/health', methods=['GET'])
def get_health():
    """Health of the database, scheduler and rate limiter."""
    context = get_context()
    db_healthy = context.db.check_connection()

    scheduler_status = None
    if db_healthy:
        try:
            scheduler_status = context.scheduler.get_status()
        except Exception as e:
            logger.error(f"Failed to read scheduler state: {e}")

    return jsonify({
        'status': 'healthy' if db_healthy else 'degraded',
        'timestamp': format_datetime(utcnow()),
        'database': 'connected' if db_healthy else 'disconnected',
        'scheduler': {
            'started': context.scheduler.is_started,
            'batchRunning': scheduler_status['isRunning'] if scheduler_status else None,
        }
    }), (200 if db_healthy else 503)


@monitoring_bp.route('/status/rate-limit', methods=['GET'])
@require_api_key
def get_rate_limit():
    """Get the shared rate limiter's remaining budget."""
    try:
        return jsonify({'success': True, 'data': get_context().rate_limiter.status()})
    except Exception as e:
        logger.error(f"Failed to get rate limit status: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500
