"""
Flask Application Factory
Main entry point for the repository activity sync service.
"""

import os
from typing import Optional

from flask import Flask, jsonify
from flask_cors import CORS

from activity_sync import __version__
from activity_sync.config_manager import ConfigManager
from activity_sync.context import AppContext
from activity_sync.database.connection import get_db
from activity_sync.utils.helpers import format_datetime, utcnow
from activity_sync.utils.logger import setup_logging, get_logger


def create_app(context: Optional[AppContext] = None) -> Flask:
    """
    Application factory for Flask app.

    Args:
        context: Prebuilt sync components; built from configuration when omitted

    Returns:
        Configured Flask application
    """
    setup_logging()
    logger = get_logger(__name__)

    app = Flask(__name__)

    app.config['SECRET_KEY'] = os.getenv('FLASK_SECRET_KEY', 'dev-secret-key-change-in-production')
    app.json.sort_keys = False

    CORS(app)

    if context is None:
        db = get_db()
        db.create_schema()
        context = AppContext.build(db)
    context.init_app(app)

    # Register blueprints
    from activity_sync.api.scheduler_routes import scheduler_bp
    from activity_sync.api.sync_routes import sync_bp
    from activity_sync.api.monitoring_routes import monitoring_bp
    from activity_sync.api.sync_data_routes import sync_data_bp
    from activity_sync.api.notification_routes import notifications_bp

    app.register_blueprint(scheduler_bp)
    app.register_blueprint(sync_bp)
    app.register_blueprint(monitoring_bp)
    app.register_blueprint(sync_data_bp)
    app.register_blueprint(notifications_bp)

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check endpoint."""
        db_healthy = context.db.check_connection()

        return jsonify({
            'status': 'healthy' if db_healthy else 'degraded',
            'timestamp': format_datetime(utcnow()),
            'database': 'connected' if db_healthy else 'disconnected'
        })

    @app.route('/', methods=['GET'])
    def root():
        """Root endpoint with API info."""
        return jsonify({
            'name': 'Repository Activity Sync API',
            'version': __version__,
            'endpoints': {
                '/health': 'Health check',
                '/api/scheduler/config': 'Scheduler configuration (GET, PUT)',
                '/api/scheduler/status': 'Scheduler state (GET)',
                '/api/scheduler/start': 'Start periodic batches (POST)',
                '/api/scheduler/stop': 'Stop periodic batches (POST)',
                '/api/scheduler/run-now': 'Run one batch now (POST)',
                '/api/sync/<repository_id>': 'Manual sync (POST), cancel (DELETE)',
                '/api/sync/<repository_id>/status': 'Repository sync status (GET)',
                '/api/sync/<repository_id>/history': 'Repository job history (GET)',
                '/api/monitoring/metrics': 'Sync metrics (GET)',
                '/api/monitoring/logs': 'Recent batches (GET)',
                '/api/monitoring/repository-stats': 'Per-repository stats (GET)',
                '/api/monitoring/health': 'Service health (GET)',
                '/api/status/rate-limit': 'Rate limit budget (GET)',
                '/api/sync-data/<entity>': 'Bulk activity upsert (POST)',
                '/api/notifications': 'List notifications (GET)',
                '/api/notifications/<id>/approve': 'Approve access request (POST)'
            }
        })

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'success': False,
            'error': 'Not found'
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({
            'success': False,
            'error': 'Method not allowed'
        }), 405

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({
            'success': False,
            'error': 'Internal server error'
        }), 500

    logger.info("Flask application created")

    return app


def start_scheduler(app: Flask) -> None:
    """
    Start periodic batches if configured to run on startup.

    Args:
        app: Flask app holding the sync components
    """
    logger = get_logger(__name__)
    config = ConfigManager()
    context = app.extensions['activity_sync']

    if not config.get_flag('scheduler', 'enabled', default=True):
        logger.info("Scheduler is disabled")
        return

    # A scheduler stopped through the API stays stopped across restarts
    if config.get_flag('scheduler', 'autostart') and context.config_service.get_config().enabled:
        context.scheduler.start()


if __name__ == '__main__':
    # Development server
    app = create_app()
    start_scheduler(app)

    try:
        app.run(
            host='0.0.0.0',
            port=int(os.getenv('FLASK_PORT', 6922)),
            debug=os.getenv('FLASK_DEBUG', 'false').lower() == 'true'
        )
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        app.extensions['activity_sync'].scheduler.shutdown()
