"""
API Key Check
Capability check applied to every control and status endpoint.
"""

import hmac
from functools import wraps

from flask import jsonify, request

from activity_sync.config_manager import ConfigManager
from activity_sync.utils.logger import get_logger

logger = get_logger(__name__)

API_KEY_HEADER = 'X-API-Key'


def require_api_key(view):
    """
    Reject requests without a configured API key.

    When no keys are configured the check is disabled.
    """
    @wraps(view)
    def wrapper(*args, **kwargs):
        keys = ConfigManager().get_api_keys()
        if keys:
            provided = request.headers.get(API_KEY_HEADER, '')
            if not any(hmac.compare_digest(provided, key) for key in keys):
                logger.warning(f"Rejected request to {request.path}: invalid API key")
                return jsonify({
                    'success': False,
                    'error': 'Invalid or missing API key'
                }), 401
        return view(*args, **kwargs)

    return wrapper
