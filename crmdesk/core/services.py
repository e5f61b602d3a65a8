"""Shared per-app services handed to plugin blueprints through ``app.extensions``."""

import hmac
import logging
from typing import Any, Dict, Optional

from flask import current_app, jsonify, request

logger = logging.getLogger(__name__)

EXTENSION_KEY = 'crmdesk'
TOKEN_HEADER = 'X-CRM-Token'


def get_services() -> Dict[str, Any]:
    return current_app.extensions[EXTENSION_KEY]


def check_token() -> Optional[Any]:
    """
    Shared-secret check. Returns an error response when the configured token
    does not match the request header, otherwise None.
    """
    expected = get_services()['config'].get('api_token')
    if not expected:
        return None
    provided = request.headers.get(TOKEN_HEADER, '')
    if not hmac.compare_digest(provided.encode('utf-8'), str(expected).encode('utf-8')):
        logger.warning(f"Rejected request to {request.path}: bad or missing token")
        return jsonify({'error': 'Unauthorized'}), 401
    return None
