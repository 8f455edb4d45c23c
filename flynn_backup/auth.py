"""
Authentication for the HTTP endpoints.

Clients present BACKUP_AUTH_KEY as the HTTP basic auth password (any
username), the same scheme the controller uses for its own key.
"""

import hmac
from functools import wraps

from flask import current_app, jsonify, request


def verify_key(expected: str, provided: str) -> bool:
    """
    Compare an auth key in constant time.

    Args:
        expected: Configured key
        provided: Key presented by the client

    Returns:
        True if the keys match, False otherwise
    """
    return hmac.compare_digest(expected.encode(), provided.encode())


def auth_required(view):
    """Require BACKUP_AUTH_KEY when it is configured."""
    @wraps(view)
    def wrapped(*args, **kwargs):
        key = current_app.config.get('BACKUP_AUTH_KEY')
        if key:
            auth = request.authorization
            password = (auth.password or '') if auth else ''
            if not verify_key(key, password):
                return jsonify({'error': 'Authentication required'}), 401
        return view(*args, **kwargs)
    return wrapped
