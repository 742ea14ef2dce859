"""
Authentication Module
Access control for the job trigger endpoints
"""
import hmac
from functools import wraps
from flask import request, jsonify
from config import Config


def _bearer_token():
    header = request.headers.get('Authorization', '')
    if header.startswith('Bearer '):
        return header[len('Bearer '):]
    return None


def cron_secret_required(f):
    """
    Decorator to require the shared cron secret for job trigger routes.

    Expects an 'Authorization: Bearer <CRON_SECRET>' header. Returns JSON
    401 when the header is missing or wrong, and 503 when no secret is
    configured so the endpoints are never left open.

    Usage:
        @app.route('/cron/detect-winners', methods=['POST'])
        @cron_secret_required
        def detect_winners_route():
            ...
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not Config.CRON_SECRET:
            return jsonify({
                'error': {
                    'code': 'CRON_DISABLED',
                    'message': 'Cron endpoints are not configured.',
                    'details': {}
                }
            }), 503

        token = _bearer_token()
        if not token or not hmac.compare_digest(token, Config.CRON_SECRET):
            return jsonify({
                'error': {
                    'code': 'AUTH_REQUIRED',
                    'message': 'Authentication required.',
                    'details': {}
                }
            }), 401

        return f(*args, **kwargs)
    return decorated_function
