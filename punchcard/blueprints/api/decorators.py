"""
JWT authentication decorators for the REST API.

Tokens are issued by the studio's identity service; this module only
verifies them. create_access_token() exists for tests and tooling.
"""
from functools import wraps
from datetime import datetime, timedelta, timezone

import jwt
from flask import request, jsonify, current_app

from punchcard.extensions import db
from punchcard.models.user import User, UserRole


def _secret():
    return current_app.config.get('JWT_SECRET_KEY') or current_app.config['SECRET_KEY']


def create_access_token(user_id, expires_minutes=60):
    """Create a JWT access token."""
    payload = {
        'sub': str(user_id),
        'type': 'access',
        'iat': datetime.now(timezone.utc),
        'exp': datetime.now(timezone.utc) + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, _secret(), algorithm='HS256')


def decode_token(token):
    """Decode and validate a JWT token. Returns payload or None."""
    try:
        return jwt.decode(token, _secret(), algorithms=['HS256'])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def get_current_api_user():
    """Extract user from Authorization header. Returns (user, error_response)."""
    auth_header = request.headers.get('Authorization', '')
    if not auth_header.startswith('Bearer '):
        return None, (jsonify({
            'error': {
                'code': 'missing_token',
                'message': 'Authorization header with Bearer token required.',
            }
        }), 401)

    token = auth_header[7:]  # Strip "Bearer "
    payload = decode_token(token)

    if payload is None:
        return None, (jsonify({
            'error': {
                'code': 'invalid_token',
                'message': 'Token is invalid or expired.',
            }
        }), 401)

    if payload.get('type') != 'access':
        return None, (jsonify({
            'error': {
                'code': 'wrong_token_type',
                'message': 'Access token required.',
            }
        }), 401)

    try:
        user_id = int(payload['sub'])
    except (KeyError, ValueError, TypeError):
        return None, (jsonify({
            'error': {
                'code': 'invalid_token',
                'message': 'Token contains invalid user ID.',
            }
        }), 401)

    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return None, (jsonify({
            'error': {
                'code': 'user_not_found',
                'message': 'User not found or deactivated.',
            }
        }), 401)

    return user, None


def jwt_required(f):
    """Decorator: require valid JWT access token."""
    @wraps(f)
    def decorated(*args, **kwargs):
        user, error = get_current_api_user()
        if error:
            return error
        request.api_user = user
        return f(*args, **kwargs)
    return decorated


def requires_role(min_role):
    """Decorator: require staff or admin.

    Usage: @requires_role(UserRole.ADMIN)
    """
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            user, error = get_current_api_user()
            if error:
                return error

            allowed = user.is_admin if min_role == UserRole.ADMIN else user.is_staff
            if not allowed:
                return jsonify({
                    'error': {
                        'code': 'forbidden',
                        'message': 'Insufficient permissions.',
                    }
                }), 403

            request.api_user = user
            return f(*args, **kwargs)
        return decorated
    return decorator
