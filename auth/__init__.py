"""
Auth Module for Fortune Magnet Billing
Domain: Bearer-token authentication against Supabase Auth
"""

import os
import sys
import jwt
import requests
from functools import wraps
from flask import request, jsonify, g

from billing.errors import AuthenticationError

# Supabase signs access tokens with the project JWT secret (HS256)
SUPABASE_URL = os.environ.get('SUPABASE_URL', '')
SUPABASE_ANON_KEY = os.environ.get('SUPABASE_ANON_KEY', '')
JWT_ALGORITHM = 'HS256'
JWT_AUDIENCE = 'authenticated'


def verify_supabase_jwt(token: str) -> dict:
    """Verify and decode a Supabase access token."""
    secret = os.environ.get('SUPABASE_JWT_SECRET', '')
    try:
        payload = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM], audience=JWT_AUDIENCE)
        return payload
    except jwt.ExpiredSignatureError:
        raise ValueError('Token has expired')
    except jwt.InvalidTokenError as e:
        raise ValueError(f'Invalid token: {str(e)}')


def fetch_supabase_user(token: str) -> dict:
    """Validate a token via the Supabase /auth/v1/user endpoint.
    Returns the user object, or None if the token is rejected."""
    if not SUPABASE_URL:
        return None

    try:
        resp = requests.get(
            f'{SUPABASE_URL}/auth/v1/user',
            headers={
                'Authorization': f'Bearer {token}',
                'apikey': SUPABASE_ANON_KEY,
            },
            timeout=10
        )
        if resp.status_code != 200:
            print(f'[AUTH] /auth/v1/user rejected token: {resp.status_code}', file=sys.stderr)
            return None
        return resp.json()
    except requests.RequestException as e:
        print(f'[AUTH] /auth/v1/user failed: {e}', file=sys.stderr)
        return None


def bearer_token() -> str:
    auth_header = request.headers.get('Authorization', '')
    if not auth_header:
        return None
    if auth_header.startswith('Bearer '):
        return auth_header[7:]
    return auth_header


def authenticate_request() -> dict:
    """
    Resolve the calling user from the Authorization header.

    Uses local JWT verification when SUPABASE_JWT_SECRET is set, and the
    Supabase user endpoint otherwise.

    Returns:
        {'user_id': ..., 'email': ...}

    Raises:
        AuthenticationError: no header, or token rejected
    """
    token = bearer_token()
    if not token:
        raise AuthenticationError('No authorization header provided')

    if os.environ.get('SUPABASE_JWT_SECRET'):
        try:
            payload = verify_supabase_jwt(token)
        except ValueError as e:
            raise AuthenticationError(f'Authentication error: {e}')
        user_id, email = payload.get('sub'), payload.get('email')
    else:
        user = fetch_supabase_user(token)
        if not user:
            raise AuthenticationError('Authentication error: invalid token')
        user_id, email = user.get('id'), user.get('email')

    if not user_id or not email:
        raise AuthenticationError('User not authenticated or email not available')

    return {'user_id': user_id, 'email': email}


def require_user(f):
    """Decorator to require an authenticated Supabase user."""
    @wraps(f)
    def decorated(*args, **kwargs):
        try:
            g.current_user = authenticate_request()
        except AuthenticationError as e:
            return jsonify({'error': e.message}), 401
        return f(*args, **kwargs)

    return decorated
