import os
import time
import logging
from functools import wraps
from datetime import datetime
from typing import Optional, Dict

import jwt
from flask import request, jsonify, session, g, current_app

from supabase_service import SupabaseError

logger = logging.getLogger(__name__)

SESSION_TIMEOUT_SECONDS = 7200
# Förnya access token strax innan den går ut
TOKEN_REFRESH_MARGIN_SECONDS = 30

ADMIN_ROLES = ('admin', 'superadmin')


def get_gateway():
    return current_app.extensions['supabase']


def _profile_from_metadata(auth_user: Dict) -> Dict:
    meta = auth_user.get('user_metadata') or {}
    return {
        'id': auth_user.get('id') or auth_user.get('sub'),
        'email': auth_user.get('email'),
        'fornamn': meta.get('fornamn', ''),
        'efternamn': meta.get('efternamn', ''),
        'adress': meta.get('adress'),
        'roll': meta.get('roll') or 'user',
    }


def load_profile(auth_user: Dict, access_token: str) -> Dict:
    """Profilraden i fastighets_users, annars metadata från auth-användaren."""
    email = auth_user.get('email')
    profile = None
    try:
        profile = get_gateway().with_token(access_token).get_user_by_email(email)
    except SupabaseError as e:
        logger.error(f"Could not load profile for {email}: {e.message}")
    if not profile:
        logger.warning(f"No fastighets_users row for {email}, using user_metadata")
        return _profile_from_metadata(auth_user)
    profile.setdefault('roll', 'user')
    return profile


def decode_access_token(token: str) -> Optional[Dict]:
    """Verifiera en Supabase access token.

    Med SUPABASE_JWT_SECRET verifieras signaturen lokalt (HS256), annars
    frågas GoTrue om användaren.
    """
    if not token:
        return None
    secret = os.getenv('SUPABASE_JWT_SECRET')
    if secret:
        try:
            claims = jwt.decode(
                token,
                secret,
                algorithms=['HS256'],
                audience='authenticated',
                options={'verify_exp': True},
            )
        except jwt.InvalidTokenError as e:
            logger.warning(f"Token validation failed: {e}")
            return None
        return {
            'id': claims.get('sub'),
            'email': claims.get('email'),
            'user_metadata': claims.get('user_metadata') or {},
        }
    try:
        return get_gateway().get_auth_user(token) or None
    except SupabaseError as e:
        logger.warning(f"Token rejected by auth service: {e.message}")
        return None


def _store_session(auth: Dict, profile: Dict):
    session['user'] = profile
    session['access_token'] = auth.get('access_token')
    session['refresh_token'] = auth.get('refresh_token')
    expires_in = auth.get('expires_in') or 3600
    session['expires_at'] = auth.get('expires_at') or int(time.time()) + int(expires_in)
    session.modified = True


def login_user(email: str, password: str) -> Dict:
    """Logga in mot GoTrue och spara användaren i sessionen."""
    auth = get_gateway().sign_in_with_password(email, password)
    access_token = auth.get('access_token')
    if not access_token:
        raise SupabaseError('Inloggningen misslyckades', 401)
    profile = load_profile(auth.get('user') or {'email': email}, access_token)

    session.clear()
    _store_session(auth, profile)
    session['login_time'] = datetime.now().isoformat()
    session.permanent = False
    logger.info(f"User logged in: id={profile.get('id')} roll={profile.get('roll')}")
    return profile


def logout_user():
    token = session.get('access_token')
    if token:
        try:
            get_gateway().sign_out(token)
        except SupabaseError as e:
            logger.warning(f"Sign out failed at auth service: {e.message}")
    session.clear()
    g.pop('current_user', None)
    g.pop('access_token', None)


def _refresh_if_needed() -> Optional[str]:
    token = session.get('access_token')
    expires_at = session.get('expires_at') or 0
    if token and time.time() < expires_at - TOKEN_REFRESH_MARGIN_SECONDS:
        return token
    refresh_token = session.get('refresh_token')
    if not refresh_token:
        return token
    try:
        auth = get_gateway().refresh_session(refresh_token)
    except SupabaseError as e:
        logger.warning(f"Token refresh failed: {e.message}")
        return None
    _store_session(auth, session.get('user') or {})
    logger.info(f"Refreshed access token for user {session['user'].get('id')}")
    return session.get('access_token')


def _bearer_token() -> Optional[str]:
    auth_header = request.headers.get('Authorization') or ''
    if auth_header.startswith('Bearer '):
        return auth_header.split(' ', 1)[1].strip() or None
    return None


def current_user() -> Optional[Dict]:
    return g.get('current_user')


def current_access_token() -> Optional[str]:
    return g.get('access_token') or session.get('access_token')


def _session_expired() -> bool:
    login_time = session.get('login_time')
    if not login_time:
        return False
    if isinstance(login_time, str):
        login_time = datetime.fromisoformat(login_time)
    return (datetime.now() - login_time).total_seconds() > SESSION_TIMEOUT_SECONDS


def require_auth(f):
    """Decorator som kräver inloggning via session eller Bearer-token"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        bearer = _bearer_token()
        if bearer:
            auth_user = decode_access_token(bearer)
            if not auth_user:
                return jsonify({'error': 'Invalid token'}), 401
            g.access_token = bearer
            g.current_user = load_profile(auth_user, bearer)
            return f(*args, **kwargs)

        if 'user' not in session:
            logger.warning(f"Authentication failed for {request.path}. No user in session.")
            return jsonify({'error': 'Authentication required'}), 401

        if _session_expired():
            user_id = session.get('user', {}).get('id', 'unknown')
            session.clear()
            logger.warning(f"Session expired for user: {user_id}")
            return jsonify({'error': 'Session expired'}), 401

        token = _refresh_if_needed()
        if not token:
            session.clear()
            return jsonify({'error': 'Session expired'}), 401

        g.access_token = token
        g.current_user = session['user']
        return f(*args, **kwargs)
    return decorated_function


def require_admin(f):
    """Decorator som släpper igenom admin och superadmin."""
    @wraps(f)
    def decorated(*args, **kwargs):
        user = current_user() or {}
        if user.get('roll') not in ADMIN_ROLES:
            logger.warning(f"Admin required for {request.path}. id={user.get('id')} roll={user.get('roll')}")
            return jsonify({'error': 'Forbidden'}), 403
        return f(*args, **kwargs)
    return decorated


def require_superadmin(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        user = current_user() or {}
        if user.get('roll') != 'superadmin':
            logger.warning(f"Superadmin required for {request.path}. id={user.get('id')}")
            return jsonify({'error': 'Forbidden'}), 403
        return f(*args, **kwargs)
    return decorated
