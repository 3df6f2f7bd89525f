"""Utility functions for the Flask application."""
import bcrypt
from functools import wraps
from typing import Optional

from flask import session, jsonify

from .models import db, User
from .services.session_registry import MarkerContext, get_registry

SESSION_TOKEN_KEY = 'marker_token'


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    password_bytes = password.encode('utf-8')
    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(password_bytes, salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against a bcrypt hash."""
    password_bytes = password.encode('utf-8')
    hash_bytes = password_hash.encode('utf-8')
    return bcrypt.checkpw(password_bytes, hash_bytes)


def get_current_user() -> Optional[User]:
    """Get the currently logged-in user."""
    user_id = session.get('user_id')
    if user_id:
        return db.session.get(User, user_id)
    return None


def get_marker_context() -> Optional[MarkerContext]:
    """Marker context opened for this login, if it is still alive."""
    context = get_registry().get(session.get(SESSION_TOKEN_KEY))
    if context is None or context.user_id != session.get('user_id'):
        return None
    return context


def login_required(f):
    """Decorator to require a login (and its marker context) for an API route."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'error': 'Not authenticated'}), 401
        if get_marker_context() is None:
            # Contexts live in memory, so a restart means logging in again.
            session.clear()
            return jsonify({'error': 'Session expired, please log in again'}), 401
        return f(*args, **kwargs)
    return decorated_function
