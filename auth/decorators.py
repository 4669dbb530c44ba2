"""
Route guards for the roadmap.

API routes (/api/...) answer with JSON errors; pages redirect, to the login
form when there is no session and to the roadmap when the role is wrong.
"""

from functools import wraps
from flask import session, redirect, url_for, jsonify, request


def _deny(status: int, message: str, page_redirect: str):
    if request.path.startswith('/api/'):
        return jsonify({'error': message}), status
    return redirect(page_redirect)


def _login_redirect() -> str:
    return url_for('auth.login', next=request.full_path)


def login_required(f):
    """Only let signed-in users through."""
    @wraps(f)
    def guarded(*args, **kwargs):
        if not session.get('authenticated'):
            return _deny(401, 'Authentication required', _login_redirect())
        return f(*args, **kwargs)
    return guarded


def admin_required(f):
    """Like @login_required, and the user must also have the admin role."""
    @wraps(f)
    def guarded(*args, **kwargs):
        if not session.get('authenticated'):
            return _deny(401, 'Authentication required', _login_redirect())
        if session.get('role') != 'admin':
            return _deny(403, 'Admin access required', url_for('roadmap.home'))
        return f(*args, **kwargs)
    return guarded


def get_current_user() -> dict:
    """Session copy of the signed-in user, or {} when nobody is signed in."""
    if not session.get('authenticated'):
        return {}
    return {key: session.get(session_key) for key, session_key in
            (('id', 'user_id'), ('email', 'email'), ('username', 'username'), ('role', 'role'))}


def is_admin() -> bool:
    return bool(session.get('authenticated') and session.get('role') == 'admin')
