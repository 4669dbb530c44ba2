"""
Authentication routes for the roadmap.

Provides routes for:
- Login/logout (HTML form or JSON)
- Current user lookup
- Admin user management
"""

import logging

from flask import Blueprint, render_template, request, redirect, url_for, session, jsonify

from auth.db import (
    ROLES,
    create_user,
    deactivate_user,
    get_all_users,
    get_user_by_email,
    get_user_by_id,
    reactivate_user,
    update_user,
    verify_password,
)
from auth.decorators import login_required, admin_required, get_current_user
from database import utcnow

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__)

MIN_PASSWORD_LENGTH = 8


def _safe_user(user: dict) -> dict:
    """User fields that are fine to send to the browser."""
    return {
        'id': user['id'],
        'email': user['email'],
        'username': user['username'],
        'role': user['role'],
        'is_active': bool(user.get('is_active')),
        'has_password': bool(user.get('password_hash')),
        'last_login_at': user.get('last_login_at'),
        'created_at': user.get('created_at'),
    }


def _create_session(user: dict):
    """Create session variables for authenticated user."""
    session.permanent = True
    session['authenticated'] = True
    session['user_id'] = user['id']
    session['email'] = user['email']
    session['username'] = user['username']
    session['role'] = user['role']


def _authenticate(email: str, password: str):
    """Return (user, error)."""
    if not email or not password:
        return None, "Please enter your email and password"
    if not isinstance(password, str):
        return None, "Invalid email or password"
    user = get_user_by_email(email)
    if not user or not verify_password(user, password):
        return None, "Invalid email or password"
    return user, None


# ============ Login/Logout ============

@auth_bp.route('/login', methods=['GET', 'POST'])
def login():
    """Login page with email and password; also accepts a JSON body."""
    if request.is_json:
        data = request.get_json(silent=True) or {}
        user, error = _authenticate(str(data.get('email', '')).strip().lower(), data.get('password', ''))
        if error:
            return jsonify({'error': error}), 401
        _create_session(user)
        update_user(user['id'], last_login_at=utcnow())
        logger.info(f"User logged in: {user['email']}")
        return jsonify(_safe_user(user))

    if session.get('authenticated'):
        return redirect(url_for('roadmap.home'))

    error = None
    if request.method == 'POST':
        user, error = _authenticate(request.form.get('email', '').strip().lower(),
                                    request.form.get('password', ''))
        if not error:
            _create_session(user)
            update_user(user['id'], last_login_at=utcnow())
            logger.info(f"User logged in: {user['email']}")
            next_url = request.args.get('next', '')
            # only follow same-site relative paths
            if next_url.startswith('/') and not next_url.startswith('//'):
                return redirect(next_url)
            return redirect(url_for('roadmap.home'))

    return render_template('login.html', error=error)


@auth_bp.route('/logout')
def logout():
    """Logout and clear session."""
    email = session.get('email', 'unknown')
    session.clear()
    logger.info(f"User logged out: {email}")
    return redirect(url_for('auth.login'))


@auth_bp.route('/api/auth/me')
@login_required
def api_me():
    return jsonify(get_current_user())


# ============ Admin User Management ============

@auth_bp.route('/api/admin/users')
@admin_required
def api_admin_users():
    """API endpoint for user list."""
    return jsonify([_safe_user(user) for user in get_all_users()])


@auth_bp.route('/api/admin/users', methods=['POST'])
@admin_required
def api_admin_create_user():
    data = request.get_json(silent=True) or {}
    email = str(data.get('email', '')).strip().lower()
    username = str(data.get('username', '')).strip()
    password = data.get('password') or ''
    role = data.get('role', 'regular')

    if not email or not username:
        return jsonify({'error': 'email and username are required'}), 400
    if role not in ROLES:
        return jsonify({'error': 'Invalid role'}), 400
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        return jsonify({'error': f'Password must be at least {MIN_PASSWORD_LENGTH} characters'}), 400

    user = create_user(email=email, username=username, role=role, password=password)
    if not user:
        return jsonify({'error': 'A user with that email already exists'}), 409
    logger.info(f"User {email} created by {session.get('email')}")
    return jsonify(_safe_user(user)), 201


@auth_bp.route('/api/admin/users/<int:user_id>/role', methods=['POST'])
@admin_required
def api_update_user_role(user_id):
    """Update a user's role (admin only)."""
    data = request.get_json(silent=True) or {}
    role = data.get('role')

    if role not in ROLES:
        return jsonify({'error': 'Invalid role'}), 400

    # Prevent removing your own admin role
    if user_id == session.get('user_id') and role != 'admin':
        return jsonify({'error': 'Cannot remove your own admin role'}), 400

    if not update_user(user_id, role=role):
        return jsonify({'error': 'User not found'}), 404
    user = get_user_by_id(user_id)
    logger.info(f"User {user['email']} role changed to {role} by {session.get('email')}")
    return jsonify({'message': f'Role updated to {role}'})


@auth_bp.route('/api/admin/users/<int:user_id>/deactivate', methods=['POST'])
@admin_required
def api_deactivate_user(user_id):
    """Deactivate a user (admin only)."""
    if user_id == session.get('user_id'):
        return jsonify({'error': 'Cannot deactivate your own account'}), 400

    if not deactivate_user(user_id):
        return jsonify({'error': 'User not found'}), 404
    logger.info(f"User {user_id} deactivated by {session.get('email')}")
    return jsonify({'message': 'User deactivated'})


@auth_bp.route('/api/admin/users/<int:user_id>/activate', methods=['POST'])
@admin_required
def api_activate_user(user_id):
    """Reactivate a deactivated user (admin only)."""
    if not reactivate_user(user_id):
        return jsonify({'error': 'User not found'}), 404
    logger.info(f"User {user_id} reactivated by {session.get('email')}")
    return jsonify({'message': 'User reactivated'})
