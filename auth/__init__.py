"""
Users and sessions for the product roadmap.

Session login with two roles (admin/regular); admins manage the user list.
"""

from auth.decorators import login_required, admin_required, get_current_user, is_admin
from auth.routes import auth_bp
from auth.db import ROLES, init_db, get_user_by_email, get_user_by_id, create_user, update_user

__all__ = [
    'ROLES',
    'auth_bp',
    'admin_required',
    'login_required',
    'get_current_user',
    'is_admin',
    'init_db',
    'create_user',
    'update_user',
    'get_user_by_email',
    'get_user_by_id',
]
