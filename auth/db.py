"""
User accounts for the roadmap.

Users share the roadmap's SQLite file (see database.py).  Passwords are kept
as bcrypt hashes only; a user without a hash cannot sign in.
"""

import logging
import sqlite3
from typing import Optional, Dict, List

import bcrypt

from database import _db, row_to_dict, rows_to_list, utcnow

logger = logging.getLogger(__name__)

ROLES = ["admin", "regular"]

# Columns update_user() may touch
UPDATABLE_FIELDS = ("username", "role", "is_active", "last_login_at")


def init_db():
    """Create the users table (idempotent)."""
    with _db() as conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id              INTEGER PRIMARY KEY AUTOINCREMENT,
                email           TEXT UNIQUE NOT NULL,
                username        TEXT NOT NULL,
                password_hash   TEXT,
                role            TEXT NOT NULL DEFAULT 'regular',
                is_active       INTEGER NOT NULL DEFAULT 1,
                last_login_at   TEXT,
                created_at      TEXT NOT NULL,
                updated_at      TEXT NOT NULL
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_users_email ON users(email)")
        conn.commit()
    logger.info("Users table ready")


def _hash(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


# ============ Lookups ============

def get_user_by_email(email: str) -> Optional[Dict]:
    """Active user with this email (case-insensitive), or None."""
    with _db() as conn:
        return row_to_dict(conn.execute(
            "SELECT * FROM users WHERE email = ? AND is_active = 1", (email.lower(),)
        ).fetchone())


def get_user_by_id(user_id: int) -> Optional[Dict]:
    with _db() as conn:
        return row_to_dict(conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone())


def get_all_users() -> List[Dict]:
    with _db() as conn:
        return rows_to_list(conn.execute("SELECT * FROM users ORDER BY username").fetchall())


# ============ Writes ============

def create_user(email: str, username: str, role: str = "regular", password: str = None) -> Optional[Dict]:
    """Insert a user; returns None when the email is taken."""
    now = utcnow()
    password_hash = _hash(password) if password else None
    with _db() as conn:
        try:
            conn.execute(
                "INSERT INTO users (email, username, password_hash, role, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (email.lower(), username, password_hash, role, now, now)
            )
        except sqlite3.IntegrityError:
            logger.warning(f"Not creating {email}: email already registered")
            return None
        conn.commit()
    logger.info(f"Created user {email} ({role})")
    return get_user_by_email(email)


def update_user(user_id: int, **fields) -> bool:
    """Set any of UPDATABLE_FIELDS; returns False if the user doesn't exist."""
    values = {k: v for k, v in fields.items() if k in UPDATABLE_FIELDS}
    if not values:
        return False
    values['updated_at'] = utcnow()

    assignments = ", ".join(f"{column} = ?" for column in values)
    with _db() as conn:
        cur = conn.execute(f"UPDATE users SET {assignments} WHERE id = ?", [*values.values(), user_id])
        conn.commit()
    if cur.rowcount:
        logger.info(f"User {user_id} updated: {', '.join(values)}")
    return cur.rowcount > 0


def set_user_password(user_id: int, password: str) -> bool:
    with _db() as conn:
        cur = conn.execute("UPDATE users SET password_hash = ?, updated_at = ? WHERE id = ?",
                           (_hash(password), utcnow(), user_id))
        conn.commit()
    logger.info(f"Password changed for user {user_id}")
    return cur.rowcount > 0


def verify_password(user: Optional[Dict], password: str) -> bool:
    """bcrypt check against the stored hash; False for users without one."""
    if not user or not user.get('password_hash'):
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), user['password_hash'].encode('utf-8'))
    except ValueError as e:
        logger.error(f"Stored password hash for user {user.get('id')} is unreadable: {e}")
        return False


def deactivate_user(user_id: int) -> bool:
    """Soft delete: the row stays but the user can no longer sign in."""
    return update_user(user_id, is_active=0)


def reactivate_user(user_id: int) -> bool:
    return update_user(user_id, is_active=1)
