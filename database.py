"""
SQLite persistence for the roadmap.

Follows the same patterns as the rest of the app:
- one short-lived connection per unit of work (see _db())
- WAL mode for concurrency
- schema created lazily by init_db(), then migrated in place
"""

import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

PODS = ["Retail Therapy", "JSON ID", "Migration"]
STATUSES = ["planned", "in_progress", "completed", "blocked"]

_POD_CHECK = ", ".join(f"'{p}'" for p in PODS)
_STATUS_CHECK = ", ".join(f"'{s}'" for s in STATUSES)


def db_path():
    """Resolve the database file; /data is the persistent disk in production."""
    configured = os.environ.get("ROADMAP_DB_PATH")
    if configured:
        return configured
    if os.path.isdir("/data"):
        return "/data/roadmap.db"
    return os.path.join(os.path.dirname(__file__), "roadmap.db")


def get_conn(isolation_level=""):
    conn = sqlite3.connect(db_path(), isolation_level=isolation_level)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def _db():
    """One connection per unit of work; closed on exit, never committed implicitly."""
    conn = get_conn()
    try:
        yield conn
    finally:
        conn.close()


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def row_to_dict(row):
    return dict(row) if row else None


def rows_to_list(rows):
    return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

def okrs_ddl(name="okrs"):
    return f"""
        CREATE TABLE IF NOT EXISTS {name} (
            id              TEXT PRIMARY KEY,
            title           TEXT NOT NULL,
            description     TEXT,
            time_frame      TEXT,
            is_company_wide INTEGER NOT NULL DEFAULT 0,
            created_at      TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at      TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """


def okr_pods_ddl(name="okr_pods"):
    return f"""
        CREATE TABLE IF NOT EXISTS {name} (
            okr_id      TEXT NOT NULL REFERENCES okrs(id) ON DELETE CASCADE,
            pod         TEXT NOT NULL CHECK(pod IN ({_POD_CHECK})),
            created_at  TEXT DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (okr_id, pod)
        )
    """


def key_results_ddl(name="key_results"):
    return f"""
        CREATE TABLE IF NOT EXISTS {name} (
            id              TEXT PRIMARY KEY,
            okr_id          TEXT NOT NULL REFERENCES okrs(id) ON DELETE CASCADE,
            title           TEXT NOT NULL,
            target_value    REAL,
            current_value   REAL NOT NULL DEFAULT 0,
            unit            TEXT,
            created_at      TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at      TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """


def initiatives_ddl(name="initiatives"):
    return f"""
        CREATE TABLE IF NOT EXISTS {name} (
            id                  TEXT PRIMARY KEY,
            title               TEXT NOT NULL,
            description         TEXT,
            start_date          TEXT,
            end_date            TEXT,
            developer_count     INTEGER NOT NULL DEFAULT 1,
            success_criteria    TEXT,
            pod                 TEXT NOT NULL CHECK(pod IN ({_POD_CHECK})),
            status              TEXT NOT NULL DEFAULT 'planned' CHECK(status IN ({_STATUS_CHECK})),
            jira_epic_key       TEXT,
            jira_sync_enabled   INTEGER NOT NULL DEFAULT 1,
            jira_last_synced_at TEXT,
            created_at          TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at          TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """


def initiative_okrs_ddl(name="initiative_okrs"):
    return f"""
        CREATE TABLE IF NOT EXISTS {name} (
            initiative_id   TEXT NOT NULL REFERENCES initiatives(id) ON DELETE CASCADE,
            okr_id          TEXT NOT NULL REFERENCES okrs(id) ON DELETE CASCADE,
            position        INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (initiative_id, okr_id)
        )
    """


INITIATIVE_COLUMNS = [
    "id", "title", "description", "start_date", "end_date", "developer_count",
    "success_criteria", "pod", "status", "jira_epic_key", "jira_sync_enabled",
    "jira_last_synced_at", "created_at", "updated_at",
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_initiatives_pod ON initiatives(pod)",
    "CREATE INDEX IF NOT EXISTS idx_initiatives_dates ON initiatives(start_date, end_date)",
    "CREATE INDEX IF NOT EXISTS idx_key_results_okr ON key_results(okr_id)",
    "CREATE INDEX IF NOT EXISTS idx_okr_pods_pod ON okr_pods(pod)",
    "CREATE INDEX IF NOT EXISTS idx_initiative_okrs_okr ON initiative_okrs(okr_id)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_initiatives_jira_key "
    "ON initiatives(jira_epic_key) WHERE jira_epic_key IS NOT NULL",
]


def init_db():
    """Create tables, bring older databases up to date, then build indexes."""
    from migrations import run_migrations

    os.makedirs(os.path.dirname(os.path.abspath(db_path())), exist_ok=True)
    # Autocommit: migrations manage their own transactions and toggle
    # foreign_keys, which SQLite ignores inside a transaction.
    conn = get_conn(isolation_level=None)
    try:
        for ddl in (okrs_ddl(), okr_pods_ddl(), key_results_ddl(),
                    initiatives_ddl(), initiative_okrs_ddl()):
            conn.execute(ddl)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_migrations (
                name        TEXT PRIMARY KEY,
                applied_at  TEXT NOT NULL
            )
        """)
        run_migrations(conn)
        for stmt in INDEXES:
            conn.execute(stmt)
    finally:
        conn.close()
    logger.info(f"Roadmap database initialized at {db_path()}")
