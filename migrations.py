"""
In-place schema migrations for roadmap databases created by older releases.

Every step inspects the live table shape (PRAGMA table_info) and does nothing
when the change is already present, so run_migrations() is safe to call on
every startup.  Steps run in order:

1. initiatives.workstream was renamed to initiatives.pod
2. okrs gained is_company_wide
3. initiatives gained the Jira link columns
4. INTEGER primary keys became UUID strings
5. initiatives.okr_id moved into the initiative_okrs join table

The connection must be in autocommit mode (isolation_level=None).
"""

import logging
from contextlib import contextmanager

import database

logger = logging.getLogger(__name__)


def _columns(conn, table):
    """Map column name -> declared type (upper-cased) for a table."""
    return {row["name"]: (row["type"] or "").upper()
            for row in conn.execute(f"PRAGMA table_info({table})")}


def _fetch_all(conn, table):
    if not _columns(conn, table):
        return []
    return [dict(r) for r in conn.execute(f"SELECT * FROM {table}")]


@contextmanager
def _rebuild(conn):
    """Transaction with foreign keys off, for drop-and-recreate table changes."""
    conn.execute("PRAGMA foreign_keys=OFF")
    try:
        conn.execute("BEGIN")
        try:
            yield
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
    finally:
        conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

def rename_workstream_to_pod(conn):
    cols = _columns(conn, "initiatives")
    if "workstream" not in cols or "pod" in cols:
        return False
    conn.execute("ALTER TABLE initiatives RENAME COLUMN workstream TO pod")
    return True


def add_okr_company_wide(conn):
    if "is_company_wide" in _columns(conn, "okrs"):
        return False
    conn.execute("ALTER TABLE okrs ADD COLUMN is_company_wide INTEGER NOT NULL DEFAULT 0")
    return True


def add_jira_columns(conn):
    wanted = [
        ("jira_epic_key", "TEXT"),
        ("jira_sync_enabled", "INTEGER NOT NULL DEFAULT 1"),
        ("jira_last_synced_at", "TEXT"),
    ]
    cols = _columns(conn, "initiatives")
    missing = [(name, decl) for name, decl in wanted if name not in cols]
    for name, decl in missing:
        conn.execute(f"ALTER TABLE initiatives ADD COLUMN {name} {decl}")
    return bool(missing)


def uuid_primary_keys(conn):
    """Re-key every table from INTEGER ids to UUID strings, keeping references."""
    okr_id_type = _columns(conn, "okrs").get("id", "")
    initiative_id_type = _columns(conn, "initiatives").get("id", "")
    if not (okr_id_type.startswith("INT") or initiative_id_type.startswith("INT")):
        return False

    okrs = _fetch_all(conn, "okrs")
    okr_pods = _fetch_all(conn, "okr_pods")
    key_results = _fetch_all(conn, "key_results")
    initiatives = _fetch_all(conn, "initiatives")
    links = _fetch_all(conn, "initiative_okrs")

    def rekey(rows):
        return {r["id"]: r["id"] if isinstance(r["id"], str) else database.new_id()
                for r in rows}

    okr_map = rekey(okrs)
    initiative_map = rekey(initiatives)
    now = database.utcnow()

    with _rebuild(conn):
        for table in ("initiative_okrs", "okr_pods", "key_results", "initiatives", "okrs"):
            conn.execute(f"DROP TABLE IF EXISTS {table}")
        for ddl in (database.okrs_ddl(), database.okr_pods_ddl(), database.key_results_ddl(),
                    database.initiatives_ddl(), database.initiative_okrs_ddl()):
            conn.execute(ddl)

        for r in okrs:
            conn.execute(
                "INSERT INTO okrs (id, title, description, time_frame, is_company_wide, created_at, updated_at) "
                "VALUES (?,?,?,?,?,?,?)",
                (okr_map[r["id"]], r["title"], r.get("description"), r.get("time_frame"),
                 int(bool(r.get("is_company_wide"))), r.get("created_at") or now, r.get("updated_at") or now)
            )
        for r in okr_pods:
            if r["okr_id"] in okr_map and r["pod"] in database.PODS:
                conn.execute(
                    "INSERT OR IGNORE INTO okr_pods (okr_id, pod, created_at) VALUES (?,?,?)",
                    (okr_map[r["okr_id"]], r["pod"], r.get("created_at") or now)
                )
        for r in key_results:
            if r["okr_id"] not in okr_map:
                continue
            conn.execute(
                "INSERT INTO key_results (id, okr_id, title, target_value, current_value, unit, created_at, updated_at) "
                "VALUES (?,?,?,?,?,?,?,?)",
                (r["id"] if isinstance(r["id"], str) else database.new_id(), okr_map[r["okr_id"]],
                 r["title"], r.get("target_value"), r.get("current_value") or 0, r.get("unit"),
                 r.get("created_at") or now, r.get("updated_at") or now)
            )
        for r in initiatives:
            new_id = initiative_map[r["id"]]
            conn.execute(
                f"INSERT INTO initiatives ({', '.join(database.INITIATIVE_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in database.INITIATIVE_COLUMNS)})",
                (new_id, r["title"], r.get("description"), r.get("start_date"), r.get("end_date"),
                 r.get("developer_count") or 1, r.get("success_criteria"), r["pod"],
                 r.get("status") or "planned", r.get("jira_epic_key"),
                 0 if r.get("jira_sync_enabled") == 0 else 1, r.get("jira_last_synced_at"),
                 r.get("created_at") or now, r.get("updated_at") or now)
            )
            if r.get("okr_id") in okr_map:
                conn.execute(
                    "INSERT OR IGNORE INTO initiative_okrs (initiative_id, okr_id, position) VALUES (?,?,0)",
                    (new_id, okr_map[r["okr_id"]])
                )
        for r in links:
            if r["initiative_id"] in initiative_map and r["okr_id"] in okr_map:
                conn.execute(
                    "INSERT OR IGNORE INTO initiative_okrs (initiative_id, okr_id, position) VALUES (?,?,?)",
                    (initiative_map[r["initiative_id"]], okr_map[r["okr_id"]], r.get("position") or 0)
                )

    logger.info(f"Re-keyed {len(okrs)} OKRs and {len(initiatives)} initiatives to UUIDs")
    return True


def move_okr_link_to_join_table(conn):
    if "okr_id" not in _columns(conn, "initiatives"):
        return False

    columns = ", ".join(database.INITIATIVE_COLUMNS)
    with _rebuild(conn):
        # The single okr_id was the primary OKR, so it takes position 0.
        conn.execute("""
            UPDATE initiative_okrs SET position = position + 1
            WHERE initiative_id IN (SELECT id FROM initiatives WHERE okr_id IS NOT NULL)
        """)
        conn.execute("""
            INSERT INTO initiative_okrs (initiative_id, okr_id, position)
            SELECT id, okr_id, 0 FROM initiatives
            WHERE okr_id IS NOT NULL AND okr_id IN (SELECT id FROM okrs)
            ON CONFLICT(initiative_id, okr_id) DO UPDATE SET position = 0
        """)
        conn.execute(database.initiatives_ddl("initiatives_rebuild"))
        conn.execute(f"INSERT INTO initiatives_rebuild ({columns}) SELECT {columns} FROM initiatives")
        conn.execute("DROP TABLE initiatives")
        conn.execute("ALTER TABLE initiatives_rebuild RENAME TO initiatives")
    return True


MIGRATIONS = [
    ("rename_workstream_to_pod", rename_workstream_to_pod),
    ("add_okr_company_wide", add_okr_company_wide),
    ("add_jira_columns", add_jira_columns),
    ("uuid_primary_keys", uuid_primary_keys),
    ("move_okr_link_to_join_table", move_okr_link_to_join_table),
]


def run_migrations(conn):
    """Apply every pending step; returns the names of the steps that ran."""
    applied = []
    for name, step in MIGRATIONS:
        if step(conn):
            conn.execute(
                "INSERT OR REPLACE INTO schema_migrations (name, applied_at) VALUES (?, ?)",
                (name, database.utcnow())
            )
            logger.info(f"Applied migration: {name}")
            applied.append(name)
    return applied
