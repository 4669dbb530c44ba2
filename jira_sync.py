"""
Jira sync routes and jobs.

Initiatives linked to an epic (jira_epic_key set, jira_sync_enabled on) take
their title, description, status and dates from Jira.  A sync is "stale"
once jira_last_synced_at is older than JIRA_SYNC_INTERVAL_MINUTES.
"""

import logging
import os
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

from flask import Blueprint, jsonify, request

from auth import login_required
from database import _db, utcnow
from initiatives import get_initiative, update_initiative_columns
from jira_client import (
    JiraError,
    get_epic,
    is_jira_configured,
    map_epic_to_initiative_fields,
    search_epics,
)

logger = logging.getLogger(__name__)

jira_bp = Blueprint('jira', __name__)

SYNC_WORKERS = 4
NOT_CONFIGURED = {"error": "Jira is not configured on this server."}
DEFAULT_SYNC_INTERVAL_MINUTES = 15


def sync_interval_minutes() -> int:
    raw = os.environ.get("JIRA_SYNC_INTERVAL_MINUTES", str(DEFAULT_SYNC_INTERVAL_MINUTES))
    try:
        minutes = int(raw)
    except ValueError:
        minutes = 0
    if minutes < 1:
        logger.warning(f"Ignoring JIRA_SYNC_INTERVAL_MINUTES={raw!r}; "
                       f"using {DEFAULT_SYNC_INTERVAL_MINUTES}")
        return DEFAULT_SYNC_INTERVAL_MINUTES
    return minutes


def _apply_fields(db, initiative_id, fields):
    """Write mirrored epic fields and stamp the sync time. Caller commits."""
    update_initiative_columns(db, initiative_id, dict(fields, jira_last_synced_at=utcnow()))


def sync_initiative_from_jira(initiative_id, epic_key):
    """Pull one epic and overwrite the initiative's mirrored fields."""
    fields = map_epic_to_initiative_fields(get_epic(epic_key))
    with _db() as db:
        _apply_fields(db, initiative_id, fields)
        db.commit()
        initiative = get_initiative(db, initiative_id)
    logger.info(f"Synced initiative {initiative_id} from Jira epic {epic_key}")
    return initiative


def stale_linked_initiatives(now=None):
    now = now or datetime.now(timezone.utc)
    stale_before = (now - timedelta(minutes=sync_interval_minutes())).isoformat()
    with _db() as db:
        rows = db.execute(
            """SELECT id, jira_epic_key FROM initiatives
               WHERE jira_epic_key IS NOT NULL
                 AND jira_sync_enabled = 1
                 AND (jira_last_synced_at IS NULL OR jira_last_synced_at < ?)""",
            (stale_before,)
        ).fetchall()
    return [(r["id"], r["jira_epic_key"]) for r in rows]


def _fetch_fields(item):
    """(initiative id, mirrored fields or None when the epic couldn't be used)."""
    initiative_id, epic_key = item
    try:
        return initiative_id, map_epic_to_initiative_fields(get_epic(epic_key))
    except JiraError as e:
        logger.error(f"Jira sync failed for initiative {initiative_id} ({epic_key}): {e}")
    except Exception:
        logger.exception(f"Unexpected error syncing initiative {initiative_id} ({epic_key})")
    return initiative_id, None


def sync_stale_initiatives():
    """Sync every stale linked initiative; one failure does not stop the rest."""
    linked = stale_linked_initiatives()
    if not linked:
        return {"synced": 0, "failed": 0, "total": 0}

    with ThreadPoolExecutor(max_workers=SYNC_WORKERS) as pool:
        fetched = list(pool.map(_fetch_fields, linked))

    synced = 0
    with _db() as db:
        for initiative_id, fields in fetched:
            if fields is None:
                continue
            try:
                _apply_fields(db, initiative_id, fields)
                db.commit()
            except sqlite3.Error as e:
                db.rollback()
                logger.error(f"Could not save Jira sync for initiative {initiative_id}: {e}")
                continue
            synced += 1

    results = {"synced": synced, "failed": len(linked) - synced, "total": len(linked)}
    logger.info(f"Jira sync: {results['synced']} synced, {results['failed']} failed of {results['total']}")
    return results


def sync_stale_scheduled():
    """Scheduled stale sync (runs on an interval from the app scheduler)."""
    if not is_jira_configured():
        return
    try:
        sync_stale_initiatives()
    except Exception as e:
        logger.error(f"Scheduled Jira sync failed: {e}")


def _sync_one(initiative_id):
    with _db() as db:
        row = db.execute("SELECT id, jira_epic_key FROM initiatives WHERE id = ?", (initiative_id,)).fetchone()
    if not row:
        return jsonify({"error": "Initiative not found"}), 404
    if not row["jira_epic_key"]:
        return jsonify({"error": "Initiative is not linked to a Jira epic"}), 400
    try:
        return jsonify(sync_initiative_from_jira(row["id"], row["jira_epic_key"]))
    except JiraError as e:
        logger.error(f"Error syncing initiative {initiative_id} from Jira: {e}")
        return jsonify({"error": str(e) or "Failed to sync from Jira"}), 502


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

@jira_bp.route("/api/jira/status", methods=["GET"])
@login_required
def api_jira_status():
    return jsonify({"configured": is_jira_configured()})


@jira_bp.route("/api/jira/search", methods=["GET"])
@login_required
def api_jira_search():
    if not is_jira_configured():
        return jsonify(NOT_CONFIGURED), 503
    q = request.args.get("q", "").strip()
    if not q:
        return jsonify({"error": 'Query parameter "q" is required.'}), 400
    try:
        return jsonify(search_epics(q))
    except JiraError as e:
        logger.error(f"Error searching Jira epics: {e}")
        return jsonify({"error": str(e) or "Failed to search Jira epics"}), 502


@jira_bp.route("/api/jira/sync", methods=["POST"])
@login_required
def api_jira_sync():
    if not is_jira_configured():
        return jsonify(NOT_CONFIGURED), 503
    data = request.get_json(silent=True) or {}
    if data.get("id"):
        return _sync_one(str(data["id"]))
    try:
        return jsonify(sync_stale_initiatives())
    except Exception as e:
        logger.error(f"Error syncing all Jira initiatives: {e}")
        return jsonify({"error": str(e) or "Failed to sync initiatives"}), 500


@jira_bp.route("/api/jira/sync/<initiative_id>", methods=["POST"])
@login_required
def api_jira_sync_one(initiative_id):
    if not is_jira_configured():
        return jsonify(NOT_CONFIGURED), 503
    return _sync_one(initiative_id)
