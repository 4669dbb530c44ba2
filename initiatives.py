"""
Initiatives Module
Roadmap work items: dates, developer counts, status, OKR links and the
optional Jira epic each one mirrors.
"""

import logging
import sqlite3
from datetime import date

from flask import Blueprint, jsonify, request

from auth import login_required
from database import INITIATIVE_COLUMNS, PODS, STATUSES, _db, new_id, utcnow
from jira_client import (
    JiraError,
    get_epic,
    is_jira_configured,
    is_valid_epic_key,
    map_epic_to_initiative_fields,
)
from okrs import load_okrs, missing_okr_ids

logger = logging.getLogger(__name__)

initiatives_bp = Blueprint('initiatives', __name__)

# JSON field -> column, for fields copied straight through after validation
FIELD_COLUMNS = {
    "title": "title",
    "description": "description",
    "startDate": "start_date",
    "endDate": "end_date",
    "developerCount": "developer_count",
    "successCriteria": "success_criteria",
    "pod": "pod",
    "status": "status",
    "jiraEpicKey": "jira_epic_key",
    "jiraSyncEnabled": "jira_sync_enabled",
}

# Fields a linked Jira epic can fill in on create
EPIC_PREFILL_COLUMNS = ("title", "description", "status", "start_date", "end_date")


# ---------------------------------------------------------------------------
# Serialization & queries
# ---------------------------------------------------------------------------

def initiative_to_json(row, okrs):
    return {
        "id": row["id"],
        "title": row["title"],
        "description": row["description"],
        "startDate": row["start_date"],
        "endDate": row["end_date"],
        "developerCount": row["developer_count"],
        "okrIds": [okr["id"] for okr in okrs],
        "okrs": okrs,
        "successCriteria": row["success_criteria"],
        "pod": row["pod"],
        "status": row["status"],
        "jiraEpicKey": row["jira_epic_key"],
        "jiraSyncEnabled": bool(row["jira_sync_enabled"]),
        "jiraLastSyncedAt": row["jira_last_synced_at"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def okr_ids_by_initiative(db, initiative_ids):
    """initiative id -> linked OKR ids, primary first."""
    result = {i: [] for i in initiative_ids}
    if not initiative_ids:
        return result
    rows = db.execute(
        f"SELECT initiative_id, okr_id FROM initiative_okrs "
        f"WHERE initiative_id IN ({', '.join('?' for _ in initiative_ids)}) "
        f"ORDER BY position ASC, rowid ASC",
        list(initiative_ids)
    ).fetchall()
    for r in rows:
        result[r["initiative_id"]].append(r["okr_id"])
    return result


def load_initiatives(db, where="1=1", params=(), order="created_at DESC, rowid DESC"):
    rows = db.execute(f"SELECT * FROM initiatives WHERE {where} ORDER BY {order}", list(params)).fetchall()
    links = okr_ids_by_initiative(db, [r["id"] for r in rows])
    all_okr_ids = sorted({okr_id for ids in links.values() for okr_id in ids})
    okrs = {okr["id"]: okr for okr in load_okrs(db, all_okr_ids, with_key_results=False)}
    return [initiative_to_json(r, [okrs[i] for i in links[r["id"]] if i in okrs]) for r in rows]


def get_initiative(db, initiative_id):
    found = load_initiatives(db, "id = ?", (initiative_id,))
    return found[0] if found else None


def set_okr_links(db, initiative_id, okr_ids):
    db.execute("DELETE FROM initiative_okrs WHERE initiative_id = ?", (initiative_id,))
    for position, okr_id in enumerate(okr_ids):
        db.execute(
            "INSERT INTO initiative_okrs (initiative_id, okr_id, position) VALUES (?,?,?)",
            (initiative_id, okr_id, position)
        )


def update_initiative_columns(db, initiative_id, values):
    """UPDATE the given columns and bump updated_at. Caller commits."""
    values = dict(values, updated_at=utcnow())
    set_clause = ", ".join(f"{column} = ?" for column in values)
    db.execute(f"UPDATE initiatives SET {set_clause} WHERE id = ?", list(values.values()) + [initiative_id])


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _clean_text(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def parse_date(value, field):
    """Accept YYYY-MM-DD (or a full ISO timestamp) and return YYYY-MM-DD."""
    if value in (None, ""):
        return None
    try:
        return date.fromisoformat(str(value)[:10]).isoformat()
    except ValueError:
        raise ValueError(f"{field} must be a date in YYYY-MM-DD format")


def _developer_count(value):
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError("developerCount must be a whole number of at least 1")
    return value


def _okr_ids_from(data):
    """Ordered, de-duplicated OKR ids from okrIds (or the older single okrId)."""
    if "okrIds" in data:
        raw = data["okrIds"] or []
        if not isinstance(raw, list):
            raise ValueError("okrIds must be a list")
    elif "okrId" in data:
        raw = [data["okrId"]] if data["okrId"] else []
    else:
        return None
    ids = []
    for okr_id in raw:
        okr_id = str(okr_id)
        if okr_id not in ids:
            ids.append(okr_id)
    return ids


def validated_columns(data):
    """Translate a JSON payload into column values, validating what is present."""
    values = {}
    for key, column in FIELD_COLUMNS.items():
        if key not in data:
            continue
        value = data[key]
        if column in ("start_date", "end_date"):
            value = parse_date(value, key)
        elif column == "developer_count":
            value = _developer_count(value)
        elif column == "pod":
            if value not in PODS:
                raise ValueError(f"Pod must be one of: {', '.join(PODS)}")
        elif column == "status":
            if value not in STATUSES:
                raise ValueError(f"Status must be one of: {', '.join(STATUSES)}")
        elif column == "jira_sync_enabled":
            value = 1 if value else 0
        elif column == "jira_epic_key":
            value = _epic_key(value)
        else:
            value = _clean_text(value)
        values[column] = value
    return values


def _epic_key(value):
    """Upper-cased Jira issue key (PROJ-123), or None to unlink."""
    key = _clean_text(value)
    if key is None:
        return None
    key = key.upper()
    if not is_valid_epic_key(key):
        raise ValueError("jiraEpicKey must look like PROJ-123")
    return key


def _check_date_order(start_date, end_date):
    if start_date and end_date and end_date < start_date:
        raise ValueError("endDate must be on or after startDate")


def _prefill_from_epic(values):
    """Fill blank fields from the linked Jira epic; returns True if Jira answered."""
    try:
        epic_fields = map_epic_to_initiative_fields(get_epic(values["jira_epic_key"]))
    except JiraError as e:
        logger.error(f"Failed to fetch Jira epic {values['jira_epic_key']} on create "
                     f"(using provided fields): {e}")
        return False
    for column in EPIC_PREFILL_COLUMNS:
        if not values.get(column):
            values[column] = epic_fields[column]
    return True


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

@initiatives_bp.route("/api/initiatives", methods=["GET"])
@login_required
def api_initiatives_list():
    where = ["1=1"]
    params = []
    pod = request.args.get("pod")
    okr_id = request.args.get("okr_id")
    status = request.args.get("status")
    if pod:
        where.append("pod = ?"); params.append(pod)
    if okr_id:
        where.append("id IN (SELECT initiative_id FROM initiative_okrs WHERE okr_id = ?)"); params.append(okr_id)
    if status:
        where.append("status = ?"); params.append(status)
    with _db() as db:
        return jsonify(load_initiatives(db, " AND ".join(where), params))


@initiatives_bp.route("/api/initiatives/scoped", methods=["GET"])
@login_required
def api_initiatives_scoped():
    with _db() as db:
        return jsonify(load_initiatives(
            db, "start_date IS NOT NULL AND end_date IS NOT NULL",
            order="start_date ASC, created_at ASC"
        ))


@initiatives_bp.route("/api/initiatives/unscoped", methods=["GET"])
@login_required
def api_initiatives_unscoped():
    with _db() as db:
        return jsonify(load_initiatives(db, "start_date IS NULL OR end_date IS NULL"))


@initiatives_bp.route("/api/initiatives/<initiative_id>", methods=["GET"])
@login_required
def api_initiatives_get(initiative_id):
    with _db() as db:
        initiative = get_initiative(db, initiative_id)
    if not initiative:
        return jsonify({"error": "Initiative not found"}), 404
    return jsonify(initiative)


@initiatives_bp.route("/api/initiatives", methods=["POST"])
@login_required
def api_initiatives_create():
    data = request.get_json(silent=True) or {}
    if data.get("pod") not in PODS:
        return jsonify({"error": f"Pod must be one of: {', '.join(PODS)}"}), 400
    try:
        values = validated_columns(data)
        okr_ids = _okr_ids_from(data) or []
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    synced_at = None
    if values.get("jira_epic_key") and is_jira_configured():
        if _prefill_from_epic(values):
            synced_at = utcnow()

    if not values.get("title"):
        return jsonify({"error": "Title is required"}), 400
    try:
        values["start_date"] = parse_date(values.get("start_date"), "startDate")
        values["end_date"] = parse_date(values.get("end_date"), "endDate")
        _check_date_order(values["start_date"], values["end_date"])
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    now = utcnow()
    values.setdefault("developer_count", 1)
    values["status"] = values.get("status") or "planned"
    values.setdefault("jira_sync_enabled", 1)
    values.update(id=new_id(), jira_last_synced_at=synced_at, created_at=now, updated_at=now)
    columns = [c for c in INITIATIVE_COLUMNS if c in values]

    with _db() as db:
        missing = missing_okr_ids(db, okr_ids)
        if missing:
            return jsonify({"error": f"Unknown OKR ids: {', '.join(missing)}"}), 400
        try:
            db.execute(
                f"INSERT INTO initiatives ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                [values[c] for c in columns]
            )
        except sqlite3.IntegrityError:
            return jsonify({"error": f"Jira epic {values['jira_epic_key']} is already linked "
                                     f"to another initiative"}), 409
        set_okr_links(db, values["id"], okr_ids)
        db.commit()
        initiative = get_initiative(db, values["id"])
    logger.info(f"Created initiative {values['id']}: {values['title']}")
    return jsonify(initiative), 201


@initiatives_bp.route("/api/initiatives/<initiative_id>", methods=["PUT"])
@login_required
def api_initiatives_update(initiative_id):
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "No data provided"}), 400
    try:
        values = validated_columns(data)
        okr_ids = _okr_ids_from(data)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    if "title" in values and not values["title"]:
        return jsonify({"error": "Title cannot be empty"}), 400

    with _db() as db:
        existing = db.execute("SELECT * FROM initiatives WHERE id = ?", (initiative_id,)).fetchone()
        if not existing:
            return jsonify({"error": "Initiative not found"}), 404
        try:
            _check_date_order(values.get("start_date", existing["start_date"]),
                              values.get("end_date", existing["end_date"]))
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        if okr_ids is not None:
            missing = missing_okr_ids(db, okr_ids)
            if missing:
                return jsonify({"error": f"Unknown OKR ids: {', '.join(missing)}"}), 400

        try:
            if values:
                update_initiative_columns(db, initiative_id, values)
        except sqlite3.IntegrityError:
            return jsonify({"error": f"Jira epic {values.get('jira_epic_key')} is already linked "
                                     f"to another initiative"}), 409
        if okr_ids is not None:
            set_okr_links(db, initiative_id, okr_ids)
            if not values:
                update_initiative_columns(db, initiative_id, {})
        db.commit()
        initiative = get_initiative(db, initiative_id)
    logger.info(f"Updated initiative {initiative_id}")
    return jsonify(initiative)


@initiatives_bp.route("/api/initiatives/<initiative_id>", methods=["DELETE"])
@login_required
def api_initiatives_delete(initiative_id):
    with _db() as db:
        cur = db.execute("DELETE FROM initiatives WHERE id = ?", (initiative_id,))
        db.commit()
    if cur.rowcount == 0:
        return jsonify({"error": "Initiative not found"}), 404
    logger.info(f"Deleted initiative {initiative_id}")
    return "", 204
