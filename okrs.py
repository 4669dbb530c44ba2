"""
OKRs Module
Objectives, their key results and pod assignments.
"""

import logging

from flask import Blueprint, jsonify, request

from auth import login_required
from database import PODS, _db, new_id, utcnow

logger = logging.getLogger(__name__)

okrs_bp = Blueprint('okrs', __name__)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def key_result_to_json(row):
    return {
        "id": row["id"],
        "okrId": row["okr_id"],
        "title": row["title"],
        "targetValue": row["target_value"],
        "currentValue": row["current_value"],
        "unit": row["unit"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def okr_to_json(row, pods, key_results=None):
    okr = {
        "id": row["id"],
        "title": row["title"],
        "description": row["description"],
        "timeFrame": row["time_frame"],
        "isCompanyWide": bool(row["is_company_wide"]),
        "pods": pods,
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }
    if key_results is not None:
        okr["keyResults"] = key_results
    return okr


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def _in_clause(values):
    return ", ".join("?" for _ in values)


def pods_by_okr(db, okr_ids):
    """okr id -> pods, in lane order."""
    result = {okr_id: [] for okr_id in okr_ids}
    if not okr_ids:
        return result
    rows = db.execute(
        f"SELECT okr_id, pod FROM okr_pods WHERE okr_id IN ({_in_clause(okr_ids)})",
        list(okr_ids)
    ).fetchall()
    for r in rows:
        result[r["okr_id"]].append(r["pod"])
    for pods in result.values():
        pods.sort(key=PODS.index)
    return result


def key_results_by_okr(db, okr_ids):
    result = {okr_id: [] for okr_id in okr_ids}
    if not okr_ids:
        return result
    rows = db.execute(
        f"SELECT * FROM key_results WHERE okr_id IN ({_in_clause(okr_ids)}) "
        "ORDER BY created_at ASC, rowid ASC",
        list(okr_ids)
    ).fetchall()
    for r in rows:
        result[r["okr_id"]].append(key_result_to_json(r))
    return result


def load_okrs(db, okr_ids=None, with_key_results=True):
    """OKRs as JSON dicts, newest first (or in the order of okr_ids when given)."""
    if okr_ids is None:
        rows = db.execute("SELECT * FROM okrs ORDER BY created_at DESC, rowid DESC").fetchall()
    elif not okr_ids:
        return []
    else:
        rows = db.execute(
            f"SELECT * FROM okrs WHERE id IN ({_in_clause(okr_ids)})", list(okr_ids)
        ).fetchall()
        order = {okr_id: i for i, okr_id in enumerate(okr_ids)}
        rows = sorted(rows, key=lambda r: order[r["id"]])

    ids = [r["id"] for r in rows]
    pods = pods_by_okr(db, ids)
    krs = key_results_by_okr(db, ids) if with_key_results else {}
    return [okr_to_json(r, pods[r["id"]], krs.get(r["id"]) if with_key_results else None)
            for r in rows]


def get_okr(db, okr_id):
    okrs = load_okrs(db, [okr_id])
    return okrs[0] if okrs else None


def missing_okr_ids(db, okr_ids):
    """Return the ids in okr_ids that have no OKR row."""
    if not okr_ids:
        return []
    found = {r["id"] for r in db.execute(
        f"SELECT id FROM okrs WHERE id IN ({_in_clause(okr_ids)})", list(okr_ids)
    )}
    return [okr_id for okr_id in okr_ids if okr_id not in found]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _clean_text(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _validate_pods(pods):
    if not isinstance(pods, list):
        return None, "pods must be a list"
    cleaned = []
    for pod in pods:
        if pod not in PODS:
            return None, f"Invalid pod: {pod}"
        if pod not in cleaned:
            cleaned.append(pod)
    return cleaned, None


def _validate_number(value, field, nullable=True):
    if value is None and nullable:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{field} must be a number")
    return value


def _replace_pods(db, okr_id, pods):
    db.execute("DELETE FROM okr_pods WHERE okr_id = ?", (okr_id,))
    now = utcnow()
    for pod in pods:
        db.execute("INSERT INTO okr_pods (okr_id, pod, created_at) VALUES (?,?,?)", (okr_id, pod, now))


# ---------------------------------------------------------------------------
# API: OKRs
# ---------------------------------------------------------------------------

@okrs_bp.route("/api/okrs", methods=["GET"])
@login_required
def api_okrs_list():
    with _db() as db:
        return jsonify(load_okrs(db))


@okrs_bp.route("/api/okrs/<okr_id>", methods=["GET"])
@login_required
def api_okrs_get(okr_id):
    with _db() as db:
        okr = get_okr(db, okr_id)
    if not okr:
        return jsonify({"error": "OKR not found"}), 404
    return jsonify(okr)


@okrs_bp.route("/api/okrs", methods=["POST"])
@login_required
def api_okrs_create():
    data = request.get_json(silent=True) or {}
    title = _clean_text(data.get("title"))
    if not title:
        return jsonify({"error": "Title is required"}), 400
    pods, error = _validate_pods(data.get("pods") or [])
    if error:
        return jsonify({"error": error}), 400

    okr_id = new_id()
    now = utcnow()
    with _db() as db:
        db.execute(
            "INSERT INTO okrs (id, title, description, time_frame, is_company_wide, created_at, updated_at) "
            "VALUES (?,?,?,?,?,?,?)",
            (okr_id, title, _clean_text(data.get("description")), _clean_text(data.get("timeFrame")),
             1 if data.get("isCompanyWide") else 0, now, now)
        )
        _replace_pods(db, okr_id, pods)
        db.commit()
        okr = get_okr(db, okr_id)
    logger.info(f"Created OKR {okr_id}: {title}")
    return jsonify(okr), 201


@okrs_bp.route("/api/okrs/<okr_id>", methods=["PUT"])
@login_required
def api_okrs_update(okr_id):
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "No data provided"}), 400

    fields = []
    params = []
    if "title" in data:
        title = _clean_text(data["title"])
        if not title:
            return jsonify({"error": "Title cannot be empty"}), 400
        fields.append("title = ?"); params.append(title)
    for key, column in (("description", "description"), ("timeFrame", "time_frame")):
        if key in data:
            fields.append(f"{column} = ?"); params.append(_clean_text(data[key]))
    if "isCompanyWide" in data:
        fields.append("is_company_wide = ?"); params.append(1 if data["isCompanyWide"] else 0)
    pods = None
    if "pods" in data:
        pods, error = _validate_pods(data["pods"] or [])
        if error:
            return jsonify({"error": error}), 400

    with _db() as db:
        if not db.execute("SELECT 1 FROM okrs WHERE id = ?", (okr_id,)).fetchone():
            return jsonify({"error": "OKR not found"}), 404
        fields.append("updated_at = ?"); params.append(utcnow())
        params.append(okr_id)
        db.execute(f"UPDATE okrs SET {', '.join(fields)} WHERE id = ?", params)
        if pods is not None:
            _replace_pods(db, okr_id, pods)
        db.commit()
        okr = get_okr(db, okr_id)
    logger.info(f"Updated OKR {okr_id}")
    return jsonify(okr)


@okrs_bp.route("/api/okrs/<okr_id>", methods=["DELETE"])
@login_required
def api_okrs_delete(okr_id):
    with _db() as db:
        # key results, pods and initiative links cascade
        cur = db.execute("DELETE FROM okrs WHERE id = ?", (okr_id,))
        db.commit()
    if cur.rowcount == 0:
        return jsonify({"error": "OKR not found"}), 404
    logger.info(f"Deleted OKR {okr_id}")
    return "", 204


# ---------------------------------------------------------------------------
# API: Key results
# ---------------------------------------------------------------------------

@okrs_bp.route("/api/okrs/<okr_id>/key-results", methods=["GET"])
@login_required
def api_key_results_list(okr_id):
    with _db() as db:
        if not db.execute("SELECT 1 FROM okrs WHERE id = ?", (okr_id,)).fetchone():
            return jsonify({"error": "OKR not found"}), 404
        return jsonify(key_results_by_okr(db, [okr_id])[okr_id])


@okrs_bp.route("/api/okrs/<okr_id>/key-results", methods=["POST"])
@login_required
def api_key_results_create(okr_id):
    data = request.get_json(silent=True) or {}
    title = _clean_text(data.get("title"))
    if not title:
        return jsonify({"error": "Title is required"}), 400
    try:
        target = _validate_number(data.get("targetValue"), "targetValue")
        current = _validate_number(data.get("currentValue"), "currentValue") or 0
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    kr_id = new_id()
    now = utcnow()
    with _db() as db:
        if not db.execute("SELECT 1 FROM okrs WHERE id = ?", (okr_id,)).fetchone():
            return jsonify({"error": "OKR not found"}), 404
        db.execute(
            "INSERT INTO key_results (id, okr_id, title, target_value, current_value, unit, created_at, updated_at) "
            "VALUES (?,?,?,?,?,?,?,?)",
            (kr_id, okr_id, title, target, current, _clean_text(data.get("unit")), now, now)
        )
        db.commit()
        row = db.execute("SELECT * FROM key_results WHERE id = ?", (kr_id,)).fetchone()
    logger.info(f"Added key result {kr_id} to OKR {okr_id}")
    return jsonify(key_result_to_json(row)), 201


@okrs_bp.route("/api/key-results/<kr_id>", methods=["PUT"])
@login_required
def api_key_results_update(kr_id):
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "No data provided"}), 400

    fields = []
    params = []
    try:
        if "title" in data:
            title = _clean_text(data["title"])
            if not title:
                return jsonify({"error": "Title cannot be empty"}), 400
            fields.append("title = ?"); params.append(title)
        if "targetValue" in data:
            fields.append("target_value = ?"); params.append(_validate_number(data["targetValue"], "targetValue"))
        if "currentValue" in data:
            fields.append("current_value = ?")
            params.append(_validate_number(data["currentValue"], "currentValue", nullable=False))
        if "unit" in data:
            fields.append("unit = ?"); params.append(_clean_text(data["unit"]))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    with _db() as db:
        if not db.execute("SELECT 1 FROM key_results WHERE id = ?", (kr_id,)).fetchone():
            return jsonify({"error": "Key result not found"}), 404
        fields.append("updated_at = ?"); params.append(utcnow())
        params.append(kr_id)
        db.execute(f"UPDATE key_results SET {', '.join(fields)} WHERE id = ?", params)
        db.commit()
        row = db.execute("SELECT * FROM key_results WHERE id = ?", (kr_id,)).fetchone()
    return jsonify(key_result_to_json(row))


@okrs_bp.route("/api/key-results/<kr_id>", methods=["DELETE"])
@login_required
def api_key_results_delete(kr_id):
    with _db() as db:
        cur = db.execute("DELETE FROM key_results WHERE id = ?", (kr_id,))
        db.commit()
    if cur.rowcount == 0:
        return jsonify({"error": "Key result not found"}), 404
    return "", 204
