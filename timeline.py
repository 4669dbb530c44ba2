"""
Roadmap timeline layout.

Turns scoped initiatives into positioned bars: one lane per pod, one column
per month, and overlapping date ranges packed into as few rows as possible.
All sizes are pixels.
"""

import logging
import os
from datetime import date, datetime

import pytz
from flask import Blueprint, jsonify, render_template, request

from auth import get_current_user, is_admin, login_required
from database import PODS, _db
from initiatives import load_initiatives
from okrs import load_okrs

logger = logging.getLogger(__name__)

roadmap_bp = Blueprint('roadmap', __name__)

MONTH_WIDTH = 400
MIN_BAR_WIDTH = 60
BAR_HEIGHT = 48
ROW_GAP = 8
MIN_LANE_HEIGHT = 80

OKR_COLORS = [
    {"name": "blue", "bar": "#3b82f6", "hover": "#2563eb", "light": "#dbeafe"},
    {"name": "emerald", "bar": "#10b981", "hover": "#059669", "light": "#d1fae5"},
    {"name": "violet", "bar": "#8b5cf6", "hover": "#7c3aed", "light": "#ede9fe"},
    {"name": "amber", "bar": "#f59e0b", "hover": "#d97706", "light": "#fef3c7"},
    {"name": "rose", "bar": "#f43f5e", "hover": "#e11d48", "light": "#ffe4e6"},
    {"name": "cyan", "bar": "#06b6d4", "hover": "#0891b2", "light": "#cffafe"},
    {"name": "pink", "bar": "#ec4899", "hover": "#db2777", "light": "#fce7f3"},
    {"name": "teal", "bar": "#14b8a6", "hover": "#0d9488", "light": "#ccfbf1"},
    {"name": "orange", "bar": "#f97316", "hover": "#ea580c", "light": "#ffedd5"},
    {"name": "indigo", "bar": "#6366f1", "hover": "#4f46e5", "light": "#e0e7ff"},
    {"name": "lime", "bar": "#84cc16", "hover": "#65a30d", "light": "#ecfccb"},
    {"name": "fuchsia", "bar": "#d946ef", "hover": "#c026d3", "light": "#fae8ff"},
]
NO_OKR_COLOR = {"name": "gray", "bar": "#9ca3af", "hover": "#6b7280", "light": "#f3f4f6"}


def today_local() -> date:
    """Today's date in the team's timezone (ROADMAP_TIMEZONE, default US/Eastern)."""
    tz = pytz.timezone(os.environ.get("ROADMAP_TIMEZONE", "US/Eastern"))
    return datetime.now(tz).date()


def default_view_range(today: date = None):
    """The whole calendar year containing today."""
    today = today or today_local()
    return date(today.year, 1, 1), date(today.year, 12, 31)


def months_between(start: date, end: date) -> list:
    """First day of every month from start's month through end's month."""
    months = []
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        months.append(date(year, month, 1))
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return months


def format_month(month: date) -> str:
    return month.strftime("%b %Y")


def timeline_width(view_start: date, view_end: date) -> int:
    return len(months_between(view_start, view_end)) * MONTH_WIDTH


def initiative_position(start: date, end: date, view_start: date, view_end: date, width: float):
    """Pixel placement of a bar, or None when it falls outside the view."""
    if end < view_start or start > view_end:
        return None
    view_days = (view_end - view_start).days
    if view_days <= 0 or width <= 0:
        return None
    pixels_per_day = width / view_days

    clamped_start = max(start, view_start)
    clamped_end = min(end, view_end)
    offset = (clamped_start - view_start).days
    duration = (clamped_end - clamped_start).days
    return {
        "left": offset * pixels_per_day,
        "width": max(duration * pixels_per_day, MIN_BAR_WIDTH),
    }


def assign_rows(items: list) -> list:
    """
    Greedy interval packing.

    Items are visited left to right; each goes into the first row whose last
    bar ends at or before the item's left edge, otherwise a new row is opened.
    Each item is a dict with a "position" ({left, width}); a copy with "row"
    added is returned, sorted by left edge.
    """
    row_ends = []
    placed = []
    for item in sorted(items, key=lambda i: i["position"]["left"]):
        left = item["position"]["left"]
        right = left + item["position"]["width"]
        for row, end in enumerate(row_ends):
            if end <= left:
                row_ends[row] = right
                break
        else:
            row = len(row_ends)
            row_ends.append(right)
        placed.append(dict(item, row=row))
    return placed


def lane_height(row_count: int) -> int:
    return max(MIN_LANE_HEIGHT, row_count * BAR_HEIGHT + (row_count + 1) * ROW_GAP)


def bar_top(row: int) -> int:
    return ROW_GAP + row * (BAR_HEIGHT + ROW_GAP)


def today_offset(view_start: date, view_end: date, width: float, today: date = None):
    today = today or today_local()
    if today < view_start or today > view_end:
        return None
    view_days = (view_end - view_start).days
    if view_days <= 0:
        return None
    return (today - view_start).days / view_days * width


def okr_color(okr_id, all_okr_ids: list) -> dict:
    """Deterministic color from the OKR's index in the sorted list of all ids."""
    if okr_id not in all_okr_ids:
        return NO_OKR_COLOR
    return OKR_COLORS[all_okr_ids.index(okr_id) % len(OKR_COLORS)]


def initiative_color(okr_ids: list, all_okr_ids: list) -> dict:
    if not okr_ids:
        return NO_OKR_COLOR
    return okr_color(okr_ids[0], all_okr_ids)


def build_roadmap(initiatives, okr_ids, view_start: date, view_end: date,
                  selected_okr_ids=None, today: date = None):
    """
    Lay out scoped initiatives into pod lanes.

    selected_okr_ids filters to initiatives linked to any of those OKRs; an
    empty or missing selection shows everything.
    """
    all_okr_ids = sorted(okr_ids)
    width = timeline_width(view_start, view_end)
    selected = set(selected_okr_ids or [])
    if selected:
        initiatives = [i for i in initiatives if selected.intersection(i["okrIds"])]

    lanes = []
    for pod in PODS:
        items = []
        for initiative in initiatives:
            if initiative["pod"] != pod or not initiative["startDate"] or not initiative["endDate"]:
                continue
            position = initiative_position(date.fromisoformat(initiative["startDate"]),
                                           date.fromisoformat(initiative["endDate"]),
                                           view_start, view_end, width)
            if position:
                items.append({"initiative": initiative, "position": position})

        bars = []
        for item in assign_rows(items):
            bars.append({
                "initiative": item["initiative"],
                "left": item["position"]["left"],
                "width": item["position"]["width"],
                "row": item["row"],
                "top": bar_top(item["row"]),
                "height": BAR_HEIGHT,
                "color": initiative_color(item["initiative"]["okrIds"], all_okr_ids),
            })
        row_count = max((b["row"] for b in bars), default=0) + 1
        lanes.append({"pod": pod, "bars": bars, "rowCount": row_count, "height": lane_height(row_count)})

    return {
        "viewStart": view_start.isoformat(),
        "viewEnd": view_end.isoformat(),
        "width": width,
        "monthWidth": MONTH_WIDTH,
        "months": [{"date": m.isoformat(), "label": format_month(m)}
                   for m in months_between(view_start, view_end)],
        "todayOffset": today_offset(view_start, view_end, width, today),
        "lanes": lanes,
    }


def _view_from_args(args):
    default_start, default_end = default_view_range()
    start = date.fromisoformat(args["start"]) if args.get("start") else default_start
    end = date.fromisoformat(args["end"]) if args.get("end") else default_end
    if end <= start:
        raise ValueError("end must be after start")
    return start, end


def _selected_okrs(args):
    raw = args.get("okr_ids", "")
    return [okr_id for okr_id in raw.split(",") if okr_id]


def _load_layout(args):
    view_start, view_end = _view_from_args(args)
    with _db() as db:
        okrs = load_okrs(db, with_key_results=False)
        initiatives = load_initiatives(db, "start_date IS NOT NULL AND end_date IS NOT NULL",
                                       order="start_date ASC, created_at ASC")
    layout = build_roadmap(initiatives, [o["id"] for o in okrs], view_start, view_end,
                           _selected_okrs(args))
    return layout, okrs


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@roadmap_bp.route("/api/roadmap", methods=["GET"])
@login_required
def api_roadmap():
    try:
        layout, _ = _load_layout(request.args)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify(layout)


@roadmap_bp.route("/")
@login_required
def home():
    try:
        layout, okrs = _load_layout(request.args)
    except ValueError:
        layout, okrs = _load_layout({})
    return render_template(
        "roadmap.html",
        layout=layout,
        okrs=okrs,
        selected=set(_selected_okrs(request.args)),
        user=dict(get_current_user(), is_admin=is_admin()),
    )
