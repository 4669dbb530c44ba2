"""
Jira Cloud REST client for epic lookups.

Only the handful of calls the roadmap needs: fetch one epic, search epics by
summary or key, and translate an epic into initiative fields.  Credentials
come from JIRA_HOST / JIRA_EMAIL / JIRA_API_TOKEN.
"""

import base64
import http.client
import json
import logging
import os
import re
import urllib.error
import urllib.parse
import urllib.request
from datetime import date
from typing import Optional

logger = logging.getLogger(__name__)

JIRA_TIMEOUT = 30
SEARCH_MAX_RESULTS = 20

DONE_STATUSES = {"done", "closed", "resolved"}
IN_PROGRESS_STATUSES = {"in progress", "in development", "in review"}
BLOCKED_STATUSES = {"blocked", "impediment"}

EPIC_KEY_RE = re.compile(r"[A-Z][A-Z0-9_]*-[0-9]+")


class JiraError(Exception):
    """Raised when Jira is unreachable or answers with an error status."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


def is_jira_configured() -> bool:
    return bool(os.environ.get("JIRA_HOST") and os.environ.get("JIRA_EMAIL")
                and os.environ.get("JIRA_API_TOKEN"))


def _base_url() -> str:
    host = os.environ.get("JIRA_HOST", "").rstrip("/")
    return host if host.startswith("http") else f"https://{host}"


def _start_date_field() -> str:
    return os.environ.get("JIRA_START_DATE_FIELD", "customfield_10014")


def _epic_fields() -> list:
    return ["summary", "description", "status", _start_date_field(), "duedate"]


def jira_request(path: str, method: str = "GET", body: Optional[dict] = None):
    """
    Call the Jira REST API v3 and return the decoded JSON (None for 204).

    Every transport or decoding failure comes back as JiraError.
    """
    if not is_jira_configured():
        raise JiraError("Jira is not configured")

    credentials = f"{os.environ['JIRA_EMAIL']}:{os.environ['JIRA_API_TOKEN']}"
    headers = {
        "Authorization": "Basic " + base64.b64encode(credentials.encode()).decode(),
        "Accept": "application/json",
        "Content-Type": "application/json",
    }
    url = f"{_base_url()}/rest/api/3{path}"
    data = json.dumps(body).encode() if body is not None else None
    req = urllib.request.Request(url, data=data, headers=headers, method=method)

    logger.info(f"Jira API request: {method} {path}")
    try:
        with urllib.request.urlopen(req, timeout=JIRA_TIMEOUT) as response:
            status = response.status
            if status == 204:
                return None
            raw = response.read()
    except urllib.error.HTTPError as e:
        try:
            error_body = e.read().decode()
        except Exception:
            error_body = e.reason
        logger.error(f"Jira API HTTP error: {e.code} for {path}: {str(error_body)[:500]}")
        raise JiraError(f"Jira API error {e.code}: {error_body}", status=e.code) from e
    except urllib.error.URLError as e:
        logger.error(f"Jira API URL error: {e.reason} for {path}")
        raise JiraError(f"Could not reach Jira: {e.reason}") from e
    except (OSError, http.client.HTTPException) as e:
        # read timeouts and dropped connections after the headers arrived
        logger.error(f"Jira API connection error for {path}: {e!r}")
        raise JiraError(f"Jira connection failed: {e!r}") from e

    try:
        return json.loads(raw.decode())
    except ValueError as e:
        logger.error(f"Jira API returned non-JSON for {path}: {raw[:200]!r}")
        raise JiraError(f"Jira returned an unreadable response (HTTP {status})", status=status) from e


def extract_plain_text(adf) -> Optional[str]:
    """Flatten an Atlassian Document Format tree to its text, space-joined."""
    if not adf:
        return None
    if isinstance(adf, str):
        return adf

    texts = []

    def walk(node):
        if not isinstance(node, dict):
            return
        if node.get("type") == "text" and node.get("text"):
            texts.append(node["text"])
        for child in node.get("content") or []:
            walk(child)

    walk(adf)
    return " ".join(texts).strip() or None


def map_jira_status(jira_status: str) -> str:
    lower = (jira_status or "").lower()
    if lower in DONE_STATUSES:
        return "completed"
    if lower in IN_PROGRESS_STATUSES:
        return "in_progress"
    if lower in BLOCKED_STATUSES:
        return "blocked"
    return "planned"


def issue_to_epic(issue: dict, key: Optional[str] = None) -> dict:
    if not isinstance(issue, dict):
        raise JiraError(f"Unexpected Jira issue payload for {key}")
    key = issue.get("key") or key
    fields = issue.get("fields") or {}
    status = fields.get("status") or {}
    return {
        "key": key,
        "summary": fields.get("summary"),
        "description": extract_plain_text(fields.get("description")),
        "status": status.get("name") or "To Do",
        "startDate": fields.get(_start_date_field()),
        "dueDate": fields.get("duedate"),
        "url": f"{_base_url()}/browse/{key}",
    }


def is_valid_epic_key(value) -> bool:
    return isinstance(value, str) and bool(EPIC_KEY_RE.fullmatch(value))


def get_epic(epic_key: str) -> dict:
    if not is_valid_epic_key(epic_key):
        raise JiraError(f"Invalid Jira epic key: {epic_key!r}")
    path = f"/issue/{urllib.parse.quote(epic_key, safe='')}?fields={','.join(_epic_fields())}"
    return issue_to_epic(jira_request(path), epic_key)


def _jql_quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def search_epics(query: str) -> list:
    q = _jql_quote(query)
    jql = f'issuetype = Epic AND (summary ~ "{q}" OR key = "{q}") ORDER BY updated DESC'
    data = jira_request("/search/jql", method="POST", body={
        "jql": jql,
        "fields": _epic_fields(),
        "maxResults": SEARCH_MAX_RESULTS,
    })
    if not isinstance(data, dict):
        raise JiraError("Unexpected Jira search payload")
    return [issue_to_epic(issue) for issue in data.get("issues") or []]


def _epic_date(epic: dict, field: str) -> Optional[str]:
    """YYYY-MM-DD from a Jira date or timestamp; JiraError if it doesn't parse."""
    value = epic.get(field)
    if value in (None, ""):
        return None
    try:
        return date.fromisoformat(str(value)[:10]).isoformat()
    except ValueError:
        logger.warning(f"Epic {epic.get('key')} has an unreadable {field}: {value!r}")
        raise JiraError(f"Epic {epic.get('key')} has an invalid {field}: {value!r}")


def map_epic_to_initiative_fields(epic: dict) -> dict:
    """
    Initiative columns mirrored from an epic.

    Raises JiraError when the epic's dates can't be used (unparseable, or the
    due date before the start date) so nothing half-valid gets stored.
    """
    start_date = _epic_date(epic, "startDate")
    end_date = _epic_date(epic, "dueDate")
    if start_date and end_date and end_date < start_date:
        logger.warning(f"Epic {epic.get('key')} ends ({end_date}) before it starts ({start_date})")
        raise JiraError(f"Epic {epic.get('key')} has a due date before its start date")
    title = str(epic.get("summary") or "").strip()
    if not title:
        raise JiraError(f"Epic {epic.get('key')} has no summary")
    return {
        "title": title,
        "description": epic.get("description"),
        "status": map_jira_status(epic.get("status")),
        "start_date": start_date,
        "end_date": end_date,
    }
