"""
Tests for the Jira sync endpoints and the stale-sync job.
"""

import sqlite3
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

import jira_sync
from database import _db
from jira_client import JiraError


@pytest.fixture
def linked(make_initiative):
    """An initiative linked to ROAD-42 that has never been synced."""
    return make_initiative("Old title", pod="JSON ID", jiraEpicKey="ROAD-42")


def _set_synced_at(initiative_id, value):
    with _db() as db:
        db.execute("UPDATE initiatives SET jira_last_synced_at = ? WHERE id = ?", (value, initiative_id))
        db.commit()


class TestUnconfigured:

    def test_status(self, client):
        assert client.get("/api/jira/status").get_json() == {"configured": False}

    def test_search_and_sync_unavailable(self, client, linked):
        assert client.get("/api/jira/search?q=returns").status_code == 503
        assert client.post("/api/jira/sync").status_code == 503
        assert client.post(f"/api/jira/sync/{linked['id']}").status_code == 503

    def test_scheduled_sync_skips(self):
        with patch("jira_sync.sync_stale_initiatives") as mock_sync:
            jira_sync.sync_stale_scheduled()
        mock_sync.assert_not_called()


class TestSearch:

    def test_requires_query(self, client, enable_jira):
        enable_jira()
        response = client.get("/api/jira/search?q=%20")
        assert response.status_code == 400

    def test_returns_epics(self, client, enable_jira, sample_epic):
        enable_jira()
        with patch("jira_sync.search_epics", return_value=[sample_epic]) as mock_search:
            response = client.get("/api/jira/search?q=returns")

        mock_search.assert_called_once_with("returns")
        assert response.status_code == 200
        assert response.get_json() == [sample_epic]

    def test_jira_failure(self, client, enable_jira):
        enable_jira()
        with patch("jira_sync.search_epics", side_effect=JiraError("Jira API error 401", status=401)):
            response = client.get("/api/jira/search?q=returns")
        assert response.status_code == 502
        assert response.get_json()["error"] == "Jira API error 401"


class TestSyncOne:

    def test_overwrites_mirrored_fields(self, client, linked, enable_jira, sample_epic):
        enable_jira()
        with patch("jira_sync.get_epic", return_value=sample_epic) as mock_get:
            response = client.post(f"/api/jira/sync/{linked['id']}")

        mock_get.assert_called_once_with("ROAD-42")
        assert response.status_code == 200
        initiative = response.get_json()
        assert initiative["title"] == "Self-serve returns"
        assert initiative["description"] == sample_epic["description"]
        assert initiative["status"] == "in_progress"
        assert initiative["startDate"] == "2025-02-03"
        assert initiative["endDate"] == "2025-04-30"
        assert initiative["jiraLastSyncedAt"] is not None
        assert initiative["pod"] == "JSON ID"

    def test_body_id_syncs_one(self, client, linked, enable_jira, sample_epic):
        enable_jira()
        with patch("jira_sync.get_epic", return_value=sample_epic):
            response = client.post("/api/jira/sync", json={"id": linked["id"]})
        assert response.get_json()["id"] == linked["id"]

    def test_missing_initiative(self, client, enable_jira):
        enable_jira()
        assert client.post("/api/jira/sync/nope").status_code == 404

    def test_not_linked(self, client, make_initiative, enable_jira):
        unlinked = make_initiative()
        enable_jira()
        response = client.post(f"/api/jira/sync/{unlinked['id']}")
        assert response.status_code == 400

    def test_jira_failure(self, client, linked, enable_jira):
        enable_jira()
        with patch("jira_sync.get_epic", side_effect=JiraError("Could not reach Jira: timed out")):
            response = client.post(f"/api/jira/sync/{linked['id']}")
        assert response.status_code == 502
        assert client.get(f"/api/initiatives/{linked['id']}").get_json()["title"] == "Old title"

    def test_reversed_epic_dates_not_stored(self, client, linked, enable_jira, sample_epic):
        enable_jira()
        epic = dict(sample_epic, startDate="2025-05-01", dueDate="2025-04-30")
        with patch("jira_sync.get_epic", return_value=epic):
            response = client.post(f"/api/jira/sync/{linked['id']}")

        assert response.status_code == 502
        stored = client.get(f"/api/initiatives/{linked['id']}").get_json()
        assert stored["title"] == "Old title"
        assert stored["startDate"] is None
        assert stored["jiraLastSyncedAt"] is None

    def test_unparseable_epic_date_not_stored(self, client, linked, enable_jira, sample_epic):
        enable_jira()
        with patch("jira_sync.get_epic", return_value=dict(sample_epic, startDate="next sprint")):
            response = client.post(f"/api/jira/sync/{linked['id']}")

        assert response.status_code == 502
        assert client.get(f"/api/initiatives/{linked['id']}").get_json()["startDate"] is None
        assert client.get("/api/roadmap").status_code == 200

    def test_timestamp_epic_dates_normalised(self, client, linked, enable_jira, sample_epic):
        enable_jira()
        epic = dict(sample_epic, startDate="2025-02-03T10:15:00.000+0000")
        with patch("jira_sync.get_epic", return_value=epic):
            response = client.post(f"/api/jira/sync/{linked['id']}")

        assert response.get_json()["startDate"] == "2025-02-03"
        assert client.get("/api/roadmap?start=2025-01-01&end=2025-12-31").status_code == 200
        assert client.get("/?start=2025-01-01&end=2025-12-31").status_code == 200

    def test_unreadable_jira_response(self, client, linked, enable_jira):
        enable_jira()
        response = MagicMock()
        response.__enter__.return_value.status = 200
        response.__enter__.return_value.read.return_value = b"<html>Bad gateway</html>"
        with patch("jira_client.urllib.request.urlopen", return_value=response):
            result = client.post(f"/api/jira/sync/{linked['id']}")
        assert result.status_code == 502


class TestSyncStale:

    def test_syncs_only_stale_enabled_links(self, client, make_initiative, enable_jira, sample_epic):
        good = make_initiative("Good", jiraEpicKey="ROAD-1")
        broken = make_initiative("Broken", jiraEpicKey="ROAD-2")
        make_initiative("Paused", jiraEpicKey="ROAD-3", jiraSyncEnabled=False)
        make_initiative("Unlinked")
        fresh = make_initiative("Fresh", jiraEpicKey="ROAD-4")
        _set_synced_at(fresh["id"], datetime.now(timezone.utc).isoformat())
        enable_jira()

        def fake_get_epic(key):
            if key == "ROAD-2":
                raise JiraError("Jira API error 404", status=404)
            return dict(sample_epic, key=key, summary=f"Epic {key}")

        with patch("jira_sync.get_epic", side_effect=fake_get_epic) as mock_get:
            response = client.post("/api/jira/sync")

        assert response.status_code == 200
        assert response.get_json() == {"synced": 1, "failed": 1, "total": 2}
        assert sorted(c.args[0] for c in mock_get.call_args_list) == ["ROAD-1", "ROAD-2"]
        assert client.get(f"/api/initiatives/{good['id']}").get_json()["title"] == "Epic ROAD-1"

        # the failed one stays stale, the synced one is fresh
        assert [i for i, _ in jira_sync.stale_linked_initiatives()] == [broken["id"]]

    def test_nothing_to_sync(self, client, enable_jira):
        enable_jira()
        with patch("jira_sync.get_epic") as mock_get:
            response = client.post("/api/jira/sync")
        assert response.get_json() == {"synced": 0, "failed": 0, "total": 0}
        mock_get.assert_not_called()

    def test_staleness_window(self, linked, monkeypatch):
        monkeypatch.setenv("JIRA_SYNC_INTERVAL_MINUTES", "30")
        now = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

        _set_synced_at(linked["id"], (now - timedelta(minutes=10)).isoformat())
        assert jira_sync.stale_linked_initiatives(now) == []

        _set_synced_at(linked["id"], (now - timedelta(minutes=45)).isoformat())
        assert jira_sync.stale_linked_initiatives(now) == [(linked["id"], "ROAD-42")]

    def test_scheduled_sync_logs_and_continues(self, enable_jira):
        enable_jira()
        with patch("jira_sync.sync_stale_initiatives", side_effect=RuntimeError("db locked")) as mock_sync:
            jira_sync.sync_stale_scheduled()
        mock_sync.assert_called_once()

    def test_unexpected_error_does_not_stop_batch(self, client, make_initiative, enable_jira, sample_epic):
        good = make_initiative("Good", jiraEpicKey="ROAD-1")
        make_initiative("Crashes", jiraEpicKey="ROAD-2")
        make_initiative("Reversed", jiraEpicKey="ROAD-3")
        enable_jira()

        def fake_get_epic(key):
            if key == "ROAD-2":
                raise RuntimeError("connection pool exhausted")
            if key == "ROAD-3":
                return dict(sample_epic, key=key, startDate="2025-06-01", dueDate="2025-01-01")
            return dict(sample_epic, key=key, summary=f"Epic {key}")

        with patch("jira_sync.get_epic", side_effect=fake_get_epic):
            response = client.post("/api/jira/sync")

        assert response.status_code == 200
        assert response.get_json() == {"synced": 1, "failed": 2, "total": 3}
        assert client.get(f"/api/initiatives/{good['id']}").get_json()["title"] == "Epic ROAD-1"

    def test_write_failure_keeps_other_rows(self, client, make_initiative, enable_jira, sample_epic):
        first = make_initiative("First", jiraEpicKey="ROAD-1")
        second = make_initiative("Second", jiraEpicKey="ROAD-2")
        enable_jira()
        real_update = jira_sync.update_initiative_columns

        def flaky_update(db, initiative_id, values):
            if initiative_id == first["id"]:
                raise sqlite3.OperationalError("database is locked")
            return real_update(db, initiative_id, values)

        with patch("jira_sync.get_epic", side_effect=lambda key: dict(sample_epic, key=key, summary=key)), \
                patch("jira_sync.update_initiative_columns", side_effect=flaky_update):
            response = client.post("/api/jira/sync")

        assert response.get_json() == {"synced": 1, "failed": 1, "total": 2}
        assert client.get(f"/api/initiatives/{first['id']}").get_json()["title"] == "First"
        assert client.get(f"/api/initiatives/{second['id']}").get_json()["title"] == "ROAD-2"

    @pytest.mark.parametrize("value", ["abc", "0", "-5", ""])
    def test_invalid_interval_falls_back(self, monkeypatch, value):
        monkeypatch.setenv("JIRA_SYNC_INTERVAL_MINUTES", value)
        assert jira_sync.sync_interval_minutes() == 15

    def test_interval_from_env(self, monkeypatch):
        monkeypatch.setenv("JIRA_SYNC_INTERVAL_MINUTES", "5")
        assert jira_sync.sync_interval_minutes() == 5
