"""
Pytest configuration and shared fixtures.

The app reads its configuration at import time, so the environment is set up
here before anything imports app.py.  Every test then gets its own SQLite file
under tmp_path.
"""

import os
import tempfile

import pytest

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["ROADMAP_DISABLE_SCHEDULER"] = "1"
os.environ["ROADMAP_DB_PATH"] = os.path.join(tempfile.mkdtemp(), "import.db")

JIRA_VARS = ("JIRA_HOST", "JIRA_EMAIL", "JIRA_API_TOKEN", "JIRA_START_DATE_FIELD",
             "JIRA_SYNC_INTERVAL_MINUTES")
for _var in JIRA_VARS:
    os.environ.pop(_var, None)

import database  # noqa: E402
from auth import db as auth_db  # noqa: E402
from app import app as flask_app  # noqa: E402

PASSWORD = "correct-horse-battery"


# ==============================================================================
# Database & app
# ==============================================================================


@pytest.fixture(autouse=True)
def roadmap_db(tmp_path, monkeypatch):
    """Point the app at a fresh database and make sure Jira is switched off."""
    path = tmp_path / "roadmap.db"
    monkeypatch.setenv("ROADMAP_DB_PATH", str(path))
    for var in JIRA_VARS:
        monkeypatch.delenv(var, raising=False)
    database.init_db()
    auth_db.init_db()
    return path


@pytest.fixture
def app():
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def anon_client(app):
    return app.test_client()


def _login(app, email, username, role):
    auth_db.create_user(email=email, username=username, role=role, password=PASSWORD)
    client = app.test_client()
    response = client.post("/login", json={"email": email, "password": PASSWORD})
    assert response.status_code == 200
    return client


@pytest.fixture
def client(app):
    """Test client logged in as a regular user."""
    return _login(app, "pm@example.com", "Pat", "regular")


@pytest.fixture
def admin_client(app):
    """Test client logged in as an admin."""
    return _login(app, "admin@example.com", "Ada", "admin")


# ==============================================================================
# Jira
# ==============================================================================


@pytest.fixture
def enable_jira(monkeypatch):
    """Return a callable that switches the Jira integration on."""
    def enable():
        monkeypatch.setenv("JIRA_HOST", "acme.atlassian.net")
        monkeypatch.setenv("JIRA_EMAIL", "bot@acme.com")
        monkeypatch.setenv("JIRA_API_TOKEN", "token-123")
    return enable


@pytest.fixture
def sample_epic():
    return {
        "key": "ROAD-42",
        "summary": "Self-serve returns",
        "description": "Let shoppers start a return without support.",
        "status": "In Progress",
        "startDate": "2025-02-03",
        "dueDate": "2025-04-30",
        "url": "https://acme.atlassian.net/browse/ROAD-42",
    }


# ==============================================================================
# API factories
# ==============================================================================


@pytest.fixture
def make_okr(client):
    def make(title="Grow retention", **fields):
        response = client.post("/api/okrs", json=dict({"title": title}, **fields))
        assert response.status_code == 201, response.get_json()
        return response.get_json()
    return make


@pytest.fixture
def make_initiative(client):
    def make(title="Checkout revamp", pod="Retail Therapy", **fields):
        response = client.post("/api/initiatives", json=dict({"title": title, "pod": pod}, **fields))
        assert response.status_code == 201, response.get_json()
        return response.get_json()
    return make
