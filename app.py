"""
Product Roadmap - OKRs, Initiatives and a Gantt-style timeline

Pods own OKRs; initiatives map onto one or more OKRs and are laid out on a
yearly roadmap.  Initiatives can mirror epics from Jira.
"""

import os
import atexit
import logging
from datetime import timedelta
from flask import Flask, jsonify
from auth import auth_bp, init_db as init_auth_db
from database import _db, init_db
from okrs import okrs_bp
from initiatives import initiatives_bp
from jira_client import is_jira_configured
from jira_sync import jira_bp, sync_interval_minutes, sync_stale_scheduled
from timeline import roadmap_bp
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = os.environ["SECRET_KEY"]  # Required
app.permanent_session_lifetime = timedelta(hours=24)  # Sessions last 24 hours

app.register_blueprint(auth_bp)
app.register_blueprint(okrs_bp)
app.register_blueprint(initiatives_bp)
app.register_blueprint(jira_bp)
app.register_blueprint(roadmap_bp)

# Initialize databases on startup
init_db()
init_auth_db()


@app.route("/api/health")
def health():
    """Health check endpoint - tests the database connection."""
    try:
        with _db() as db:
            db.execute("SELECT 1").fetchone()
        return jsonify({"status": "ok", "database": "connected"})
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return jsonify({"status": "error", "database": "disconnected", "error": str(e)}), 500


# ============================================================================
# Scheduler Setup - keeps Jira-linked initiatives fresh
# ============================================================================

def init_scheduler():
    """Initialize the background scheduler for the stale Jira sync."""
    scheduler = BackgroundScheduler(daemon=True)

    scheduler.add_job(
        func=sync_stale_scheduled,
        trigger=IntervalTrigger(minutes=sync_interval_minutes()),
        id='jira_sync',
        name='Sync stale Jira-linked initiatives',
        replace_existing=True
    )

    scheduler.start()
    logger.info(f"Scheduler started - Jira sync every {sync_interval_minutes()} minutes")

    # Ensure scheduler shuts down cleanly
    atexit.register(lambda: scheduler.shutdown())

    return scheduler


# Initialize scheduler when module loads (for production via gunicorn)
# Only start if not in debug reload mode
_scheduler = None
if os.environ.get("ROADMAP_DISABLE_SCHEDULER") != "1" and is_jira_configured():
    if os.environ.get('WERKZEUG_RUN_MAIN') != 'true' or not app.debug:
        _scheduler = init_scheduler()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    app.run(debug=True, port=port, host="127.0.0.1")
