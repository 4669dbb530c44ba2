# Gunicorn configuration for the roadmap service
import os

bind = f"0.0.0.0:{os.environ.get('PORT', '5000')}"
workers = 2

# Jira epic lookups during create/sync can be slow
timeout = 60

# Access and error logs go to stdout
accesslog = "-"
errorlog = "-"
loglevel = "info"
