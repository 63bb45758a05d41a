"""
WSGI / Flask CLI entry point.

Usage:
    flask --app wsgi seed-routes
    flask --app wsgi init-tracking Q-2024-SPRING
    flask --app wsgi reconcile-quotas Q-2024-SPRING --dry-run
    flask --app wsgi db upgrade
    gunicorn wsgi:app
"""

from velotrace import create_app

app = create_app()
