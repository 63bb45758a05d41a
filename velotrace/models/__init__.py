"""
VeloTrace Route Quota Service
Shared SQLAlchemy instance.

Usage:
    from velotrace.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
