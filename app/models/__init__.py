"""
Training Portal
Shared SQLAlchemy handle.

Every model module imports ``db`` from here; the app factory binds it with
``db.init_app(app)``. Services receive the session through ``db.session``,
which tests point at an in-memory SQLite database.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
