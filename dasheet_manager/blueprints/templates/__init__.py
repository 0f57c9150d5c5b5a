"""
Templates blueprint package.

Exposes templates_bp for registration in the app factory.
The routes live in routes.py.
"""

from .routes import templates_bp  # noqa: F401
