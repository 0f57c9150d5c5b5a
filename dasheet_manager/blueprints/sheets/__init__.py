"""
dasheet_manager/blueprints/sheets/__init__.py

Blueprint package export.

IMPORTANT:
- Must expose sheets_bp for app factory registration.
- Keep import minimal to avoid side effects.
"""

from __future__ import annotations

from .routes import sheets_bp  # noqa: F401
