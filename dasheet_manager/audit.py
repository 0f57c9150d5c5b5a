"""
dasheet_manager/audit.py

Audit trail helper.

Goals:
- Capture WHO did WHAT to WHICH entity, with an optional detail payload.
- Never break the business operation being audited.

IMPORTANT:
- record() runs AFTER the business transaction has committed and commits its own
  entry. A failing audit write is logged and swallowed; the operation it
  describes already happened and stays committed.
- Entries are append-only. Nothing in the application updates or deletes them.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import AuditLog
from .utils import Page, paginate

logger = logging.getLogger(__name__)

# Action verbs
LOGIN = "LOGIN"
LOGOUT = "LOGOUT"
CREATE = "CREATE"
UPDATE = "UPDATE"
DELETE = "DELETE"
SHARE = "SHARE"
UNSHARE = "UNSHARE"
PUBLISH = "PUBLISH"
UNPUBLISH = "UNPUBLISH"
SUBMIT = "SUBMIT"
APPROVE = "APPROVE"
DUPLICATE = "DUPLICATE"

# Entity types
ENTITY_USER = "user"
ENTITY_TEMPLATE = "template"
ENTITY_SHEET = "da_sheet"


def _safe_str(value: Any) -> Optional[str]:
    """Stable string form for JSON storage (datetimes, decimals, ...)."""
    if value is None:
        return None
    return str(value)


def serialize_model(instance: Any) -> Dict[str, Optional[str]]:
    """
    Snapshot a model's scalar columns as strings.

    Relationships are not followed. Used for the "before" payload of deletions.
    """
    return {column.name: _safe_str(getattr(instance, column.name)) for column in instance.__table__.columns}


class AuditTrail:
    """Append-only audit writer bound to a SQLAlchemy session."""

    def __init__(self, session: Session):
        self.session = session

    def record(
        self,
        actor_id: Optional[str],
        action: str,
        entity_type: str,
        entity_id: Any,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            self.session.add(
                AuditLog(
                    user_id=actor_id,
                    action=action,
                    entity_type=entity_type,
                    entity_id=str(entity_id),
                    details=json.dumps(detail, ensure_ascii=False, default=str) if detail else None,
                )
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.exception("Audit write failed (%s %s %s)", action, entity_type, entity_id)

    def entries(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        *,
        action: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Page:
        """Newest first."""
        stmt = select(AuditLog)
        if entity_type:
            stmt = stmt.where(AuditLog.entity_type == entity_type)
        if entity_id:
            stmt = stmt.where(AuditLog.entity_id == entity_id)
        if action:
            stmt = stmt.where(AuditLog.action == action)
        stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        return paginate(self.session, stmt, page, per_page)
