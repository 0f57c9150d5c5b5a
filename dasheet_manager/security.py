"""
dasheet_manager/security.py

Access control for the DA Sheet Manager.

Key rules:
- Nothing is trusted from the client; all permission checks are server-side.
- Admin: full access to every sheet and every template write.
- Sheet owner (creator): full access to their sheet.
- Anyone else: only through a SharedAccess row matching their account email.
  - "view" row: read only.
  - "edit" row: read and write, but never delete/share/unshare (owner or admin only).

Every sheet route goes through sheet_access_required() before touching sheet data.

IMPORTANT:
- Decorators must preserve wrapped function metadata to avoid Flask endpoint collisions.
  We use functools.wraps everywhere.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Optional

from flask import g
from flask_login import current_user
from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import AuthenticationError, AuthorizationError, NotFound
from .extensions import db
from .models import ACCESS_EDIT, DASheet, SharedAccess, User

BASIS_OWNER = "owner"
BASIS_ADMIN = "admin"
BASIS_SHARED = "shared"
BASIS_NONE = "none"


@dataclass(frozen=True)
class AccessDecision:
    granted: bool
    basis: str
    level: Optional[str] = None

    @property
    def is_owner_or_admin(self) -> bool:
        return self.basis in (BASIS_OWNER, BASIS_ADMIN)


class AccessResolver:
    """Decide whether a user may read or write a sheet, and on what basis."""

    def __init__(self, session: Session):
        self.session = session

    def resolve(self, sheet_id: str, user_id: str, required_level: Optional[str] = None) -> AccessDecision:
        """
        Owner and admins always get full (edit) access.
        Otherwise the user's email must match a SharedAccess row of the sheet:
        "view" satisfies any read; "edit" is needed when edit is required.

        Raises:
            NotFound: the sheet does not exist.
        """
        owner_id = self.session.scalar(select(DASheet.created_by).where(DASheet.id == sheet_id))
        if owner_id is None:
            raise NotFound("DA sheet not found")

        user = self.session.get(User, user_id)
        if user is None:
            return AccessDecision(False, BASIS_NONE)

        if owner_id == user.id:
            return AccessDecision(True, BASIS_OWNER, ACCESS_EDIT)
        if user.is_admin:
            return AccessDecision(True, BASIS_ADMIN, ACCESS_EDIT)

        level = self.session.scalar(
            select(SharedAccess.access_level).where(
                SharedAccess.sheet_id == sheet_id,
                SharedAccess.user_email == user.email,
            )
        )
        if level is None:
            return AccessDecision(False, BASIS_NONE)
        if required_level == ACCESS_EDIT and level != ACCESS_EDIT:
            return AccessDecision(False, BASIS_SHARED, level)
        return AccessDecision(True, BASIS_SHARED, level)

    def require(self, sheet_id: str, user_id: str, required_level: Optional[str] = None) -> AccessDecision:
        decision = self.resolve(sheet_id, user_id, required_level)
        if not decision.granted:
            raise AuthorizationError()
        return decision

    def require_owner(self, sheet_id: str, user_id: str) -> AccessDecision:
        """Owner or admin only (delete, share, unshare)."""
        decision = self.resolve(sheet_id, user_id, ACCESS_EDIT)
        if not decision.is_owner_or_admin:
            raise AuthorizationError("Only the owner or an admin can perform this action")
        return decision


# ---------------------------------------------------------------------
# Route decorators
# ---------------------------------------------------------------------
def _require_login() -> None:
    if not current_user.is_authenticated:
        raise AuthenticationError()


def admin_required(view_func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator: admin-only."""
    @wraps(view_func)
    def wrapper(*args: Any, **kwargs: Any):
        _require_login()
        if not current_user.is_admin:
            raise AuthorizationError("Admin access required")
        return view_func(*args, **kwargs)

    return wrapper


def sheet_access_required(level: Optional[str] = None, owner: bool = False) -> Callable[..., Any]:
    """
    Decorator factory: gate a sheet route on the `sheet_id` URL argument.

    The decision is stored on flask.g.sheet_access for the view.

    Usage:
        @sheet_access_required()                  # any access (view)
        @sheet_access_required(level="edit")      # owner, admin or edit share
        @sheet_access_required(owner=True)        # owner or admin
    """
    def decorator(view_func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(view_func)
        def wrapper(*args: Any, **kwargs: Any):
            _require_login()
            resolver = AccessResolver(db.session)
            if owner:
                g.sheet_access = resolver.require_owner(kwargs["sheet_id"], current_user.id)
            else:
                g.sheet_access = resolver.require(kwargs["sheet_id"], current_user.id, level)
            return view_func(*args, **kwargs)

        return wrapper

    return decorator
