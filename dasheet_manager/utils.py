"""
Utility functions shared across the app. This includes:
- atomic: one transaction per operation (commit or roll back as a unit).
- paginate / Page: page slicing for list endpoints.
- IdAllocator: identifier stability for replace-all-children updates.
- page_args: read page/per_page from the query string.
"""

from __future__ import annotations

import math
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .errors import ValidationError


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """
    Run a block as one transaction.

    Commits when the block exits normally; rolls back and re-raises otherwise.
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


# ---------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------
@dataclass
class Page:
    items: List[Any]
    page: int
    per_page: int
    total: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.per_page) if self.total else 0

    def to_dict(self, serialize: Callable[[Any], Dict]) -> Dict:
        return {
            "items": [serialize(item) for item in self.items],
            "pagination": {
                "page": self.page,
                "per_page": self.per_page,
                "total": self.total,
                "pages": self.pages,
            },
        }


def paginate(session: Session, stmt, page: int, per_page: int) -> Page:
    """Count the full result of `stmt`, then fetch one page of it."""
    total = session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
    items = session.scalars(stmt.limit(per_page).offset((page - 1) * per_page)).all()
    return Page(items=list(items), page=page, per_page=per_page, total=total)


def _parse_int(raw: Optional[str], field: str, default: int) -> int:
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError.for_field(field, "Must be an integer") from None
    if value < 1:
        raise ValidationError.for_field(field, "Must be at least 1")
    return value


def page_args(args, default_per_page: int, max_per_page: int) -> Tuple[int, int]:
    """(page, per_page) from a request.args-like mapping; per_page is capped."""
    page = _parse_int(args.get("page"), "page", 1)
    per_page = _parse_int(args.get("per_page"), "per_page", default_per_page)
    return page, min(per_page, max_per_page)


# ---------------------------------------------------------------------
# Identifier stability
# ---------------------------------------------------------------------
class IdAllocator:
    """
    Decide the primary key of each re-inserted child row.

    A caller-supplied id is kept when it is new, or when it already belongs to
    the parent being replaced. Ids owned by some other parent, repeated ids and
    missing ids get a fresh uuid.
    """

    def __init__(self, session: Session, model, candidates: Iterable[Optional[str]], owned: Iterable[str] = ()):
        wanted = {c for c in candidates if c}
        self._blocked = set()
        if wanted:
            existing = session.scalars(select(model.id).where(model.id.in_(wanted)))
            self._blocked = set(existing) - set(owned)
        self._used: set = set()

    def __call__(self, candidate: Optional[str] = None) -> str:
        if candidate and candidate not in self._blocked and candidate not in self._used:
            chosen = candidate
        else:
            chosen = str(uuid.uuid4())
        self._used.add(chosen)
        return chosen
