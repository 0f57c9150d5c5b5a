"""
DA Sheet Manager – Domain Models

Includes:
- Users and refresh-token records (session lifecycle)
- Templates -> Categories -> Judgment parameters (weighted criteria)
- DA sheets -> Vendors -> Vendor evaluations, plus shared access rows
- Audit log (append-only)

Ownership:
- template -> category -> parameter and sheet -> vendor -> evaluation are exclusive
  (cascade on delete).
- sheet -> template and template/sheet -> creator are referential only (no cascade).

IMPORTANT:
- result / subtotal / overall score are derived values. They are written only by
  Vendor.recalculate(), which delegates to scoring.py.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List

from .extensions import db
from . import scoring


# ---------------------------------------------------------------------
# Helpers / closed enumerations
# ---------------------------------------------------------------------
ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLES = (ROLE_ADMIN, ROLE_USER)

DA_TYPES = ("License", "Custom Development", "SaaS")

STATUS_DRAFT = "Draft"
STATUS_SUBMITTED = "Submitted"
STATUS_APPROVED = "Approved"
# Forward-only order
SHEET_STATUSES = (STATUS_DRAFT, STATUS_SUBMITTED, STATUS_APPROVED)

ACCESS_VIEW = "view"
ACCESS_EDIT = "edit"
ACCESS_LEVELS = (ACCESS_VIEW, ACCESS_EDIT)


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite stores no zone)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ---------------------------------------------------------------------
# Users & sessions
# ---------------------------------------------------------------------
class User(db.Model):
    """System login user. Identity code and email are both unique."""

    __tablename__ = "users"

    id = db.Column(db.String(36), primary_key=True, default=new_id)

    code = db.Column(db.String(50), unique=True, nullable=False, index=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)

    role = db.Column(db.String(10), nullable=False, default=ROLE_USER, index=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    refresh_tokens = db.relationship(
        "RefreshToken",
        back_populates="user",
        cascade="all, delete-orphan",
        lazy=True,
    )

    __table_args__ = (db.CheckConstraint("role IN ('admin', 'user')", name="ck_users_role"),)

    # Flask-Login protocol (bearer tokens only, no cookie session)
    is_active = True
    is_anonymous = False

    @property
    def is_authenticated(self) -> bool:
        return True

    def get_id(self) -> str:
        return self.id

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def to_dict(self) -> Dict:
        return {"id": self.id, "code": self.code, "email": self.email, "role": self.role}

    def __repr__(self):
        return f"<User {self.code}>"


class RefreshToken(db.Model):
    """
    Refresh-token record.

    Only a salted hash of the raw token is stored. A record is single-use:
    redeeming it sets revoked_at.
    """

    __tablename__ = "refresh_tokens"

    id = db.Column(db.String(36), primary_key=True, default=new_id)

    user_id = db.Column(
        db.String(36),
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    token_hash = db.Column(db.String(255), nullable=False, unique=True)
    expires_at = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    revoked_at = db.Column(db.DateTime, nullable=True)

    user = db.relationship("User", back_populates="refresh_tokens")


# ---------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------
class Template(db.Model):
    """Reusable scoring template. Publishing requires a total weightage of 100."""

    __tablename__ = "templates"

    id = db.Column(db.String(36), primary_key=True, default=new_id)

    name = db.Column(db.String(200), nullable=False)
    type = db.Column(db.String(50), nullable=False, index=True)
    description = db.Column(db.Text, nullable=False, default="")
    is_published = db.Column(db.Boolean, nullable=False, default=False, index=True)

    created_by = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    categories = db.relationship(
        "Category",
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="Category.sort_order",
        lazy=True,
    )

    creator = db.relationship("User", foreign_keys=[created_by])

    def layout(self) -> List[tuple]:
        """[(category_id, [(parameter_id, weightage), ...]), ...] in display order."""
        return [
            (category.id, [(p.id, p.weightage) for p in category.parameters])
            for category in self.categories
        ]

    def weightage_map(self) -> Dict[str, int]:
        return {p.id: p.weightage for c in self.categories for p in c.parameters}

    def category_of(self) -> Dict[str, str]:
        """parameter_id -> category_id"""
        return {p.id: c.id for c in self.categories for p in c.parameters}

    @property
    def total_weightage(self) -> int:
        return scoring.total_weightage(self.layout())

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "is_published": self.is_published,
            "total_weightage": self.total_weightage,
            "categories": [c.to_dict() for c in self.categories],
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Category(db.Model):
    __tablename__ = "categories"

    id = db.Column(db.String(36), primary_key=True, default=new_id)

    template_id = db.Column(
        db.String(36),
        db.ForeignKey("templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name = db.Column(db.String(200), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    template = db.relationship("Template", back_populates="categories")

    parameters = db.relationship(
        "JudgmentParameter",
        back_populates="category",
        cascade="all, delete-orphan",
        order_by="JudgmentParameter.sort_order",
        lazy=True,
    )

    @property
    def weightage(self) -> int:
        return scoring.category_weightage(p.weightage for p in self.parameters)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "weightage": self.weightage,
            "parameters": [p.to_dict() for p in self.parameters],
        }


class JudgmentParameter(db.Model):
    """A single weighted criterion. Weightage is one of scoring.ALLOWED_WEIGHTAGES."""

    __tablename__ = "judgment_parameters"

    id = db.Column(db.String(36), primary_key=True, default=new_id)

    category_id = db.Column(
        db.String(36),
        db.ForeignKey("categories.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name = db.Column(db.String(200), nullable=False)
    weightage = db.Column(db.Integer, nullable=False)
    comment = db.Column(db.Text, nullable=False, default="")
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    category = db.relationship("Category", back_populates="parameters")

    __table_args__ = (
        db.CheckConstraint("weightage IN (5, 10, 15, 20, 25, 30)", name="ck_parameter_weightage"),
    )

    def to_dict(self) -> Dict:
        return {"id": self.id, "name": self.name, "weightage": self.weightage, "comment": self.comment}


# ---------------------------------------------------------------------
# DA sheets
# ---------------------------------------------------------------------
class DASheet(db.Model):
    """Decision-analysis sheet scoring vendors against a template."""

    __tablename__ = "da_sheets"

    id = db.Column(db.String(36), primary_key=True, default=new_id)

    name = db.Column(db.String(200), nullable=False)
    type = db.Column(db.String(50), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default=STATUS_DRAFT, index=True)

    # Referential only: deleting a template never cascades to sheets.
    template_id = db.Column(db.String(36), db.ForeignKey("templates.id"), nullable=False, index=True)

    notes = db.Column(db.Text, nullable=False, default="")
    version = db.Column(db.Integer, nullable=False, default=1)

    created_by = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    approved_by = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    template = db.relationship("Template", foreign_keys=[template_id])

    vendors = db.relationship(
        "Vendor",
        back_populates="sheet",
        cascade="all, delete-orphan",
        order_by="Vendor.sort_order",
        lazy=True,
    )

    shared_access = db.relationship(
        "SharedAccess",
        back_populates="sheet",
        cascade="all, delete-orphan",
        order_by="SharedAccess.shared_at",
        lazy=True,
    )

    __table_args__ = (
        db.CheckConstraint("status IN ('Draft', 'Submitted', 'Approved')", name="ck_sheet_status"),
    )

    def recalculate(self, weightages: Dict[str, int]) -> None:
        """Re-derive every vendor's results and overall score from template weightages."""
        for vendor in self.vendors:
            vendor.recalculate(weightages)

    def to_summary(self) -> Dict:
        """List-row form (no vendor matrices)."""
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "status": self.status,
            "template_id": self.template_id,
            "version": self.version,
            "created_by": self.created_by,
            "vendor_count": len(self.vendors),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def to_dict(self) -> Dict:
        data = self.to_summary()
        del data["vendor_count"]
        # One block per template category, then any block left from removed categories.
        category_ids = [c.id for c in self.template.categories] if self.template is not None else []
        data.update(
            {
                "notes": self.notes,
                "approved_by": self.approved_by,
                "approved_at": _iso(self.approved_at),
                "vendors": [v.to_dict(category_ids) for v in self.vendors],
                "shared_with": [s.to_dict() for s in self.shared_access],
            }
        )
        return data


class Vendor(db.Model):
    __tablename__ = "vendors"

    id = db.Column(db.String(36), primary_key=True, default=new_id)

    sheet_id = db.Column(
        db.String(36),
        db.ForeignKey("da_sheets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name = db.Column(db.String(200), nullable=False)
    overall_score = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text, nullable=False, default="")
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    sheet = db.relationship("DASheet", back_populates="vendors")

    evaluations = db.relationship(
        "VendorEvaluation",
        back_populates="vendor",
        cascade="all, delete-orphan",
        order_by="VendorEvaluation.sort_order",
        lazy=True,
    )

    def raw_scores(self) -> Dict[str, List[tuple]]:
        """category_id -> [(parameter_id, score), ...] in stored order."""
        blocks: Dict[str, List[tuple]] = {}
        for evaluation in self.evaluations:
            blocks.setdefault(evaluation.category_id, []).append((evaluation.parameter_id, evaluation.score))
        return blocks

    def recalculate(self, weightages: Dict[str, int]) -> None:
        """Write derived results and overall score. Client-sent values never reach here."""
        computed = scoring.score_vendor(weightages, self.raw_scores())
        results = {
            ev.parameter_id: ev for block in computed.categories for ev in block.evaluations
        }
        for evaluation in self.evaluations:
            scored = results[evaluation.parameter_id]
            evaluation.score = scored.score
            evaluation.result = scored.result
        self.overall_score = computed.overall

    def to_dict(self, category_ids: Iterable[str] = ()) -> Dict:
        """`category_ids`: the template's categories, each given a block even when empty."""
        scores: Dict[str, Dict] = {cid: {"evaluations": [], "subtotal": 0} for cid in category_ids}
        for evaluation in self.evaluations:
            block = scores.setdefault(evaluation.category_id, {"evaluations": [], "subtotal": 0})
            block["evaluations"].append(evaluation.to_dict())
            block["subtotal"] += evaluation.result
        return {
            "id": self.id,
            "name": self.name,
            "scores": scores,
            "overall_score": self.overall_score,
            "notes": self.notes,
        }


class VendorEvaluation(db.Model):
    """
    One score for one judgment parameter.

    category_id / parameter_id are plain references (no FK): a template edit can
    remove the parameter while old evaluations still point at it.
    """

    __tablename__ = "vendor_evaluations"

    id = db.Column(db.String(36), primary_key=True, default=new_id)

    vendor_id = db.Column(
        db.String(36),
        db.ForeignKey("vendors.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    category_id = db.Column(db.String(36), nullable=False)
    parameter_id = db.Column(db.String(36), nullable=False)

    score = db.Column(db.Integer, nullable=False, default=0)
    result = db.Column(db.Integer, nullable=False, default=0)
    comment = db.Column(db.Text, nullable=False, default="")
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    vendor = db.relationship("Vendor", back_populates="evaluations")

    __table_args__ = (
        db.UniqueConstraint("vendor_id", "parameter_id", name="uq_vendor_parameter"),
        db.CheckConstraint("score >= 0 AND score <= 10", name="ck_evaluation_score"),
    )

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "parameter_id": self.parameter_id,
            "score": self.score,
            "result": self.result,
            "comment": self.comment,
        }


class SharedAccess(db.Model):
    """Grant of view/edit access on a sheet to an email. Unique per (sheet, email)."""

    __tablename__ = "shared_access"

    id = db.Column(db.String(36), primary_key=True, default=new_id)

    sheet_id = db.Column(
        db.String(36),
        db.ForeignKey("da_sheets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    user_email = db.Column(db.String(255), nullable=False, index=True)
    access_level = db.Column(db.String(10), nullable=False)
    shared_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    sheet = db.relationship("DASheet", back_populates="shared_access")

    __table_args__ = (
        db.UniqueConstraint("sheet_id", "user_email", name="uq_shared_sheet_email"),
        db.CheckConstraint("access_level IN ('view', 'edit')", name="ck_shared_level"),
    )

    def to_dict(self) -> Dict:
        return {"email": self.user_email, "access_level": self.access_level, "shared_at": _iso(self.shared_at)}


# ---------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------
class AuditLog(db.Model):
    """Append-only audit trail. Never updated or deleted by business operations."""

    __tablename__ = "audit_log"

    id = db.Column(db.String(36), primary_key=True, default=new_id)

    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)

    action = db.Column(db.String(20), nullable=False, index=True)
    entity_type = db.Column(db.String(50), nullable=False)
    entity_id = db.Column(db.String(36), nullable=False)

    details = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (db.Index("ix_audit_log_entity", "entity_type", "entity_id"),)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "details": json.loads(self.details) if self.details else None,
            "created_at": _iso(self.created_at),
        }
