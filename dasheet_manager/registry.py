"""
dasheet_manager/registry.py

Template registry: weighted scoring templates and their publish workflow.

Rules:
- Every parameter weightage is one of scoring.ALLOWED_WEIGHTAGES.
- A published template totals exactly 100. Drafts may be off while being edited.
- Editing categories replaces the whole category/parameter subtree in one
  transaction, deleting it by template key. Supplied ids survive the edit when
  they are new or already belong to this template (see utils.IdAllocator).
- A template referenced by any sheet cannot be deleted.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from . import audit, scoring
from .audit import AuditTrail, serialize_model
from .errors import Conflict, InvariantViolation, NotFound, ValidationError
from .models import Category, DASheet, JudgmentParameter, Template, utcnow
from .schemas import CategoryBody, TemplateCreate, TemplateUpdate
from .utils import IdAllocator, Page, atomic, paginate

logger = logging.getLogger(__name__)


def check_weightages(categories: List[CategoryBody]) -> None:
    """Raise ValidationError listing every parameter with a disallowed weightage."""
    allowed = ", ".join(str(w) for w in scoring.ALLOWED_WEIGHTAGES)
    details = [
        {
            "field": f"categories.{c_index}.parameters.{p_index}.weightage",
            "message": f"Weightage must be one of {allowed}",
        }
        for c_index, category in enumerate(categories)
        for p_index, parameter in enumerate(category.parameters)
        if not scoring.is_allowed_weightage(parameter.weightage)
    ]
    if details:
        raise ValidationError(details=details)


def _require_publishable(template: Template) -> None:
    total = template.total_weightage
    if total != scoring.REQUIRED_TOTAL_WEIGHTAGE:
        raise InvariantViolation(
            f"Total weightage must be exactly {scoring.REQUIRED_TOTAL_WEIGHTAGE} to publish (currently {total})"
        )


class TemplateRegistry:
    def __init__(self, session: Session, audit_trail: Optional[AuditTrail] = None):
        self.session = session
        self.audit = audit_trail or AuditTrail(session)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, template_id: str) -> Template:
        template = self.session.get(Template, template_id)
        if template is None:
            raise NotFound("Template not found")
        return template

    def list(
        self,
        *,
        type: Optional[str] = None,
        published: Optional[bool] = None,
        search: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Page:
        stmt = select(Template)
        if type:
            stmt = stmt.where(Template.type == type)
        if published is not None:
            stmt = stmt.where(Template.is_published == published)
        if search:
            pattern = f"%{search}%"
            stmt = stmt.where(or_(Template.name.ilike(pattern), Template.description.ilike(pattern)))
        stmt = stmt.order_by(Template.updated_at.desc(), Template.id)
        return paginate(self.session, stmt, page, per_page)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def _replace_categories(self, template: Template, categories: List[CategoryBody]) -> None:
        """Delete the current subtree (by template key) and insert `categories` in order."""
        self.session.flush()
        template_categories = select(Category.id).where(Category.template_id == template.id)

        category_ids = IdAllocator(
            self.session,
            Category,
            (c.id for c in categories),
            owned=self.session.scalars(template_categories),
        )
        parameter_ids = IdAllocator(
            self.session,
            JudgmentParameter,
            (p.id for c in categories for p in c.parameters),
            owned=self.session.scalars(
                select(JudgmentParameter.id).where(JudgmentParameter.category_id.in_(template_categories))
            ),
        )

        for category in list(template.categories):
            self.session.expunge(category)
        self.session.expire(template, ["categories"])

        self.session.execute(
            delete(JudgmentParameter).where(JudgmentParameter.category_id.in_(template_categories)),
            execution_options={"synchronize_session": False},
        )
        self.session.execute(
            delete(Category).where(Category.template_id == template.id),
            execution_options={"synchronize_session": False},
        )

        for c_index, body in enumerate(categories):
            template.categories.append(
                Category(
                    id=category_ids(body.id),
                    name=body.name,
                    sort_order=c_index,
                    parameters=[
                        JudgmentParameter(
                            id=parameter_ids(p.id),
                            name=p.name,
                            weightage=p.weightage,
                            comment=p.comment,
                            sort_order=p_index,
                        )
                        for p_index, p in enumerate(body.parameters)
                    ],
                )
            )

    def create(self, data: TemplateCreate, actor_id: Optional[str]) -> Template:
        check_weightages(data.categories)

        template = Template(
            name=data.name,
            type=data.type,
            description=data.description,
            is_published=data.is_published,
            created_by=actor_id,
        )
        with atomic(self.session):
            self.session.add(template)
            self._replace_categories(template, data.categories)
            if template.is_published:
                _require_publishable(template)

        logger.info("Template %s created (total weightage %d)", template.id, template.total_weightage)
        self.audit.record(actor_id, audit.CREATE, audit.ENTITY_TEMPLATE, template.id, {"name": template.name})
        return template

    def update(self, template_id: str, data: TemplateUpdate, actor_id: Optional[str]) -> Template:
        template = self.get(template_id)
        if data.categories is not None:
            check_weightages(data.categories)

        changed = sorted(data.model_fields_set)
        with atomic(self.session):
            if data.name is not None:
                template.name = data.name
            if data.type is not None:
                template.type = data.type
            if data.description is not None:
                template.description = data.description
            if data.is_published is not None:
                template.is_published = data.is_published
            if data.categories is not None:
                self._replace_categories(template, data.categories)
            if template.is_published:
                _require_publishable(template)
            template.updated_at = utcnow()

        self.audit.record(actor_id, audit.UPDATE, audit.ENTITY_TEMPLATE, template.id, {"fields": changed})
        return template

    def publish(self, template_id: str, actor_id: Optional[str]) -> Template:
        template = self.get(template_id)
        _require_publishable(template)
        with atomic(self.session):
            template.is_published = True
            template.updated_at = utcnow()
        self.audit.record(actor_id, audit.PUBLISH, audit.ENTITY_TEMPLATE, template.id)
        return template

    def unpublish(self, template_id: str, actor_id: Optional[str]) -> Template:
        template = self.get(template_id)
        with atomic(self.session):
            template.is_published = False
            template.updated_at = utcnow()
        self.audit.record(actor_id, audit.UNPUBLISH, audit.ENTITY_TEMPLATE, template.id)
        return template

    def delete(self, template_id: str, actor_id: Optional[str]) -> None:
        template = self.get(template_id)
        in_use = self.session.scalar(
            select(func.count()).select_from(DASheet).where(DASheet.template_id == template.id)
        )
        if in_use:
            raise Conflict(f"Template is used by {in_use} DA sheet(s) and cannot be deleted")

        snapshot = serialize_model(template)
        with atomic(self.session):
            self.session.delete(template)
        self.audit.record(actor_id, audit.DELETE, audit.ENTITY_TEMPLATE, template_id, {"before": snapshot})
