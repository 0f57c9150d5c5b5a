"""
dasheet_manager/sheets.py

Decision sheet store: DA sheets, their vendors and per-parameter evaluations,
plus sharing.

Rules:
- Sheets are created from published templates only.
- result / subtotal / overall score are always recomputed here from raw scores and
  the template's current weightages (scoring.py). Client values are ignored.
- Every successful update bumps version by exactly one, in SQL
  (version = version + 1), so concurrent updates each count.
- expected_version turns the update into a compare-and-swap (409 on mismatch).
  Without it, the last writer wins.
- Status only moves forward: Draft -> Submitted -> Approved.

Access checks are done by the caller (security.AccessResolver) before any
method here touches a sheet.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import audit, scoring
from .audit import AuditTrail, serialize_model
from .errors import Conflict, InvariantViolation, NotFound, ValidationError
from .models import (
    SHEET_STATUSES,
    STATUS_APPROVED,
    STATUS_DRAFT,
    STATUS_SUBMITTED,
    DASheet,
    SharedAccess,
    Template,
    User,
    Vendor,
    VendorEvaluation,
    utcnow,
)
from .schemas import SheetCreate, SheetUpdate, VendorBody
from .utils import IdAllocator, Page, atomic, paginate

logger = logging.getLogger(__name__)

STATUS_ACTIONS = {STATUS_SUBMITTED: audit.SUBMIT, STATUS_APPROVED: audit.APPROVE}


class SheetStore:
    def __init__(self, session: Session, audit_trail: Optional[AuditTrail] = None):
        self.session = session
        self.audit = audit_trail or AuditTrail(session)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, sheet_id: str) -> DASheet:
        sheet = self.session.get(DASheet, sheet_id)
        if sheet is None:
            raise NotFound("DA sheet not found")
        return sheet

    def list(
        self,
        user: User,
        *,
        type: Optional[str] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Page:
        """
        Admins see every sheet. Anyone else sees the sheets they own together with
        the sheets shared with their email, as one distinct result set.
        """
        stmt = select(DASheet)
        if not user.is_admin:
            stmt = (
                stmt.outerjoin(
                    SharedAccess,
                    and_(SharedAccess.sheet_id == DASheet.id, SharedAccess.user_email == user.email),
                )
                .where(or_(DASheet.created_by == user.id, SharedAccess.id.is_not(None)))
                .distinct()
            )
        if type:
            stmt = stmt.where(DASheet.type == type)
        if status:
            stmt = stmt.where(DASheet.status == status)
        if search:
            pattern = f"%{search}%"
            stmt = stmt.where(or_(DASheet.name.ilike(pattern), DASheet.notes.ilike(pattern)))
        stmt = stmt.order_by(DASheet.updated_at.desc(), DASheet.id)
        return paginate(self.session, stmt, page, per_page)

    # ------------------------------------------------------------------
    # Vendor matrices
    # ------------------------------------------------------------------
    def _build_vendors(
        self,
        bodies: List[VendorBody],
        template: Optional[Template],
        stored_categories: Dict[str, str],
        vendor_ids: IdAllocator,
        evaluation_ids: IdAllocator,
    ) -> List[Vendor]:
        """
        Each evaluation is filed under its parameter's category in the template.
        Parameters the template no longer has keep the category they were stored
        under; any other parameter is rejected.
        """
        layout = template.layout() if template is not None else []
        category_of = template.category_of() if template is not None else {}
        vendors = []
        for v_index, body in enumerate(bodies):
            if body.scores:
                # Client category keys are ignored; the template decides the block.
                rows = [
                    (ev.id, ev.parameter_id, ev.score, ev.comment)
                    for block in body.scores.values()
                    for ev in block.evaluations
                ]
            else:
                rows = [
                    (None, parameter_id, score, "")
                    for slots in scoring.empty_scores(layout).values()
                    for parameter_id, score in slots
                ]

            field = f"vendors.{v_index}.scores"
            seen = set()
            evaluations = []
            for e_index, (evaluation_id, parameter_id, score, comment) in enumerate(rows):
                if parameter_id in seen:
                    raise ValidationError.for_field(field, f"Parameter {parameter_id} is scored more than once")
                seen.add(parameter_id)

                category_id = category_of.get(parameter_id) or stored_categories.get(parameter_id)
                if category_id is None:
                    raise ValidationError.for_field(field, f"Parameter {parameter_id} is not part of the template")

                evaluations.append(
                    VendorEvaluation(
                        id=evaluation_ids(evaluation_id),
                        category_id=category_id,
                        parameter_id=parameter_id,
                        score=scoring.clamp_score(score),
                        comment=comment,
                        sort_order=e_index,
                    )
                )

            vendors.append(
                Vendor(
                    id=vendor_ids(body.id),
                    name=body.name,
                    notes=body.notes,
                    sort_order=v_index,
                    evaluations=evaluations,
                )
            )
        return vendors

    def _replace_vendors(self, sheet: DASheet, bodies: List[VendorBody], template: Optional[Template]) -> None:
        """
        Delete the sheet's current vendor subtree and insert `bodies` in order.

        The subtree is read and deleted by sheet key inside the running
        transaction, so rows written by another request since this session
        loaded the sheet are replaced as well.
        """
        self.session.flush()
        sheet_vendors = select(Vendor.id).where(Vendor.sheet_id == sheet.id)
        current = self.session.execute(
            select(VendorEvaluation.id, VendorEvaluation.parameter_id, VendorEvaluation.category_id).where(
                VendorEvaluation.vendor_id.in_(sheet_vendors)
            )
        ).all()

        vendor_ids = IdAllocator(
            self.session, Vendor, (b.id for b in bodies), owned=self.session.scalars(sheet_vendors)
        )
        evaluation_ids = IdAllocator(
            self.session,
            VendorEvaluation,
            (ev.id for b in bodies for block in (b.scores or {}).values() for ev in block.evaluations),
            owned=(row.id for row in current),
        )
        new_vendors = self._build_vendors(
            bodies,
            template,
            {row.parameter_id: row.category_id for row in current},
            vendor_ids,
            evaluation_ids,
        )

        # Loaded children leave the session; their ids may be inserted again.
        for vendor in list(sheet.vendors):
            self.session.expunge(vendor)
        self.session.expire(sheet, ["vendors"])

        self.session.execute(
            delete(VendorEvaluation).where(VendorEvaluation.vendor_id.in_(sheet_vendors)),
            execution_options={"synchronize_session": False},
        )
        self.session.execute(
            delete(Vendor).where(Vendor.sheet_id == sheet.id),
            execution_options={"synchronize_session": False},
        )
        sheet.vendors.extend(new_vendors)

    @staticmethod
    def _weightages(template: Optional[Template]) -> Dict[str, int]:
        # A deleted template cannot happen while sheets reference it, but stay total.
        return template.weightage_map() if template is not None else {}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def create(self, data: SheetCreate, actor_id: str) -> DASheet:
        template = self.session.get(Template, data.template_id)
        if template is None:
            raise NotFound("Template not found")
        if not template.is_published:
            raise InvariantViolation("Only published templates can be used to create a DA sheet")

        sheet = DASheet(
            name=data.name,
            type=data.type,
            template_id=template.id,
            notes=data.notes,
            status=STATUS_DRAFT,
            version=1,
            created_by=actor_id,
        )
        with atomic(self.session):
            self.session.add(sheet)
            self._replace_vendors(sheet, data.vendors, template)
            sheet.recalculate(self._weightages(template))

        logger.info("DA sheet %s created from template %s", sheet.id, template.id)
        self.audit.record(actor_id, audit.CREATE, audit.ENTITY_SHEET, sheet.id, {"name": sheet.name})
        return sheet

    def update(self, sheet_id: str, data: SheetUpdate, actor_id: str) -> DASheet:
        sheet = self.get(sheet_id)
        expected = data.expected_version
        if expected is not None and expected != sheet.version:
            raise Conflict(f"DA sheet has changed (current version {sheet.version}, expected {expected})")

        previous_status = sheet.status
        if data.status is not None and SHEET_STATUSES.index(data.status) < SHEET_STATUSES.index(previous_status):
            raise InvariantViolation(f"Status cannot move back from {previous_status} to {data.status}")

        template = self.session.get(Template, sheet.template_id)
        with atomic(self.session):
            if data.name is not None:
                sheet.name = data.name
            if data.notes is not None:
                sheet.notes = data.notes
            if data.status is not None and data.status != previous_status:
                sheet.status = data.status
                if data.status == STATUS_APPROVED:
                    sheet.approved_by = actor_id
                    sheet.approved_at = utcnow()
            if data.vendors is not None:
                self._replace_vendors(sheet, data.vendors, template)

            sheet.recalculate(self._weightages(template))

            stmt = update(DASheet).where(DASheet.id == sheet.id)
            if expected is not None:
                stmt = stmt.where(DASheet.version == expected)
            bumped = self.session.execute(
                stmt.values(version=DASheet.version + 1, updated_at=utcnow()),
                execution_options={"synchronize_session": False},
            )
            if bumped.rowcount != 1:
                raise Conflict(f"DA sheet has changed (expected version {expected})")

        # Version and timestamp were written in SQL; reload them.
        self.session.refresh(sheet)

        self.audit.record(
            actor_id,
            audit.UPDATE,
            audit.ENTITY_SHEET,
            sheet.id,
            {"fields": sorted(data.model_fields_set - {"expected_version"}), "version": sheet.version},
        )
        if sheet.status != previous_status:
            self.audit.record(
                actor_id, STATUS_ACTIONS[sheet.status], audit.ENTITY_SHEET, sheet.id, {"from": previous_status}
            )
        return sheet

    def duplicate(self, sheet_id: str, actor_id: str) -> DASheet:
        """
        Deep copy under new ids, owned by `actor_id`: Draft, version 1, no approval,
        no sharing. Vendors and evaluations are copied value for value.
        """
        source = self.get(sheet_id)
        copy = DASheet(
            name=f"{source.name} (Copy)",
            type=source.type,
            template_id=source.template_id,
            notes=source.notes,
            status=STATUS_DRAFT,
            version=1,
            created_by=actor_id,
            approved_by=None,
            approved_at=None,
            vendors=[
                Vendor(
                    name=vendor.name,
                    notes=vendor.notes,
                    overall_score=vendor.overall_score,
                    sort_order=vendor.sort_order,
                    evaluations=[
                        VendorEvaluation(
                            category_id=ev.category_id,
                            parameter_id=ev.parameter_id,
                            score=ev.score,
                            result=ev.result,
                            comment=ev.comment,
                            sort_order=ev.sort_order,
                        )
                        for ev in vendor.evaluations
                    ],
                )
                for vendor in source.vendors
            ],
        )
        with atomic(self.session):
            self.session.add(copy)

        self.audit.record(actor_id, audit.DUPLICATE, audit.ENTITY_SHEET, copy.id, {"source_id": sheet_id})
        return copy

    def delete(self, sheet_id: str, actor_id: str) -> None:
        sheet = self.get(sheet_id)
        snapshot = serialize_model(sheet)
        with atomic(self.session):
            self.session.delete(sheet)
        self.audit.record(actor_id, audit.DELETE, audit.ENTITY_SHEET, sheet_id, {"before": snapshot})

    # ------------------------------------------------------------------
    # Sharing
    # ------------------------------------------------------------------
    def _find_share(self, sheet_id: str, email: str) -> Optional[SharedAccess]:
        return self.session.scalar(
            select(SharedAccess).where(SharedAccess.sheet_id == sheet_id, SharedAccess.user_email == email)
        )

    def share(self, sheet_id: str, email: str, level: str, actor_id: str) -> SharedAccess:
        """Grant or change access; one row per (sheet, email)."""
        sheet = self.get(sheet_id)
        email = email.strip().lower()

        def _upsert() -> SharedAccess:
            with atomic(self.session):
                grant = self._find_share(sheet.id, email)
                if grant is None:
                    grant = SharedAccess(sheet_id=sheet.id, user_email=email)
                    self.session.add(grant)
                grant.access_level = level
                grant.shared_at = utcnow()
            return grant

        try:
            grant = _upsert()
        except IntegrityError:
            # A concurrent share inserted the row first; update it instead.
            grant = _upsert()

        self.audit.record(actor_id, audit.SHARE, audit.ENTITY_SHEET, sheet.id, {"email": email, "access_level": level})
        return grant

    def unshare(self, sheet_id: str, email: str, actor_id: str) -> None:
        sheet = self.get(sheet_id)
        email = email.strip().lower()
        grant = self._find_share(sheet.id, email)
        if grant is None:
            raise NotFound("Share not found")
        with atomic(self.session):
            self.session.delete(grant)
        self.audit.record(actor_id, audit.UNSHARE, audit.ENTITY_SHEET, sheet.id, {"email": email})
