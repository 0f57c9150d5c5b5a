"""
dasheet_manager/blueprints/sheets/routes.py

DA sheet routes.

Access (resolved server-side before any sheet data is read):
- read / duplicate: owner, admin, or any share
- update: owner, admin, or an "edit" share
- delete / share / unshare: owner or admin

Listing returns only sheets the caller may see (admins: all).
"""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from ...extensions import db
from ...models import ACCESS_EDIT
from ...schemas import SheetCreate, SheetUpdate, ShareBody, parse_body
from ...security import sheet_access_required
from ...sheets import SheetStore
from ...utils import page_args

sheets_bp = Blueprint("sheets", __name__, url_prefix="/sheets")


def _store() -> SheetStore:
    return SheetStore(db.session)


# ---------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------
@sheets_bp.route("", methods=["GET"])
@login_required
def list_sheets():
    """Filters: type, status, search. Paginated."""
    page, per_page = page_args(
        request.args, current_app.config["DEFAULT_PAGE_SIZE"], current_app.config["MAX_PAGE_SIZE"]
    )
    result = _store().list(
        current_user,
        type=request.args.get("type"),
        status=request.args.get("status"),
        search=(request.args.get("search") or "").strip() or None,
        page=page,
        per_page=per_page,
    )
    return jsonify(result.to_dict(lambda s: s.to_summary()))


@sheets_bp.route("", methods=["POST"])
@login_required
def create_sheet():
    sheet = _store().create(parse_body(SheetCreate), current_user.id)
    return jsonify(sheet.to_dict()), 201


# ---------------------------------------------------------------------
# Single sheet
# ---------------------------------------------------------------------
@sheets_bp.route("/<sheet_id>", methods=["GET"])
@sheet_access_required()
def get_sheet(sheet_id: str):
    return jsonify(_store().get(sheet_id).to_dict())


@sheets_bp.route("/<sheet_id>", methods=["PUT"])
@sheet_access_required(level=ACCESS_EDIT)
def update_sheet(sheet_id: str):
    sheet = _store().update(sheet_id, parse_body(SheetUpdate), current_user.id)
    return jsonify(sheet.to_dict())


@sheets_bp.route("/<sheet_id>", methods=["DELETE"])
@sheet_access_required(owner=True)
def delete_sheet(sheet_id: str):
    _store().delete(sheet_id, current_user.id)
    return "", 204


@sheets_bp.route("/<sheet_id>/duplicate", methods=["POST"])
@sheet_access_required()
def duplicate_sheet(sheet_id: str):
    """The copy belongs to the caller."""
    copy = _store().duplicate(sheet_id, current_user.id)
    return jsonify(copy.to_dict()), 201


# ---------------------------------------------------------------------
# Sharing
# ---------------------------------------------------------------------
@sheets_bp.route("/<sheet_id>/share", methods=["POST"])
@sheet_access_required(owner=True)
def share_sheet(sheet_id: str):
    body = parse_body(ShareBody)
    grant = _store().share(sheet_id, body.email, body.access_level, current_user.id)
    return jsonify(grant.to_dict())


@sheets_bp.route("/<sheet_id>/share/<email>", methods=["DELETE"])
@sheet_access_required(owner=True)
def unshare_sheet(sheet_id: str, email: str):
    _store().unshare(sheet_id, email, current_user.id)
    return "", 204
