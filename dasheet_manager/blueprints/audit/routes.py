"""
Audit log routes (admin only, read only).
"""

from flask import Blueprint, current_app, jsonify, request

from ...audit import AuditTrail
from ...extensions import db
from ...security import admin_required
from ...utils import page_args

audit_bp = Blueprint("audit", __name__, url_prefix="/audit")


@audit_bp.route("", methods=["GET"])
@admin_required
def list_entries():
    """Newest first. Filters: entity_type, entity_id, action."""
    page, per_page = page_args(
        request.args, current_app.config["DEFAULT_PAGE_SIZE"], current_app.config["MAX_PAGE_SIZE"]
    )
    result = AuditTrail(db.session).entries(
        request.args.get("entity_type"),
        request.args.get("entity_id"),
        action=request.args.get("action"),
        page=page,
        per_page=per_page,
    )
    return jsonify(result.to_dict(lambda entry: entry.to_dict()))
