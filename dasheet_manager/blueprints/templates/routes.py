"""
Template routes

Reads: any authenticated user.
Writes (create / update / delete / publish / unpublish): admin only.
"""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from ...errors import ValidationError
from ...extensions import db
from ...registry import TemplateRegistry
from ...schemas import TemplateCreate, TemplateUpdate, parse_body
from ...security import admin_required
from ...utils import page_args

templates_bp = Blueprint("templates", __name__, url_prefix="/templates")

_TRUE = {"1", "true", "yes"}
_FALSE = {"0", "false", "no"}


def _registry() -> TemplateRegistry:
    return TemplateRegistry(db.session)


def _parse_bool_arg(name: str) -> bool | None:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValidationError.for_field(name, "Must be true or false")


@templates_bp.route("", methods=["GET"])
@login_required
def list_templates():
    """Filters: type, published, search. Paginated."""
    page, per_page = page_args(
        request.args, current_app.config["DEFAULT_PAGE_SIZE"], current_app.config["MAX_PAGE_SIZE"]
    )
    result = _registry().list(
        type=request.args.get("type"),
        published=_parse_bool_arg("published"),
        search=(request.args.get("search") or "").strip() or None,
        page=page,
        per_page=per_page,
    )
    return jsonify(result.to_dict(lambda t: t.to_dict()))


@templates_bp.route("", methods=["POST"])
@admin_required
def create_template():
    template = _registry().create(parse_body(TemplateCreate), current_user.id)
    return jsonify(template.to_dict()), 201


@templates_bp.route("/<template_id>", methods=["GET"])
@login_required
def get_template(template_id: str):
    return jsonify(_registry().get(template_id).to_dict())


@templates_bp.route("/<template_id>", methods=["PUT"])
@admin_required
def update_template(template_id: str):
    template = _registry().update(template_id, parse_body(TemplateUpdate), current_user.id)
    return jsonify(template.to_dict())


@templates_bp.route("/<template_id>", methods=["DELETE"])
@admin_required
def delete_template(template_id: str):
    _registry().delete(template_id, current_user.id)
    return "", 204


@templates_bp.route("/<template_id>/publish", methods=["POST"])
@admin_required
def publish_template(template_id: str):
    return jsonify(_registry().publish(template_id, current_user.id).to_dict())


@templates_bp.route("/<template_id>/unpublish", methods=["POST"])
@admin_required
def unpublish_template(template_id: str):
    return jsonify(_registry().unpublish(template_id, current_user.id).to_dict())
