"""
Authentication Routes

Provides:
- POST /auth/register   (admin only)
- POST /auth/login      (access token in body, refresh token in HttpOnly cookie)
- POST /auth/refresh    (rotates the refresh cookie)
- POST /auth/logout     (revokes every session of the caller, clears the cookie)
- GET  /auth/me

Rules:
- The refresh token never appears in a response body. It lives in a cookie scoped
  to the refresh path only.
- Login and refresh failures return one generic message each.
"""

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from ...auth import SessionManager, TokenPair
from ...extensions import db
from ...schemas import LoginBody, RegisterBody, parse_body
from ...security import admin_required

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _sessions() -> SessionManager:
    return SessionManager(db.session, current_app.config)


def _token_response(pair: TokenPair, status: int = 200):
    cfg = current_app.config
    response = jsonify(
        {
            "access_token": pair.access_token,
            "token_type": "Bearer",
            "expires_in": cfg["ACCESS_TOKEN_TTL_MINUTES"] * 60,
            "user": pair.user.to_dict(),
        }
    )
    response.status_code = status
    response.set_cookie(
        cfg["REFRESH_COOKIE_NAME"],
        pair.refresh_token,
        max_age=pair.refresh_max_age,
        httponly=True,
        secure=cfg["REFRESH_COOKIE_SECURE"],
        samesite=cfg["REFRESH_COOKIE_SAMESITE"],
        path=cfg["REFRESH_COOKIE_PATH"],
    )
    return response


# ============================================================
# REGISTER
# ============================================================

@auth_bp.route("/register", methods=["POST"])
@admin_required
def register():
    """Create a user. Admin only; 409 when code or email is taken."""
    body = parse_body(RegisterBody)
    user = _sessions().register(body.code, body.email, body.password, body.role, actor_id=current_user.id)
    return jsonify({"user": user.to_dict()}), 201


# ============================================================
# LOGIN / REFRESH
# ============================================================

@auth_bp.route("/login", methods=["POST"])
def login():
    body = parse_body(LoginBody)
    return _token_response(_sessions().login(body.code, body.password))


@auth_bp.route("/refresh", methods=["POST"])
def refresh():
    """Redeem the refresh cookie for a new access token and a rotated cookie."""
    raw = request.cookies.get(current_app.config["REFRESH_COOKIE_NAME"])
    return _token_response(_sessions().refresh(raw))


# ============================================================
# LOGOUT / ME
# ============================================================

@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    cfg = current_app.config
    _sessions().logout(current_user.id)

    response = jsonify({"message": "Logged out"})
    response.delete_cookie(
        cfg["REFRESH_COOKIE_NAME"],
        path=cfg["REFRESH_COOKIE_PATH"],
        httponly=True,
        secure=cfg["REFRESH_COOKIE_SECURE"],
        samesite=cfg["REFRESH_COOKIE_SAMESITE"],
    )
    return response


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    return jsonify({"user": current_user.to_dict()})
