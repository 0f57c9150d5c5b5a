"""
dasheet_manager/__init__.py

Flask application factory for the DA Sheet Manager (JSON API).

Requirements:
- Every request is authenticated with a Bearer access token, except login, refresh
  and health. Flask-Login's request_loader resolves the token to a User.
- Nothing from the client is trusted: access control and score derivation are
  server-side.
- One SQLAlchemy session per request (Flask-SQLAlchemy); services receive it
  explicitly. Each create_app() call binds its own engine, so tests build
  isolated apps.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import click
from flask import Flask, jsonify, request

from .errors import AuthenticationError, register_error_handlers
from .extensions import db, login_manager, migrate
from .models import ROLE_ADMIN, User

# Blueprint imports kept inside create_app() to reduce import side effects.


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("dasheet_manager").setLevel(level)
    app.logger.setLevel(level)


def create_app(config_object: str = "config.Config", overrides: Optional[Mapping[str, Any]] = None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)
    if overrides:
        app.config.update(overrides)

    _configure_logging(app)

    # Extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    @login_manager.request_loader
    def load_user_from_request(req) -> User | None:
        """Resolve `Authorization: Bearer <access token>` to a User."""
        from .auth import SessionManager

        scheme, _, token = req.headers.get("Authorization", "").partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return SessionManager(db.session, app.config).authenticate(token.strip())

    @login_manager.unauthorized_handler
    def unauthorized():
        raise AuthenticationError()

    register_error_handlers(app)

    # ----------------------------------------------------------------------
    # Blueprints
    # ----------------------------------------------------------------------
    from .blueprints.audit import audit_bp
    from .blueprints.auth import auth_bp
    from .blueprints.sheets import sheets_bp
    from .blueprints.templates import templates_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(templates_bp)
    app.register_blueprint(sheets_bp)
    app.register_blueprint(audit_bp)

    @app.after_request
    def _log_request(response):
        app.logger.debug("%s %s -> %s", request.method, request.path, response.status_code)
        return response

    # ----------------------------------------------------------------------
    # Health (liveness only)
    # ----------------------------------------------------------------------
    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok", "app": app.config["APP_NAME"]})

    # ----------------------------------------------------------------------
    # CLI
    # ----------------------------------------------------------------------
    @app.cli.command("init-db")
    def init_db_command():
        """Create all tables (development; use `flask db upgrade` with migrations)."""
        db.create_all()
        click.echo("Database tables created.")

    @app.cli.command("create-admin")
    @click.argument("code")
    @click.argument("email")
    @click.password_option()
    def create_admin_command(code: str, email: str, password: str):
        """Bootstrap an admin account (first system login)."""
        from .auth import SessionManager
        from .errors import DuplicateIdentity, ValidationError
        from .schemas import RegisterBody, validate

        try:
            body = validate(RegisterBody, {"code": code, "email": email, "password": password, "role": ROLE_ADMIN})
            user = SessionManager(db.session, app.config).register(body.code, body.email, body.password, role=body.role)
        except ValidationError as exc:
            raise click.ClickException("; ".join(d["message"] for d in exc.details or [])) from None
        except DuplicateIdentity as exc:
            raise click.ClickException(exc.message) from None
        click.echo(f"Admin {user.code} created.")

    return app
