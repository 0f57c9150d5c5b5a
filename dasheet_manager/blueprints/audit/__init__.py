from .routes import audit_bp  # noqa: F401
