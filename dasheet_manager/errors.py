"""
dasheet_manager/errors.py

Error taxonomy and its JSON translation.

Every business failure is an AppError subclass carrying its HTTP status.
Routes and services raise; the handlers registered here are the single place
where errors become responses. Unexpected exceptions are logged server-side
and answered with a generic 500.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for errors that map to a well-defined HTTP status."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Optional[List[Dict[str, Any]]] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    """Malformed or out-of-range input. Carries a field-level detail list."""

    status_code = 400
    default_message = "Validation failed"

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(details=[{"field": field, "message": message}])


class AuthenticationError(AppError):
    status_code = 401
    default_message = "Authentication required"


class InvalidCredentials(AuthenticationError):
    # Same text for unknown code and wrong password.
    default_message = "Invalid credentials"


class InvalidRefreshToken(AuthenticationError):
    # Same text for every refresh failure cause.
    default_message = "Invalid refresh token"


class AuthorizationError(AppError):
    status_code = 403
    default_message = "Access denied"


class NotFound(AppError):
    status_code = 404
    default_message = "Not found"


class Conflict(AppError):
    status_code = 409
    default_message = "Conflict"


class DuplicateIdentity(Conflict):
    default_message = "User with this code or email already exists"


class InvariantViolation(Conflict):
    default_message = "Operation violates a data invariant"


def register_error_handlers(app: Flask) -> None:
    """Translate exceptions into JSON responses."""

    @app.errorhandler(AppError)
    def _handle_app_error(error: AppError):
        if error.status_code >= 500:
            logger.error("Application error: %s", error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def _handle_http_exception(error: HTTPException):
        return jsonify({"error": error.description or error.name}), error.code

    @app.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        logger.exception("Unhandled error")
        return jsonify({"error": AppError.default_message}), 500
