"""
Request body schemas (pydantic).

Shape and type checks only. Domain rules (allowed weightages, publish rule,
status order, score clamping) live in the services.

Unknown fields are ignored, so a client can send back a sheet it fetched
(including derived `result`, `subtotal` and `overall_score`); those values are
dropped here and recomputed server-side.
"""

from __future__ import annotations

import re
from typing import Dict, List, Literal, Optional

from flask import request
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from .errors import ValidationError

DAType = Literal["License", "Custom Development", "SaaS"]
SheetStatus = Literal["Draft", "Submitted", "Approved"]
AccessLevel = Literal["view", "edit"]
Role = Literal["admin", "user"]

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class _Body(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


def _check_email(value: str) -> str:
    if not EMAIL_RE.match(value):
        raise ValueError("Invalid email address")
    return value.lower()


# ---------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------
class RegisterBody(_Body):
    code: str = Field(min_length=1, max_length=50)
    email: str = Field(max_length=255)
    password: str = Field(min_length=8, max_length=128)
    role: Role = "user"

    normalize_email = field_validator("email")(_check_email)

    @field_validator("password")
    @classmethod
    def check_password_strength(cls, value: str) -> str:
        missing = [
            label
            for label, pattern in (
                ("an uppercase letter", r"[A-Z]"),
                ("a lowercase letter", r"[a-z]"),
                ("a digit", r"\d"),
                ("a special character", r"[^A-Za-z0-9]"),
            )
            if not re.search(pattern, value)
        ]
        if missing:
            raise ValueError("Password must contain " + ", ".join(missing))
        return value


class LoginBody(_Body):
    code: str = Field(min_length=1, max_length=50)
    password: str = Field(min_length=1)


# ---------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------
class ParameterBody(_Body):
    id: Optional[str] = Field(default=None, max_length=36)
    name: str = Field(min_length=1, max_length=200)
    weightage: int
    comment: str = ""


class CategoryBody(_Body):
    id: Optional[str] = Field(default=None, max_length=36)
    name: str = Field(min_length=1, max_length=200)
    parameters: List[ParameterBody] = Field(min_length=1)


class TemplateCreate(_Body):
    name: str = Field(min_length=1, max_length=200)
    type: DAType
    description: str = ""
    is_published: bool = False
    categories: List[CategoryBody] = Field(min_length=1)


class TemplateUpdate(_Body):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    type: Optional[DAType] = None
    description: Optional[str] = None
    is_published: Optional[bool] = None
    categories: Optional[List[CategoryBody]] = Field(default=None, min_length=1)


# ---------------------------------------------------------------------
# Sheets
# ---------------------------------------------------------------------
class EvaluationBody(_Body):
    id: Optional[str] = Field(default=None, max_length=36)
    parameter_id: str = Field(min_length=1, max_length=36)
    score: int = 0
    comment: str = ""


class ScoreBlockBody(_Body):
    evaluations: List[EvaluationBody] = Field(default_factory=list)


class VendorBody(_Body):
    id: Optional[str] = Field(default=None, max_length=36)
    name: str = Field(min_length=1, max_length=200)
    notes: str = ""
    # key -> block; the template decides each evaluation's category.
    # Omitted or empty means "one zero slot per template parameter".
    scores: Optional[Dict[str, ScoreBlockBody]] = None


class SheetCreate(_Body):
    name: str = Field(min_length=1, max_length=200)
    type: DAType
    template_id: str = Field(min_length=1, max_length=36)
    notes: str = ""
    vendors: List[VendorBody] = Field(default_factory=list)


class SheetUpdate(_Body):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    status: Optional[SheetStatus] = None
    notes: Optional[str] = None
    vendors: Optional[List[VendorBody]] = None
    expected_version: Optional[int] = Field(default=None, ge=1)


class ShareBody(_Body):
    email: str = Field(max_length=255)
    access_level: AccessLevel = "view"

    normalize_email = field_validator("email")(_check_email)


# ---------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------
def _field_path(loc) -> str:
    return ".".join(str(part) for part in loc) or "body"


def validate(model, payload):
    """Validate a payload against `model`; pydantic errors become a 400 ValidationError."""
    if not isinstance(payload, dict):
        raise ValidationError.for_field("body", "Request body must be a JSON object")
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        details = [{"field": _field_path(err["loc"]), "message": err["msg"]} for err in exc.errors()]
        raise ValidationError(details=details) from None


def parse_body(model):
    """Validate the current request's JSON body."""
    return validate(model, request.get_json(silent=True))
