from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from projectauth.storage.models import CustomFieldSpec, FieldType

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 30
PASSWORD_MAX_LENGTH = 128

PROFILE_FIELDS = (
    "first_name",
    "last_name",
    "display_name",
    "avatar",
    "bio",
    "phone_number",
    "custom_fields",
)

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def validate_username(value: Optional[str]) -> Optional[str]:
    """Usernames are optional; blank means none."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError("username must be a string")
    value = value.strip()
    if not value:
        return None
    if not USERNAME_MIN_LENGTH <= len(value) <= USERNAME_MAX_LENGTH:
        raise ValueError(
            f"username must be {USERNAME_MIN_LENGTH}-{USERNAME_MAX_LENGTH} characters"
        )
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username may only contain letters, numbers, '.', '_' and '-'")
    return value


def _coerce_field(spec: CustomFieldSpec, value: Any) -> Any:
    if spec.type == FieldType.STRING:
        if not isinstance(value, str):
            raise ValueError("must be a string")
        return value
    if spec.type == FieldType.NUMBER:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("must be a number")
        return value
    if spec.type == FieldType.BOOLEAN:
        if not isinstance(value, bool):
            raise ValueError("must be a boolean")
        return value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if not isinstance(value, str):
        raise ValueError("must be an ISO date")
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValueError("must be an ISO date") from None
    return value


def check_custom_fields(
    schema: Sequence[CustomFieldSpec],
    values: Optional[Mapping[str, Any]],
    *,
    partial: bool = False,
) -> Tuple[Dict[str, Any], Dict[str, str]]:
    """Check values against a project's custom-field schema.

    Returns (cleaned values, problems keyed by field name). A project without
    a schema accepts any scalar values. ``partial`` skips required-field checks
    for fields the caller did not send.
    """
    values = dict(values or {})
    cleaned: Dict[str, Any] = {}
    problems: Dict[str, str] = {}
    if not schema:
        for name, value in values.items():
            if value is not None and not isinstance(value, (str, int, float, bool)):
                problems[name] = "must be a scalar value"
            else:
                cleaned[name] = value
        return cleaned, problems

    specs = {spec.name: spec for spec in schema}
    for name in values:
        if name not in specs:
            problems[name] = "unknown field"
    for name, spec in specs.items():
        if name not in values or values[name] is None or values[name] == "":
            if spec.required and (not partial or name in values):
                problems[name] = "is required"
            continue
        try:
            cleaned[name] = _coerce_field(spec, values[name])
        except ValueError as exc:
            problems[name] = str(exc)
    return cleaned, problems


class _ProfileFields(BaseModel):
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    display_name: Optional[str] = Field(default=None, max_length=100)
    avatar: Optional[str] = Field(default=None, max_length=2048)
    bio: Optional[str] = Field(default=None, max_length=500)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    custom_fields: Optional[Dict[str, Any]] = None

    @field_validator(
        "first_name", "last_name", "display_name", "avatar", "bio", "phone_number"
    )
    @classmethod
    def _strip(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class RegistrationInput(_ProfileFields):
    model_config = ConfigDict(extra="forbid")

    email: str
    password: str = Field(..., max_length=PASSWORD_MAX_LENGTH)
    username: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: Optional[str]) -> Optional[str]:
        return validate_username(value)


class ProfileUpdate(_ProfileFields):
    model_config = ConfigDict(extra="forbid")


class ImportRecord(_ProfileFields):
    """One user in an import batch; accepts camelCase keys as produced by export."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    email: str
    username: Optional[str] = None
    password: Optional[str] = Field(default=None, max_length=PASSWORD_MAX_LENGTH)
    password_hash: Optional[str] = Field(default=None, alias="passwordHash")
    first_name: Optional[str] = Field(default=None, max_length=100, alias="firstName")
    last_name: Optional[str] = Field(default=None, max_length=100, alias="lastName")
    display_name: Optional[str] = Field(default=None, max_length=100, alias="displayName")
    phone_number: Optional[str] = Field(default=None, max_length=32, alias="phoneNumber")
    custom_fields: Optional[Dict[str, Any]] = Field(default=None, alias="customFields")
    is_verified: Optional[bool] = Field(default=None, alias="isVerified")
    is_active: Optional[bool] = Field(default=None, alias="isActive")

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: Optional[str]) -> Optional[str]:
        return validate_username(value)


def describe_errors(exc: Any) -> List[Dict[str, str]]:
    """Flatten a pydantic ValidationError into [{field, message}] entries."""
    problems = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "__root__"
        message = err.get("msg", "invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, ") :]
        problems.append({"field": loc, "message": message})
    return problems
