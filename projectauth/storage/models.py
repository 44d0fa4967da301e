from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenPurpose(str, Enum):
    """Purposes a side-channel token may be redeemed for."""

    VERIFY_EMAIL = "verify_email"
    RESET_PASSWORD = "reset_password"


class Operation(str, Enum):
    """Rate-limited operation classes."""

    REGISTER = "register"
    LOGIN = "login"
    PASSWORD_RESET = "password_reset"
    VERIFY_EMAIL = "verify_email"
    REFRESH = "refresh"
    EXPORT = "export"
    IMPORT = "import"
    GENERAL = "general"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class CustomFieldSpec:
    name: str
    type: FieldType = FieldType.STRING
    required: bool = False


@dataclass
class EmailTemplateOverride:
    subject: Optional[str] = None
    body: Optional[str] = None
    enabled: bool = True


@dataclass
class ProjectSettings:
    allow_signup: bool = True
    require_email_verification: bool = True
    min_password_length: int = 6
    require_uppercase: bool = False
    require_lowercase: bool = False
    require_numbers: bool = False
    require_special_chars: bool = False
    enable_account_locking: bool = True
    max_login_attempts: int = 5
    lockout_minutes: int = 120
    max_sessions: int = 5


@dataclass
class Project:
    id: str
    name: str
    api_key_hash: str
    api_key_prefix: str
    settings: ProjectSettings = field(default_factory=ProjectSettings)
    rate_limits: Dict[str, RateLimitRule] = field(default_factory=dict)
    custom_fields: List[CustomFieldSpec] = field(default_factory=list)
    email_templates: Dict[str, EmailTemplateOverride] = field(default_factory=dict)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserRecord:
    id: str
    project_id: str
    email: str
    password_hash: str
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    avatar: Optional[str] = None
    bio: Optional[str] = None
    phone_number: Optional[str] = None
    custom_fields: Dict[str, Any] = field(default_factory=dict)
    is_verified: bool = False
    is_active: bool = True
    is_suspended: bool = False
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @classmethod
    def new(cls, project_id: str, email: str, password_hash: str, **profile: Any) -> "UserRecord":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            project_id=project_id,
            email=email,
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
            **profile,
        )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        return bool(self.lock_until and self.lock_until > (now or utcnow()))

    def public_view(self) -> Dict[str, Any]:
        """Fields safe to hand back to callers; no credentials or lockout state."""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "displayName": self.display_name,
            "avatar": self.avatar,
            "bio": self.bio,
            "phoneNumber": self.phone_number,
            "customFields": dict(self.custom_fields),
            "isVerified": self.is_verified,
            "isActive": self.is_active,
            "isSuspended": self.is_suspended,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "lastLogin": self.last_login.isoformat() if self.last_login else None,
            "deletedAt": self.deleted_at.isoformat() if self.deleted_at else None,
        }


USER_FIELD_NAMES = frozenset(f.name for f in fields(UserRecord))


@dataclass
class RefreshTokenRecord:
    id: str
    token_hash: str
    project_id: str
    user_id: str
    family_id: str
    issued_at: datetime
    expires_at: datetime
    used: bool = False
    revoked: bool = False
    replaced_by: Optional[str] = None

    @classmethod
    def new(
        cls,
        token_hash: str,
        project_id: str,
        user_id: str,
        ttl_minutes: int,
        *,
        family_id: Optional[str] = None,
    ) -> "RefreshTokenRecord":
        now = utcnow()
        record_id = str(uuid.uuid4())
        return cls(
            id=record_id,
            token_hash=token_hash,
            project_id=project_id,
            user_id=user_id,
            family_id=family_id or record_id,
            issued_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )

    @property
    def is_active(self) -> bool:
        return not self.used and not self.revoked and self.expires_at > utcnow()


@dataclass
class SideChannelTokenRecord:
    token_hash: str
    project_id: str
    user_id: str
    purpose: TokenPurpose
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used: bool = False
    used_at: Optional[datetime] = None


@dataclass
class UserPage:
    users: List[UserRecord]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit
