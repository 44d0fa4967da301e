"""Interfaces and helpers shared between the memory and Redis backends.

The user repository and project configuration are owned by the surrounding
application; the protocols below are the only surface the engine depends on.
Token stores must implement their ``consume``/``claim`` methods as conditional
writes so that two racing redemptions cannot both succeed.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol

from projectauth.storage.models import (
    Project,
    RefreshTokenRecord,
    SideChannelTokenRecord,
    TokenPurpose,
    UserPage,
    UserRecord,
    UserStatus,
)


# Expired side-channel records outlive their expiry so redemption reports Expired
SIDE_CHANNEL_GRACE = timedelta(hours=24)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def normalize_username(username: Optional[str]) -> Optional[str]:
    if username is None:
        return None
    cleaned = username.strip()
    return cleaned or None


def hash_token(plaintext: str) -> str:
    """One-way digest used as the storage key for opaque tokens."""
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


def matches_status(user: UserRecord, status: Optional[UserStatus]) -> bool:
    if status is None:
        return not user.is_deleted
    if status == UserStatus.DELETED:
        return user.is_deleted
    if user.is_deleted:
        return False
    if status == UserStatus.ACTIVE:
        return user.is_active
    if status == UserStatus.INACTIVE:
        return not user.is_active
    if status == UserStatus.VERIFIED:
        return user.is_verified
    if status == UserStatus.UNVERIFIED:
        return not user.is_verified
    if status == UserStatus.SUSPENDED:
        return user.is_suspended
    return True


def matches_search(user: UserRecord, search: Optional[str]) -> bool:
    if not search:
        return True
    needle = search.strip().lower()
    haystack = (user.email, user.username, user.first_name, user.last_name)
    return any(value and needle in value.lower() for value in haystack)


class UserRepository(Protocol):
    def find_by_email(self, project_id: str, email: str) -> Optional[UserRecord]: ...

    def find_by_username(
        self, project_id: str, username: str
    ) -> Optional[UserRecord]: ...

    def find_by_id(self, project_id: str, user_id: str) -> Optional[UserRecord]: ...

    def create(self, record: UserRecord) -> UserRecord: ...

    def update(
        self, project_id: str, user_id: str, patch: Dict[str, Any]
    ) -> Optional[UserRecord]: ...

    def list(
        self,
        project_id: str,
        *,
        page: int = 1,
        limit: int = 20,
        search: Optional[str] = None,
        status: Optional[UserStatus] = None,
    ) -> UserPage: ...

    def iter_users(
        self,
        project_id: str,
        *,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        include_deleted: bool = False,
    ) -> List[UserRecord]: ...

    def soft_delete(self, project_id: str, user_id: str) -> Optional[UserRecord]: ...


class RefreshTokenStore(Protocol):
    def save_refresh_token(self, record: RefreshTokenRecord) -> None: ...

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    def consume_refresh_token(
        self, token_hash: str, *, replaced_by: Optional[str] = None
    ) -> bool: ...

    def revoke_refresh_token(self, token_hash: str) -> bool: ...

    def revoke_refresh_family(self, family_id: str) -> int: ...

    def revoke_user_refresh_tokens(self, project_id: str, user_id: str) -> int: ...

    def list_active_refresh_tokens(
        self, project_id: str, user_id: str
    ) -> List[RefreshTokenRecord]: ...


class SideChannelTokenStore(Protocol):
    def save_side_channel_token(self, record: SideChannelTokenRecord) -> None: ...

    def get_side_channel_token(
        self, token_hash: str
    ) -> Optional[SideChannelTokenRecord]: ...

    def claim_side_channel_token(self, token_hash: str, used_at: datetime) -> bool: ...

    def release_side_channel_token(self, token_hash: str) -> None: ...

    def invalidate_side_channel_tokens(
        self, project_id: str, user_id: str, purpose: TokenPurpose
    ) -> int: ...


class ProjectConfig(Protocol):
    def get(self, project_id: str) -> Optional[Project]: ...

    def get_by_api_key_hash(self, api_key_hash: str) -> Optional[Project]: ...

    def save_project(self, project: Project) -> Project: ...
