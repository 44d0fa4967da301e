from __future__ import annotations

import copy
import threading
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from projectauth.logging import get_logger
from projectauth.storage.common import (
    SIDE_CHANNEL_GRACE,
    matches_search,
    matches_status,
    normalize_email,
    normalize_username,
)
from projectauth.storage.errors import ConstraintViolation
from projectauth.storage.models import (
    USER_FIELD_NAMES,
    Project,
    RefreshTokenRecord,
    SideChannelTokenRecord,
    TokenPurpose,
    UserPage,
    UserRecord,
    UserStatus,
    utcnow,
)

_IMMUTABLE_USER_FIELDS = frozenset({"id", "project_id", "created_at"})


class MemoryStore:
    """In-memory backing store for users, projects and token state.

    Every read hands out a copy so callers can only change state through the
    store's methods, which all run under one re-entrant lock. Expired token
    records are swept at most once per ``purge_interval_seconds``, piggybacking
    on token saves.
    """

    def __init__(self, *, purge_interval_seconds: float = 60.0) -> None:
        self.logger = get_logger(__name__)
        self.projects: Dict[str, Project] = {}
        self.users: Dict[str, UserRecord] = {}
        self._email_index: Dict[Tuple[str, str], str] = {}
        self._username_index: Dict[Tuple[str, str], str] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.side_channel_tokens: Dict[str, SideChannelTokenRecord] = {}
        self._data_lock = threading.RLock()
        self._purge_interval = purge_interval_seconds
        self._last_purge = time.monotonic()

    # projects
    def save_project(self, project: Project) -> Project:
        with self._data_lock:
            for existing in self.projects.values():
                if existing.id != project.id and existing.api_key_hash == project.api_key_hash:
                    raise ConstraintViolation("api key already exists", {"field": "api_key"})
            self.projects[project.id] = copy.deepcopy(project)
            return copy.deepcopy(project)

    def get(self, project_id: str) -> Optional[Project]:
        with self._data_lock:
            project = self.projects.get(project_id)
            return copy.deepcopy(project) if project else None

    def get_by_api_key_hash(self, api_key_hash: str) -> Optional[Project]:
        with self._data_lock:
            for project in self.projects.values():
                if project.api_key_hash == api_key_hash:
                    return copy.deepcopy(project)
            return None

    # users
    def create(self, record: UserRecord) -> UserRecord:
        with self._data_lock:
            record = copy.deepcopy(record)
            record.email = normalize_email(record.email)
            record.username = normalize_username(record.username)
            email_key = (record.project_id, record.email)
            if email_key in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            username_key = None
            if record.username is not None:
                username_key = (record.project_id, record.username)
                if username_key in self._username_index:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            if record.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            self.users[record.id] = record
            self._email_index[email_key] = record.id
            if username_key:
                self._username_index[username_key] = record.id
            return copy.deepcopy(record)

    def find_by_email(self, project_id: str, email: str) -> Optional[UserRecord]:
        with self._data_lock:
            user_id = self._email_index.get((project_id, normalize_email(email)))
            return copy.deepcopy(self.users[user_id]) if user_id else None

    def find_by_username(self, project_id: str, username: str) -> Optional[UserRecord]:
        normalized = normalize_username(username)
        if normalized is None:
            return None
        with self._data_lock:
            user_id = self._username_index.get((project_id, normalized))
            return copy.deepcopy(self.users[user_id]) if user_id else None

    def find_by_id(self, project_id: str, user_id: str) -> Optional[UserRecord]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.project_id != project_id:
                return None
            return copy.deepcopy(user)

    def update(
        self, project_id: str, user_id: str, patch: Dict[str, Any]
    ) -> Optional[UserRecord]:
        unknown = set(patch) - USER_FIELD_NAMES
        if unknown or set(patch) & _IMMUTABLE_USER_FIELDS:
            rejected = sorted(unknown | (set(patch) & _IMMUTABLE_USER_FIELDS))
            raise ValueError(f"cannot patch fields: {rejected}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.project_id != project_id:
                return None
            patch = copy.deepcopy(patch)
            if "email" in patch:
                patch["email"] = normalize_email(patch["email"])
                owner = self._email_index.get((project_id, patch["email"]))
                if owner and owner != user_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            if "username" in patch:
                patch["username"] = normalize_username(patch["username"])
                if patch["username"] is not None:
                    owner = self._username_index.get((project_id, patch["username"]))
                    if owner and owner != user_id:
                        raise ConstraintViolation(
                            "username already exists", {"field": "username"}
                        )
            if "email" in patch:
                self._email_index.pop((project_id, user.email), None)
                self._email_index[(project_id, patch["email"])] = user_id
            if "username" in patch:
                if user.username is not None:
                    self._username_index.pop((project_id, user.username), None)
                if patch["username"] is not None:
                    self._username_index[(project_id, patch["username"])] = user_id
            for key, value in patch.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            return copy.deepcopy(user)

    def list(
        self,
        project_id: str,
        *,
        page: int = 1,
        limit: int = 20,
        search: Optional[str] = None,
        status: Optional[UserStatus] = None,
    ) -> UserPage:
        page = max(1, page)
        limit = max(1, limit)
        with self._data_lock:
            matched = [
                u
                for u in self.users.values()
                if u.project_id == project_id
                and matches_status(u, status)
                and matches_search(u, search)
            ]
            matched.sort(key=lambda u: u.created_at, reverse=True)
            start = (page - 1) * limit
            window = [copy.deepcopy(u) for u in matched[start : start + limit]]
            return UserPage(users=window, page=page, limit=limit, total=len(matched))

    def iter_users(
        self,
        project_id: str,
        *,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        include_deleted: bool = False,
    ) -> List[UserRecord]:
        with self._data_lock:
            results = []
            for user in self.users.values():
                if user.project_id != project_id:
                    continue
                if user.is_deleted and not include_deleted:
                    continue
                if created_from and user.created_at < created_from:
                    continue
                if created_to and user.created_at > created_to:
                    continue
                results.append(copy.deepcopy(user))
            return sorted(results, key=lambda u: u.created_at, reverse=True)

    def soft_delete(self, project_id: str, user_id: str) -> Optional[UserRecord]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.project_id != project_id:
                return None
            if user.deleted_at is None:
                user.deleted_at = utcnow()
            user.is_active = False
            user.updated_at = utcnow()
            return copy.deepcopy(user)

    # refresh tokens
    def save_refresh_token(self, record: RefreshTokenRecord) -> None:
        with self._data_lock:
            if record.token_hash in self.refresh_tokens:
                raise ConstraintViolation("refresh token collision", {"field": "token_hash"})
            self.refresh_tokens[record.token_hash] = copy.deepcopy(record)
            self._maybe_purge()

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            return copy.deepcopy(record) if record else None

    def consume_refresh_token(
        self, token_hash: str, *, replaced_by: Optional[str] = None
    ) -> bool:
        """Flip ``used`` from False to True; False if another caller got there first."""
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if not record or record.used or record.revoked:
                return False
            record.used = True
            record.replaced_by = replaced_by
            return True

    def revoke_refresh_token(self, token_hash: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if not record or record.revoked:
                return False
            record.revoked = True
            return True

    def revoke_refresh_family(self, family_id: str) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.family_id == family_id and not record.revoked:
                    record.revoked = True
                    revoked += 1
            return revoked

    def revoke_user_refresh_tokens(self, project_id: str, user_id: str) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if (
                    record.project_id == project_id
                    and record.user_id == user_id
                    and not record.revoked
                ):
                    record.revoked = True
                    revoked += 1
            return revoked

    def list_active_refresh_tokens(
        self, project_id: str, user_id: str
    ) -> List[RefreshTokenRecord]:
        with self._data_lock:
            active = [
                copy.deepcopy(r)
                for r in self.refresh_tokens.values()
                if r.project_id == project_id and r.user_id == user_id and r.is_active
            ]
            return sorted(active, key=lambda r: r.issued_at)

    # side-channel tokens
    def save_side_channel_token(self, record: SideChannelTokenRecord) -> None:
        with self._data_lock:
            if record.token_hash in self.side_channel_tokens:
                raise ConstraintViolation("token collision", {"field": "token_hash"})
            self.side_channel_tokens[record.token_hash] = copy.deepcopy(record)
            self._maybe_purge()

    def get_side_channel_token(self, token_hash: str) -> Optional[SideChannelTokenRecord]:
        with self._data_lock:
            record = self.side_channel_tokens.get(token_hash)
            return copy.deepcopy(record) if record else None

    def claim_side_channel_token(self, token_hash: str, used_at: datetime) -> bool:
        with self._data_lock:
            record = self.side_channel_tokens.get(token_hash)
            if not record or record.used:
                return False
            record.used = True
            record.used_at = used_at
            return True

    def release_side_channel_token(self, token_hash: str) -> None:
        with self._data_lock:
            record = self.side_channel_tokens.get(token_hash)
            if record:
                record.used = False
                record.used_at = None

    def invalidate_side_channel_tokens(
        self, project_id: str, user_id: str, purpose: TokenPurpose
    ) -> int:
        """Mark outstanding tokens of one purpose as used so only the newest link works."""
        now = utcnow()
        with self._data_lock:
            invalidated = 0
            for record in self.side_channel_tokens.values():
                if (
                    record.project_id == project_id
                    and record.user_id == user_id
                    and record.purpose == purpose
                    and not record.used
                ):
                    record.used = True
                    record.used_at = now
                    invalidated += 1
            return invalidated

    def _maybe_purge(self) -> None:
        if time.monotonic() - self._last_purge >= self._purge_interval:
            self.purge_expired_tokens()

    def purge_expired_tokens(self, now: Optional[datetime] = None) -> int:
        """Drop expired token records; returns how many were removed."""
        now = now or utcnow()
        with self._data_lock:
            self._last_purge = time.monotonic()
            stale_refresh = [h for h, r in self.refresh_tokens.items() if r.expires_at <= now]
            stale_side = [
                h
                for h, r in self.side_channel_tokens.items()
                if r.expires_at + SIDE_CHANNEL_GRACE <= now
            ]
            for token_hash in stale_refresh:
                self.refresh_tokens.pop(token_hash, None)
            for token_hash in stale_side:
                self.side_channel_tokens.pop(token_hash, None)
        cleaned = len(stale_refresh) + len(stale_side)
        if cleaned:
            self.logger.debug(
                "token_state_cleanup", refresh=len(stale_refresh), side_channel=len(stale_side)
            )
        return cleaned
