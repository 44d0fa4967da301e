from __future__ import annotations

import secrets
import time
from datetime import timedelta
from typing import Callable, Optional

from projectauth.config import Settings
from projectauth.logging import get_logger
from projectauth.service.errors import (
    InvalidTokenError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    TransientError,
)
from projectauth.storage.common import SideChannelTokenStore, hash_token
from projectauth.storage.errors import ConstraintViolation, StorageUnavailable
from projectauth.storage.models import SideChannelTokenRecord, TokenPurpose, utcnow

logger = get_logger(__name__)


class SideChannelTokenManager:
    """Single-use tokens delivered out of band (email verification, password reset)."""

    def __init__(self, settings: Settings, store: SideChannelTokenStore) -> None:
        self.settings = settings
        self.store = store
        self.logger = logger

    def default_ttl(self, purpose: TokenPurpose) -> timedelta:
        if purpose == TokenPurpose.RESET_PASSWORD:
            return timedelta(minutes=self.settings.reset_token_ttl_minutes)
        return timedelta(minutes=self.settings.verification_token_ttl_minutes)

    def issue(
        self,
        project_id: str,
        user_id: str,
        purpose: TokenPurpose,
        ttl: Optional[timedelta] = None,
    ) -> str:
        """Mint a token; earlier unused tokens of the same purpose stop working."""
        ttl = ttl or self.default_ttl(purpose)
        try:
            self.store.invalidate_side_channel_tokens(project_id, user_id, purpose)
            for _ in range(3):
                plaintext = secrets.token_hex(32)
                now = utcnow()
                record = SideChannelTokenRecord(
                    token_hash=hash_token(plaintext),
                    project_id=project_id,
                    user_id=user_id,
                    purpose=purpose,
                    expires_at=now + ttl,
                    created_at=now,
                )
                try:
                    self.store.save_side_channel_token(record)
                except ConstraintViolation:
                    continue
                self.logger.info(
                    "side_channel_token_issued",
                    project_id=project_id,
                    user_id=user_id,
                    purpose=purpose.value,
                )
                return plaintext
        except StorageUnavailable as exc:
            raise TransientError("token store unavailable") from exc
        raise TransientError("could not allocate token")

    def redeem(
        self,
        plaintext: str,
        purpose: TokenPurpose,
        *,
        project_id: str,
        apply: Optional[Callable[[str], None]] = None,
        deadline: Optional[float] = None,
    ) -> str:
        """Consume a token and run ``apply(user_id)``; returns the user id.

        The token is claimed before ``apply`` runs. If ``apply`` raises, the
        claim is released so the link can be retried, and the error propagates.
        ``deadline`` is a ``time.monotonic()`` value; past it nothing is claimed.
        """
        if not plaintext or not isinstance(plaintext, str):
            raise InvalidTokenError("invalid token")
        token_hash = hash_token(plaintext)
        try:
            record = self.store.get_side_channel_token(token_hash)
        except StorageUnavailable as exc:
            raise TransientError("token store unavailable") from exc
        if not record or record.project_id != project_id or record.purpose != purpose:
            self.logger.warning(
                "side_channel_token_invalid", project_id=project_id, purpose=purpose.value
            )
            raise InvalidTokenError("invalid token")
        if record.used:
            raise TokenAlreadyUsedError("token has already been used")
        if record.expires_at <= utcnow():
            raise TokenExpiredError("token has expired")
        if deadline is not None and time.monotonic() > deadline:
            raise TransientError("redemption timed out")
        if not self.store.claim_side_channel_token(token_hash, utcnow()):
            raise TokenAlreadyUsedError("token has already been used")
        if apply is not None:
            try:
                apply(record.user_id)
            except Exception:
                self.store.release_side_channel_token(token_hash)
                self.logger.warning(
                    "side_channel_token_released",
                    project_id=project_id,
                    user_id=record.user_id,
                    purpose=purpose.value,
                )
                raise
        self.logger.info(
            "side_channel_token_redeemed",
            project_id=project_id,
            user_id=record.user_id,
            purpose=purpose.value,
        )
        return record.user_id
