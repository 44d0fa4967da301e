from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from projectauth.config import Settings
from projectauth.logging import get_logger
from projectauth.service.errors import InvalidTokenError, TokenReusedError, TransientError
from projectauth.storage.common import RefreshTokenStore, hash_token
from projectauth.storage.errors import ConstraintViolation, StorageUnavailable
from projectauth.storage.models import RefreshTokenRecord, utcnow

logger = get_logger(__name__)


@dataclass
class AccessClaims:
    user_id: str
    project_id: str
    jti: str
    issued_at: int
    expires_at: int


@dataclass
class IssuedRefreshToken:
    token: str
    record_id: str
    family_id: str
    expires_at: datetime


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_at: datetime
    user_id: str
    project_id: str
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "tokenType": self.token_type,
            "expiresIn": self.expires_in,
            "refreshExpiresAt": self.refresh_expires_at.isoformat(),
        }


class TokenIssuer:
    """Signed access tokens and single-use rotating refresh tokens.

    Access tokens are HS256 JWTs verified without touching storage. Refresh
    tokens are opaque random strings; only their SHA-256 digest is persisted.
    Redeeming one persists its successor first and then consumes it with a
    conditional write, so two concurrent redemptions of the same token cannot
    both succeed.
    """

    def __init__(self, settings: Settings, store: RefreshTokenStore) -> None:
        self.settings = settings
        self.store = store
        self._clock_skew_leeway = timedelta(seconds=settings.clock_skew_seconds)
        self.logger = logger

    # access tokens
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None
        # Reject anything but HS256 so a forged header cannot pick the algorithm
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def issue_access_token(self, project_id: str, user_id: str) -> str:
        now = int(time.time())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "pid": project_id,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + self.settings.access_token_ttl_minutes * 60,
        }
        return self._encode_jwt(payload)

    def verify_access_token(self, token: str) -> Optional[AccessClaims]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        if not payload.get("sub") or not payload.get("pid"):
            return None
        return AccessClaims(
            user_id=str(payload["sub"]),
            project_id=str(payload["pid"]),
            jti=str(payload.get("jti", "")),
            issued_at=int(payload.get("iat", 0)),
            expires_at=int(payload["exp"]),
        )

    # refresh tokens
    def _persist_refresh(
        self, project_id: str, user_id: str, family_id: Optional[str]
    ) -> IssuedRefreshToken:
        for _ in range(3):
            plaintext = secrets.token_hex(32)
            record = RefreshTokenRecord.new(
                hash_token(plaintext),
                project_id,
                user_id,
                self.settings.refresh_token_ttl_minutes,
                family_id=family_id,
            )
            try:
                self.store.save_refresh_token(record)
            except ConstraintViolation:
                continue
            except StorageUnavailable as exc:
                raise TransientError("token store unavailable") from exc
            return IssuedRefreshToken(
                token=plaintext,
                record_id=record.id,
                family_id=record.family_id,
                expires_at=record.expires_at,
            )
        raise TransientError("could not allocate refresh token")

    def _enforce_session_cap(
        self, project_id: str, user_id: str, max_sessions: Optional[int]
    ) -> None:
        if not max_sessions or max_sessions <= 0:
            return
        active = self.store.list_active_refresh_tokens(project_id, user_id)
        overflow = len(active) - max_sessions
        for record in active[: max(0, overflow)]:
            self.store.revoke_refresh_token(record.token_hash)
        if overflow > 0:
            self.logger.info(
                "refresh_session_cap_enforced",
                project_id=project_id,
                user_id=user_id,
                revoked=overflow,
            )

    def issue_refresh_token(
        self,
        project_id: str,
        user_id: str,
        *,
        family_id: Optional[str] = None,
        max_sessions: Optional[int] = None,
    ) -> IssuedRefreshToken:
        issued = self._persist_refresh(project_id, user_id, family_id)
        self._enforce_session_cap(project_id, user_id, max_sessions)
        return issued

    def _pair(self, project_id: str, user_id: str, refresh: IssuedRefreshToken) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access_token(project_id, user_id),
            refresh_token=refresh.token,
            expires_in=self.settings.access_token_ttl_minutes * 60,
            refresh_expires_at=refresh.expires_at,
            user_id=user_id,
            project_id=project_id,
        )

    def issue_pair(
        self, project_id: str, user_id: str, *, max_sessions: Optional[int] = None
    ) -> TokenPair:
        refresh = self.issue_refresh_token(project_id, user_id, max_sessions=max_sessions)
        return self._pair(project_id, user_id, refresh)

    def _handle_reuse(self, record: RefreshTokenRecord) -> TokenReusedError:
        revoked = 0
        if self.settings.revoke_family_on_reuse:
            revoked = self.store.revoke_refresh_family(record.family_id)
        self.logger.warning(
            "refresh_token_reused",
            project_id=record.project_id,
            user_id=record.user_id,
            family_id=record.family_id,
            revoked=revoked,
        )
        return TokenReusedError("refresh token has already been used")

    def redeem_refresh_token(
        self,
        plaintext: str,
        *,
        project_id: Optional[str] = None,
        max_sessions: Optional[int] = None,
        deadline: Optional[float] = None,
    ) -> TokenPair:
        """Rotate a refresh token.

        ``deadline`` is a ``time.monotonic()`` value; past it the rotation is
        abandoned before the predecessor is consumed, so a caller that gave up
        waiting can still use the token it holds.
        """
        if not plaintext or not isinstance(plaintext, str):
            raise InvalidTokenError("invalid refresh token")
        token_hash = hash_token(plaintext)
        try:
            record = self.store.get_refresh_token(token_hash)
        except StorageUnavailable as exc:
            raise TransientError("token store unavailable") from exc
        if not record or (project_id and record.project_id != project_id):
            raise InvalidTokenError("invalid refresh token")
        if record.revoked:
            raise InvalidTokenError("refresh token revoked")
        if record.used:
            raise self._handle_reuse(record)
        if record.expires_at <= utcnow():
            raise InvalidTokenError("refresh token expired")

        successor = self._persist_refresh(record.project_id, record.user_id, record.family_id)
        if deadline is not None and time.monotonic() > deadline:
            self.store.revoke_refresh_token(hash_token(successor.token))
            raise TransientError("refresh timed out")
        try:
            consumed = self.store.consume_refresh_token(token_hash, replaced_by=successor.record_id)
        except StorageUnavailable as exc:
            self.store.revoke_refresh_token(hash_token(successor.token))
            raise TransientError("token store unavailable") from exc
        if not consumed:
            self.store.revoke_refresh_token(hash_token(successor.token))
            current = self.store.get_refresh_token(token_hash) or record
            if current.revoked and not current.used:
                raise InvalidTokenError("refresh token revoked")
            raise self._handle_reuse(current)

        self._enforce_session_cap(record.project_id, record.user_id, max_sessions)
        self.logger.info(
            "refresh_token_rotated",
            project_id=record.project_id,
            user_id=record.user_id,
            family_id=record.family_id,
        )
        return self._pair(record.project_id, record.user_id, successor)

    def revoke_refresh_token(self, plaintext: str, *, project_id: Optional[str] = None) -> bool:
        """Retire one refresh token (logout); unknown tokens are ignored."""
        if not plaintext:
            return False
        token_hash = hash_token(plaintext)
        record = self.store.get_refresh_token(token_hash)
        if not record or (project_id and record.project_id != project_id):
            return False
        return self.store.consume_refresh_token(token_hash)

    def revoke_user_tokens(self, project_id: str, user_id: str) -> int:
        revoked = self.store.revoke_user_refresh_tokens(project_id, user_id)
        if revoked:
            self.logger.info(
                "refresh_tokens_revoked", project_id=project_id, user_id=user_id, count=revoked
            )
        return revoked
