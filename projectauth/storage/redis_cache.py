from __future__ import annotations

import contextlib
import hashlib
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Tuple

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from projectauth.logging import get_logger
from projectauth.storage.common import SIDE_CHANNEL_GRACE
from projectauth.storage.errors import ConstraintViolation, StorageUnavailable
from projectauth.storage.models import (
    RefreshTokenRecord,
    SideChannelTokenRecord,
    TokenPurpose,
)

logger = get_logger(__name__)

# A hash missing any of these was recreated by a stray write after expiry
_REFRESH_REQUIRED = (
    "id",
    "token_hash",
    "project_id",
    "user_id",
    "family_id",
    "issued_at",
    "expires_at",
)
_SIDE_CHANNEL_REQUIRED = (
    "token_hash",
    "project_id",
    "user_id",
    "purpose",
    "expires_at",
    "created_at",
)


class RedisCache:
    """Redis-backed rate-limit windows and refresh/side-channel token state.

    All state transitions that must be race-free (window increments, token
    consumption, token claims) run as Lua scripts so they execute atomically
    on the server.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window counter: INCR, arm expiry on first hit, report remaining TTL
    _WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    # Compare-and-set on the refresh token's used flag
    _CONSUME_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
local state = redis.call('HMGET', KEYS[1], 'used', 'revoked')
if state[1] == '1' or state[2] == '1' then
  return 0
end
redis.call('HSET', KEYS[1], 'used', '1', 'replaced_by', ARGV[1])
return 1
"""

    # Revoke only a live record; a dead member is dropped from its index set
    _REVOKE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  if #KEYS > 1 then
    redis.call('SREM', KEYS[2], ARGV[1])
  end
  return -1
end
if redis.call('HGET', KEYS[1], 'revoked') == '1' then
  return 0
end
redis.call('HSET', KEYS[1], 'revoked', '1')
return 1
"""

    _RELEASE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
redis.call('HSET', KEYS[1], 'used', '0', 'used_at', '')
return 1
"""

    _CLAIM_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
if redis.call('HGET', KEYS[1], 'used') == '1' then
  return 0
end
redis.call('HSET', KEYS[1], 'used', '1', 'used_at', ARGV[1])
return 1
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window = self.client.register_script(self._WINDOW_SCRIPT)
        self._consume = self.client.register_script(self._CONSUME_SCRIPT)
        self._claim = self.client.register_script(self._CLAIM_SCRIPT)
        self._revoke = self.client.register_script(self._REVOKE_SCRIPT)
        self._release = self.client.register_script(self._RELEASE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        with self._guard("ping"):
            self.client.ping()

    def close(self) -> None:
        self.client.close()

    @contextlib.contextmanager
    def _guard(self, op: str) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.warning("redis_unavailable", op=op, error=str(exc))
            raise StorageUnavailable("redis unavailable", {"op": op}) from exc

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _normalize_rate_key(project_id: str, operation: str) -> str:
        """Hash the subject so delimiter characters cannot collide keys."""
        digest = hashlib.sha256(f"{project_id}\x00{operation}".encode()).hexdigest()
        return f"rate:{digest}"

    # rate limits
    def incr_window(self, project_id: str, operation: str, window_seconds: int) -> Tuple[int, float]:
        """Atomically count a hit; returns (count in window, seconds until reset)."""
        key = self._normalize_rate_key(project_id, operation)
        with self._guard("incr_window"):
            count, ttl_ms = self._window(keys=[key], args=[int(window_seconds * 1000)])
        return int(count), max(0.0, int(ttl_ms) / 1000.0)

    # refresh tokens
    @staticmethod
    def _refresh_key(token_hash: str) -> str:
        return f"auth:refresh:{token_hash}"

    @staticmethod
    def _user_refresh_key(project_id: str, user_id: str) -> str:
        return f"auth:refresh:user:{project_id}:{user_id}"

    @staticmethod
    def _family_key(family_id: str) -> str:
        return f"auth:refresh:family:{family_id}"

    @staticmethod
    def _encode_refresh(record: RefreshTokenRecord) -> Dict[str, str]:
        return {
            "id": record.id,
            "token_hash": record.token_hash,
            "project_id": record.project_id,
            "user_id": record.user_id,
            "family_id": record.family_id,
            "issued_at": record.issued_at.isoformat(),
            "expires_at": record.expires_at.isoformat(),
            "used": "1" if record.used else "0",
            "revoked": "1" if record.revoked else "0",
            "replaced_by": record.replaced_by or "",
        }

    @staticmethod
    def _decode_refresh(raw: Dict[str, str]) -> Optional[RefreshTokenRecord]:
        if not raw or any(not raw.get(name) for name in _REFRESH_REQUIRED):
            return None
        return RefreshTokenRecord(
            id=raw["id"],
            token_hash=raw["token_hash"],
            project_id=raw["project_id"],
            user_id=raw["user_id"],
            family_id=raw["family_id"],
            issued_at=datetime.fromisoformat(raw["issued_at"]),
            expires_at=datetime.fromisoformat(raw["expires_at"]),
            used=raw.get("used") == "1",
            revoked=raw.get("revoked") == "1",
            replaced_by=raw.get("replaced_by") or None,
        )

    def save_refresh_token(self, record: RefreshTokenRecord) -> None:
        key = self._refresh_key(record.token_hash)
        ttl = self._ttl_seconds(record.expires_at)
        with self._guard("save_refresh_token"):
            if self.client.exists(key):
                raise ConstraintViolation("refresh token collision", {"field": "token_hash"})
            pipe = self.client.pipeline()
            pipe.hset(key, mapping=self._encode_refresh(record))
            pipe.expire(key, ttl)
            user_key = self._user_refresh_key(record.project_id, record.user_id)
            pipe.sadd(user_key, record.token_hash)
            pipe.expire(user_key, ttl)
            family_key = self._family_key(record.family_id)
            pipe.sadd(family_key, record.token_hash)
            pipe.expire(family_key, ttl)
            pipe.execute()

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._guard("get_refresh_token"):
            raw = self.client.hgetall(self._refresh_key(token_hash))
        return self._decode_refresh(raw)

    def consume_refresh_token(self, token_hash: str, *, replaced_by: Optional[str] = None) -> bool:
        with self._guard("consume_refresh_token"):
            result = self._consume(keys=[self._refresh_key(token_hash)], args=[replaced_by or ""])
        return bool(int(result))

    def revoke_refresh_token(self, token_hash: str) -> bool:
        with self._guard("revoke_refresh_token"):
            result = self._revoke(keys=[self._refresh_key(token_hash)], args=[token_hash])
        return int(result) == 1

    def _revoke_set(self, set_key: str, op: str) -> int:
        revoked = 0
        with self._guard(op):
            for token_hash in self.client.smembers(set_key):
                result = self._revoke(
                    keys=[self._refresh_key(token_hash), set_key], args=[token_hash]
                )
                if int(result) == 1:
                    revoked += 1
        return revoked

    def revoke_refresh_family(self, family_id: str) -> int:
        return self._revoke_set(self._family_key(family_id), "revoke_refresh_family")

    def revoke_user_refresh_tokens(self, project_id: str, user_id: str) -> int:
        return self._revoke_set(
            self._user_refresh_key(project_id, user_id), "revoke_user_refresh_tokens"
        )

    def list_active_refresh_tokens(self, project_id: str, user_id: str) -> List[RefreshTokenRecord]:
        user_key = self._user_refresh_key(project_id, user_id)
        with self._guard("list_active_refresh_tokens"):
            records = []
            for token_hash in self.client.smembers(user_key):
                key = self._refresh_key(token_hash)
                record = self._decode_refresh(self.client.hgetall(key))
                if record is None:
                    self.client.delete(key)
                    self.client.srem(user_key, token_hash)
                else:
                    records.append(record)
        return sorted((r for r in records if r.is_active), key=lambda r: r.issued_at)

    # side-channel tokens
    @staticmethod
    def _side_key(token_hash: str) -> str:
        return f"auth:side:{token_hash}"

    @staticmethod
    def _side_index_key(project_id: str, user_id: str, purpose: TokenPurpose) -> str:
        return f"auth:side:user:{project_id}:{user_id}:{purpose.value}"

    def save_side_channel_token(self, record: SideChannelTokenRecord) -> None:
        key = self._side_key(record.token_hash)
        ttl = self._ttl_seconds(record.expires_at) + int(SIDE_CHANNEL_GRACE.total_seconds())
        with self._guard("save_side_channel_token"):
            if self.client.exists(key):
                raise ConstraintViolation("token collision", {"field": "token_hash"})
            pipe = self.client.pipeline()
            pipe.hset(
                key,
                mapping={
                    "token_hash": record.token_hash,
                    "project_id": record.project_id,
                    "user_id": record.user_id,
                    "purpose": record.purpose.value,
                    "expires_at": record.expires_at.isoformat(),
                    "created_at": record.created_at.isoformat(),
                    "used": "1" if record.used else "0",
                    "used_at": record.used_at.isoformat() if record.used_at else "",
                },
            )
            pipe.expire(key, ttl)
            index_key = self._side_index_key(record.project_id, record.user_id, record.purpose)
            pipe.sadd(index_key, record.token_hash)
            pipe.expire(index_key, ttl)
            pipe.execute()

    def get_side_channel_token(self, token_hash: str) -> Optional[SideChannelTokenRecord]:
        with self._guard("get_side_channel_token"):
            raw = self.client.hgetall(self._side_key(token_hash))
        if not raw or any(not raw.get(name) for name in _SIDE_CHANNEL_REQUIRED):
            return None
        return SideChannelTokenRecord(
            token_hash=raw["token_hash"],
            project_id=raw["project_id"],
            user_id=raw["user_id"],
            purpose=TokenPurpose(raw["purpose"]),
            expires_at=datetime.fromisoformat(raw["expires_at"]),
            created_at=datetime.fromisoformat(raw["created_at"]),
            used=raw.get("used") == "1",
            used_at=datetime.fromisoformat(raw["used_at"]) if raw.get("used_at") else None,
        )

    def claim_side_channel_token(self, token_hash: str, used_at: datetime) -> bool:
        with self._guard("claim_side_channel_token"):
            result = self._claim(keys=[self._side_key(token_hash)], args=[used_at.isoformat()])
        return bool(int(result))

    def release_side_channel_token(self, token_hash: str) -> None:
        with self._guard("release_side_channel_token"):
            self._release(keys=[self._side_key(token_hash)], args=[])

    def invalidate_side_channel_tokens(
        self, project_id: str, user_id: str, purpose: TokenPurpose
    ) -> int:
        now = datetime.now(timezone.utc).isoformat()
        invalidated = 0
        with self._guard("invalidate_side_channel_tokens"):
            for token_hash in self.client.smembers(
                self._side_index_key(project_id, user_id, purpose)
            ):
                if self._claim(keys=[self._side_key(token_hash)], args=[now]):
                    invalidated += 1
        return invalidated
