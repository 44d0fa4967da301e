from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Tuple, Union

from projectauth.logging import get_logger
from projectauth.service.errors import RateLimitedError, TransientError
from projectauth.storage.errors import StorageUnavailable
from projectauth.storage.models import Operation, RateLimitRule
from projectauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

DEFAULT_RATE_LIMITS: Dict[Operation, RateLimitRule] = {
    Operation.REGISTER: RateLimitRule(limit=10, window_seconds=15 * 60),
    Operation.LOGIN: RateLimitRule(limit=10, window_seconds=15 * 60),
    Operation.PASSWORD_RESET: RateLimitRule(limit=5, window_seconds=15 * 60),
    Operation.VERIFY_EMAIL: RateLimitRule(limit=10, window_seconds=15 * 60),
    Operation.REFRESH: RateLimitRule(limit=60, window_seconds=15 * 60),
    Operation.EXPORT: RateLimitRule(limit=10, window_seconds=60 * 60),
    Operation.IMPORT: RateLimitRule(limit=5, window_seconds=60 * 60),
    Operation.GENERAL: RateLimitRule(limit=1000, window_seconds=15 * 60),
}

_FALLBACK_WINDOW_SECONDS = 60


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: float


class RateLimiter:
    """Fixed-window quotas per (project, operation).

    Counts live in Redis when a cache is configured, otherwise in a process
    local table guarded by a lock. Either way the increment and the limit
    check happen as one atomic step.
    """

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self._clock = clock
        self._windows: Dict[Tuple[str, str], Tuple[float, int]] = {}
        self._lock = threading.Lock()

    def rule_for(
        self,
        operation: Union[Operation, str],
        overrides: Optional[Mapping[str, RateLimitRule]] = None,
    ) -> RateLimitRule:
        op = Operation(operation)
        if overrides and op.value in overrides:
            return overrides[op.value]
        return DEFAULT_RATE_LIMITS[op]

    def check_and_increment(
        self,
        project_id: str,
        operation: Union[Operation, str],
        overrides: Optional[Mapping[str, RateLimitRule]] = None,
    ) -> RateLimitDecision:
        op = Operation(operation)
        rule = self.rule_for(op, overrides)
        limit = rule.limit
        if limit <= 0:
            return RateLimitDecision(allowed=True, limit=limit, remaining=0, retry_after=0.0)
        window_seconds = rule.window_seconds
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                project_id=project_id,
                operation=op.value,
                window_seconds=window_seconds,
            )
            window_seconds = _FALLBACK_WINDOW_SECONDS

        if self.cache is not None:
            try:
                count, reset_in = self.cache.incr_window(project_id, op.value, window_seconds)
            except StorageUnavailable as exc:
                raise TransientError("rate limit store unavailable") from exc
        else:
            count, reset_in = self._incr_local(project_id, op.value, window_seconds)

        allowed = count <= limit
        decision = RateLimitDecision(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            retry_after=0.0 if allowed else reset_in,
        )
        if not allowed:
            logger.info(
                "rate_limit_exceeded",
                project_id=project_id,
                operation=op.value,
                limit=limit,
                retry_after=decision.retry_after,
            )
        return decision

    def _incr_local(self, project_id: str, operation: str, window_seconds: int) -> Tuple[int, float]:
        key = (project_id, operation)
        now = self._clock()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= window_seconds:
                started, count = now, 0
            count += 1
            self._windows[key] = (started, count)
        return count, max(0.0, started + window_seconds - now)

    def enforce(
        self,
        project_id: str,
        operation: Union[Operation, str],
        overrides: Optional[Mapping[str, RateLimitRule]] = None,
    ) -> RateLimitDecision:
        decision = self.check_and_increment(project_id, operation, overrides)
        if not decision.allowed:
            raise RateLimitedError(
                "too many requests",
                retry_after=decision.retry_after,
                detail={"operation": Operation(operation).value, "limit": decision.limit},
            )
        return decision

    def reset(self, project_id: Optional[str] = None) -> None:
        """Forget local windows, for one project or all of them."""
        with self._lock:
            if project_id is None:
                self._windows.clear()
                return
            for key in [k for k in self._windows if k[0] == project_id]:
                self._windows.pop(key, None)
