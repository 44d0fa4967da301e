from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse, urlunparse

from projectauth.config import Settings
from projectauth.logging import get_logger
from projectauth.service.accounts import AccountService
from projectauth.service.bulk import BulkReconciler
from projectauth.service.email import EmailService, Mailer
from projectauth.service.passwords import PasswordService
from projectauth.service.projects import ProjectService
from projectauth.service.rate_limit import RateLimiter
from projectauth.service.side_channel import SideChannelTokenManager
from projectauth.service.tokens import TokenIssuer
from projectauth.storage.common import ProjectConfig, UserRepository
from projectauth.storage.errors import StorageUnavailable
from projectauth.storage.memory import MemoryStore
from projectauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with '***' for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


@dataclass
class Runtime:
    """Every component of the engine, wired for one deployment."""

    settings: Settings
    store: MemoryStore
    cache: Optional[RedisCache]
    projects: ProjectService
    passwords: PasswordService
    tokens: TokenIssuer
    side_channel: SideChannelTokenManager
    rate_limiter: RateLimiter
    mailer: Mailer
    accounts: AccountService
    bulk: BulkReconciler

    async def close(self) -> None:
        await self.accounts.flush_notifications()
        if self.cache is not None:
            self.cache.close()


def _connect_cache(settings: Settings) -> Optional[RedisCache]:
    if not settings.redis_url or settings.use_memory_store:
        return None
    try:
        cache = RedisCache(settings.redis_url)
        cache.verify_connection()
    except StorageUnavailable as exc:
        if not settings.test_mode:
            raise RuntimeError(
                "Redis is required for token state and rate limits; start Redis, "
                "set USE_MEMORY_STORE=true or TEST_MODE=true for local fallback."
            ) from exc
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(exc),
        )
        return None
    logger.info("redis_connected", redis_url=_mask_url_password(settings.redis_url))
    return cache


def build_runtime(
    settings: Settings,
    *,
    users: Optional[UserRepository] = None,
    project_config: Optional[ProjectConfig] = None,
    mailer: Optional[Mailer] = None,
    cache: Optional[RedisCache] = None,
) -> Runtime:
    """Wire all components from ``settings``.

    The user repository and project configuration default to an in-memory
    store; pass real implementations to back them with a database. Token state
    and rate-limit windows live in Redis when configured, otherwise in memory.
    """
    store = MemoryStore()
    users = users or store
    project_config = project_config or store
    cache = cache or _connect_cache(settings)
    token_state = cache or store

    projects = ProjectService(settings, project_config)
    passwords = PasswordService(settings)
    tokens = TokenIssuer(settings, token_state)
    side_channel = SideChannelTokenManager(settings, token_state)
    rate_limiter = RateLimiter(cache)
    if mailer is None:
        mailer = EmailService(
            project_config,
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            base_url=settings.app_base_url,
        )
    accounts = AccountService(
        settings,
        users=users,
        projects=projects,
        passwords=passwords,
        tokens=tokens,
        side_channel=side_channel,
        rate_limiter=rate_limiter,
        mailer=mailer,
    )
    bulk = BulkReconciler(settings, users=users, passwords=passwords, rate_limiter=rate_limiter)
    logger.info(
        "runtime_initialized",
        redis_enabled=cache is not None,
        external_users=users is not store,
        email_configured=isinstance(mailer, EmailService) and mailer.is_configured,
    )
    return Runtime(
        settings=settings,
        store=store,
        cache=cache,
        projects=projects,
        passwords=passwords,
        tokens=tokens,
        side_channel=side_channel,
        rate_limiter=rate_limiter,
        mailer=mailer,
        accounts=accounts,
        bulk=bulk,
    )
