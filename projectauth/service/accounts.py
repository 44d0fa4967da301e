from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Set

from pydantic import ValidationError as PydanticValidationError

from projectauth.config import Settings
from projectauth.logging import email_fingerprint, get_logger, set_correlation_id
from projectauth.service.email import EmailTemplate, Mailer
from projectauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from projectauth.service.passwords import PasswordService, password_policy_violations
from projectauth.service.projects import ROLES, ProjectService, RequestContext
from projectauth.service.rate_limit import RateLimiter
from projectauth.service.schemas import (
    PROFILE_FIELDS,
    ProfileUpdate,
    RegistrationInput,
    check_custom_fields,
    describe_errors,
    validate_email,
)
from projectauth.service.side_channel import SideChannelTokenManager
from projectauth.service.tokens import TokenIssuer, TokenPair
from projectauth.storage.common import UserRepository
from projectauth.storage.errors import ConstraintViolation, StorageUnavailable
from projectauth.storage.models import (
    Operation,
    TokenPurpose,
    UserRecord,
    UserStatus,
    utcnow,
)

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100


@dataclass
class AuthResult:
    user: UserRecord
    tokens: TokenPair
    needs_verification: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user.public_view(),
            "tokens": self.tokens.as_dict(),
            "needsVerification": self.needs_verification,
        }


def _display_name(user: UserRecord) -> str:
    return user.first_name or user.username or "there"


def _can_sign_in(user: UserRecord) -> bool:
    return not user.is_deleted and user.is_active and not user.is_suspended


class ContextualService:
    """Shared plumbing for services driven by a RequestContext.

    Blocking work (repository calls, the password KDF) runs in worker threads
    bounded by the context timeout; a timeout surfaces as TransientError.
    """

    def __init__(self, settings: Settings, rate_limiter: RateLimiter) -> None:
        self.settings = settings
        self.rate_limiter = rate_limiter
        self.logger = logger

    def _timeout(self, ctx: Optional[RequestContext]) -> float:
        if ctx is not None and ctx.timeout:
            return ctx.timeout
        return self.settings.operation_timeout_seconds

    async def _call(
        self,
        ctx: Optional[RequestContext],
        fn: Callable[..., Any],
        *args: Any,
        retry: bool = False,
        bounded: bool = True,
        **kwargs: Any,
    ) -> Any:
        """Run blocking ``fn`` in a worker thread.

        Only reads pass ``retry=True``; a write is attempted once because a
        timed-out write may still have landed.
        """
        name = getattr(fn, "__name__", "call")
        attempts = 1 + (self.settings.transient_retry_attempts if retry else 0)
        failure: Optional[TransientError] = None
        for attempt in range(1, attempts + 1):
            try:
                work = asyncio.to_thread(fn, *args, **kwargs)
                if bounded:
                    return await asyncio.wait_for(work, self._timeout(ctx))
                return await work
            except asyncio.TimeoutError:
                failure = TransientError("operation timed out", detail={"operation": name})
            except StorageUnavailable as exc:
                failure = TransientError(exc.message, detail={"operation": name})
            except TransientError as exc:
                failure = exc
            except ConstraintViolation as exc:
                raise ConflictError(exc.message, detail=exc.detail) from exc
            if attempt < attempts:
                self.logger.warning("transient_retry", operation=name, attempt=attempt)
        self.logger.warning("transient_failure", operation=name, attempts=attempts)
        raise failure

    async def _begin(self, ctx: RequestContext, operation: Operation) -> None:
        if ctx.correlation_id:
            set_correlation_id(ctx.correlation_id)
        await self._call(
            ctx,
            self.rate_limiter.enforce,
            ctx.project_id,
            operation,
            ctx.project.rate_limits,
        )

    def _require_user(self, ctx: RequestContext) -> str:
        if not ctx.user_id:
            raise AuthenticationError("authentication required")
        return ctx.user_id

    def _require_admin(self, ctx: RequestContext) -> None:
        if not ctx.is_admin:
            raise ForbiddenError("admin role required")


class AccountService(ContextualService):
    """Account lifecycle: registration, sign-in, token refresh and recovery flows.

    Every operation takes a RequestContext describing the project and caller.
    Emails are sent in background tasks and never fail the operation.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        users: UserRepository,
        projects: ProjectService,
        passwords: PasswordService,
        tokens: TokenIssuer,
        side_channel: SideChannelTokenManager,
        rate_limiter: RateLimiter,
        mailer: Mailer,
    ) -> None:
        super().__init__(settings, rate_limiter)
        self.users = users
        self.projects = projects
        self.passwords = passwords
        self.tokens = tokens
        self.side_channel = side_channel
        self.mailer = mailer
        self._pending: Set[asyncio.Task] = set()

    def _notify(
        self,
        ctx: RequestContext,
        template: EmailTemplate,
        user: UserRecord,
        token: Optional[str] = None,
    ) -> None:
        data = {"to": user.email, "userName": _display_name(user), "token": token}
        task = asyncio.create_task(self._deliver(ctx.project_id, template, user.id, data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(
        self, project_id: str, template: EmailTemplate, user_id: str, data: Dict[str, Any]
    ) -> None:
        try:
            sent = await self.mailer.send(project_id, template, data)
        except Exception as exc:
            self.logger.error(
                "email_delivery_failed",
                project_id=project_id,
                user_id=user_id,
                template=template.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not sent:
            self.logger.warning(
                "email_not_sent", project_id=project_id, user_id=user_id, template=template.value
            )

    async def flush_notifications(self) -> None:
        """Wait for every queued email to finish."""
        while self._pending:
            batch = list(self._pending)
            await asyncio.gather(*batch, return_exceptions=True)
            self._pending.difference_update(batch)

    def _check_password(self, ctx: RequestContext, password: str) -> None:
        problems = password_policy_violations(password, ctx.project.settings)
        if problems:
            raise ValidationError(
                problems[0],
                detail={"errors": [{"field": "password", "message": p} for p in problems]},
            )

    async def _load_user(self, ctx: RequestContext, user_id: str) -> UserRecord:
        user = await self._call(ctx, self.users.find_by_id, ctx.project_id, user_id, retry=True)
        if not user or user.is_deleted:
            raise NotFoundError("user not found")
        return user

    async def _update_user(
        self, ctx: RequestContext, user_id: str, patch: Dict[str, Any]
    ) -> UserRecord:
        updated = await self._call(ctx, self.users.update, ctx.project_id, user_id, patch)
        if not updated:
            raise NotFoundError("user not found")
        return updated

    def _update_and_revoke(
        self, project_id: str, user_id: str, patch: Dict[str, Any]
    ) -> UserRecord:
        """Apply ``patch`` and retire every refresh token in one worker call."""
        updated = self.users.update(project_id, user_id, patch)
        if not updated:
            raise NotFoundError("user not found")
        self.tokens.revoke_user_tokens(project_id, user_id)
        return updated

    # context
    async def context_for(
        self,
        api_key: Optional[str],
        bearer: Optional[str] = None,
        *,
        role: str = "user",
        timeout: Optional[float] = None,
        correlation_id: Optional[str] = None,
    ) -> RequestContext:
        """Build a RequestContext from an API key and optional bearer access token."""
        if role not in ROLES:
            raise ValidationError("unknown role", detail={"role": role})
        ctx_timeout = timeout or self.settings.operation_timeout_seconds
        try:
            project = await asyncio.wait_for(
                asyncio.to_thread(self.projects.resolve, api_key), ctx_timeout
            )
        except asyncio.TimeoutError:
            raise TransientError("operation timed out", detail={"operation": "resolve"}) from None
        except StorageUnavailable as exc:
            raise TransientError(exc.message) from exc
        user_id = None
        if bearer:
            token = bearer.split(" ", 1)[1] if bearer.lower().startswith("bearer ") else bearer
            claims = self.tokens.verify_access_token(token.strip())
            if not claims or claims.project_id != project.id:
                raise InvalidTokenError("invalid access token")
            user_id = claims.user_id
        return RequestContext(
            project=project,
            role=role,
            user_id=user_id,
            timeout=timeout,
            correlation_id=correlation_id or set_correlation_id(),
        )

    # registration and sign-in
    async def register(
        self,
        ctx: RequestContext,
        email: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        username: Optional[str] = None,
        custom_fields: Optional[Mapping[str, Any]] = None,
    ) -> AuthResult:
        await self._begin(ctx, Operation.REGISTER)
        policy = ctx.project.settings
        if not policy.allow_signup:
            raise ForbiddenError("registration is disabled for this project")
        try:
            data = RegistrationInput(
                email=email,
                password=password,
                username=username,
                first_name=first_name,
                last_name=last_name,
                custom_fields=dict(custom_fields) if custom_fields is not None else None,
            )
        except PydanticValidationError as exc:
            raise ValidationError(
                "invalid registration", detail={"errors": describe_errors(exc)}
            ) from None
        self._check_password(ctx, password)
        cleaned, field_problems = check_custom_fields(
            ctx.project.custom_fields, data.custom_fields
        )
        if field_problems:
            raise ValidationError(
                "invalid custom fields", detail={"custom_fields": field_problems}
            )

        pid = ctx.project_id
        if await self._call(ctx, self.users.find_by_email, pid, data.email, retry=True):
            raise ConflictError("a user with this email already exists", detail={"field": "email"})
        if data.username and await self._call(
            ctx, self.users.find_by_username, pid, data.username, retry=True
        ):
            raise ConflictError("username already taken", detail={"field": "username"})

        password_hash = await self._call(ctx, self.passwords.hash, password)
        record = UserRecord.new(
            pid,
            data.email,
            password_hash,
            username=data.username,
            first_name=data.first_name,
            last_name=data.last_name,
            custom_fields=cleaned,
            is_verified=not policy.require_email_verification,
        )
        user = await self._call(ctx, self.users.create, record)
        pair = await self._call(
            ctx, self.tokens.issue_pair, pid, user.id, max_sessions=policy.max_sessions
        )
        if policy.require_email_verification:
            try:
                token = await self._call(
                    ctx, self.side_channel.issue, pid, user.id, TokenPurpose.VERIFY_EMAIL
                )
            except TransientError as exc:
                # The account exists; the user can ask for another link
                self.logger.warning(
                    "verification_token_issue_failed", project_id=pid, user_id=user.id, error=str(exc)
                )
            else:
                self._notify(ctx, EmailTemplate.VERIFY_EMAIL, user, token)
        else:
            self._notify(ctx, EmailTemplate.WELCOME, user)
        self.logger.info(
            "user_registered",
            project_id=pid,
            user_id=user.id,
            email_hash=email_fingerprint(user.email),
        )
        return AuthResult(
            user=user, tokens=pair, needs_verification=policy.require_email_verification
        )

    async def _record_failed_login(self, ctx: RequestContext, user: UserRecord) -> None:
        policy = ctx.project.settings
        now = utcnow()
        attempts = user.login_attempts + 1
        patch: Dict[str, Any] = {"login_attempts": attempts}
        if user.lock_until and user.lock_until <= now:
            patch = {"login_attempts": 1, "lock_until": None}
        elif policy.enable_account_locking and attempts >= policy.max_login_attempts:
            patch["lock_until"] = now + timedelta(minutes=policy.lockout_minutes)
            self.logger.warning(
                "account_locked",
                project_id=ctx.project_id,
                user_id=user.id,
                attempts=attempts,
            )
        await self._update_user(ctx, user.id, patch)

    async def login(
        self,
        ctx: RequestContext,
        password: str,
        email: Optional[str] = None,
        username: Optional[str] = None,
    ) -> AuthResult:
        await self._begin(ctx, Operation.LOGIN)
        if not password or not (email or username):
            raise ValidationError("email or username and password are required")
        pid = ctx.project_id
        policy = ctx.project.settings
        if email:
            user = await self._call(ctx, self.users.find_by_email, pid, email, retry=True)
        else:
            user = await self._call(ctx, self.users.find_by_username, pid, username, retry=True)

        reason = None
        if user is None:
            reason = "unknown_user"
        elif not _can_sign_in(user):
            reason = "account_disabled"
        elif policy.enable_account_locking and user.is_locked():
            reason = "account_locked"
        if reason:
            await self._call(ctx, self.passwords.dummy_verify, password)
            self.logger.info("login_failed", project_id=pid, reason=reason)
            raise InvalidCredentialsError("invalid credentials")

        if not await self._call(ctx, self.passwords.verify, password, user.password_hash):
            await self._record_failed_login(ctx, user)
            self.logger.info("login_failed", project_id=pid, user_id=user.id, reason="bad_password")
            raise InvalidCredentialsError("invalid credentials")

        if policy.require_email_verification and not user.is_verified:
            raise ForbiddenError(
                "email address has not been verified",
                detail={"reason": "needs_verification"},
            )

        patch: Dict[str, Any] = {"last_login": utcnow(), "login_attempts": 0, "lock_until": None}
        if self.passwords.needs_rehash(user.password_hash):
            patch["password_hash"] = await self._call(ctx, self.passwords.hash, password)
            self.logger.info("password_rehashed", project_id=pid, user_id=user.id)
        user = await self._update_user(ctx, user.id, patch)
        pair = await self._call(
            ctx, self.tokens.issue_pair, pid, user.id, max_sessions=policy.max_sessions
        )
        self.logger.info("login_succeeded", project_id=pid, user_id=user.id)
        return AuthResult(user=user, tokens=pair)

    async def logout(self, ctx: RequestContext, refresh_token: Optional[str] = None) -> None:
        await self._begin(ctx, Operation.GENERAL)
        if refresh_token:
            revoked = await self._call(
                ctx, self.tokens.revoke_refresh_token, refresh_token, project_id=ctx.project_id
            )
            self.logger.info("logout", project_id=ctx.project_id, revoked=revoked)

    async def refresh(self, ctx: RequestContext, refresh_token: str) -> TokenPair:
        await self._begin(ctx, Operation.REFRESH)
        pid = ctx.project_id
        # Rotation bounds itself with a deadline so it never commits after we stop waiting
        pair = await self._call(
            ctx,
            self.tokens.redeem_refresh_token,
            refresh_token,
            project_id=pid,
            max_sessions=ctx.project.settings.max_sessions,
            deadline=time.monotonic() + self._timeout(ctx),
            bounded=False,
        )
        user = await self._call(ctx, self.users.find_by_id, pid, pair.user_id, retry=True)
        if not user or not _can_sign_in(user):
            await self._call(ctx, self.tokens.revoke_user_tokens, pid, pair.user_id)
            self.logger.warning("refresh_rejected_inactive_user", project_id=pid, user_id=pair.user_id)
            raise InvalidTokenError("invalid refresh token")
        return pair

    # recovery flows
    async def forgot_password(self, ctx: RequestContext, email: str) -> None:
        """Start a password reset; the outcome never reveals whether the account exists."""
        await self._begin(ctx, Operation.PASSWORD_RESET)
        try:
            email = validate_email(email)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "email"}) from None
        pid = ctx.project_id
        user = await self._call(ctx, self.users.find_by_email, pid, email, retry=True)
        self.logger.info("password_reset_requested", project_id=pid, email_hash=email_fingerprint(email))
        if not user or not _can_sign_in(user):
            return
        token = await self._call(ctx, self.side_channel.issue, pid, user.id, TokenPurpose.RESET_PASSWORD)
        self._notify(ctx, EmailTemplate.PASSWORD_RESET, user, token)

    async def reset_password(self, ctx: RequestContext, token: str, new_password: str) -> None:
        await self._begin(ctx, Operation.PASSWORD_RESET)
        self._check_password(ctx, new_password)
        pid = ctx.project_id
        new_hash = await self._call(ctx, self.passwords.hash, new_password)

        def _apply(user_id: str) -> None:
            patch = {"password_hash": new_hash, "login_attempts": 0, "lock_until": None}
            if self.users.update(pid, user_id, patch) is None:
                raise NotFoundError("user not found")
            self.tokens.revoke_user_tokens(pid, user_id)

        # Runs to completion once claimed so the new hash never lands without the revocation
        user_id = await self._call(
            ctx,
            self.side_channel.redeem,
            token,
            TokenPurpose.RESET_PASSWORD,
            project_id=pid,
            apply=_apply,
            deadline=time.monotonic() + self._timeout(ctx),
            bounded=False,
        )
        user = await self._call(ctx, self.users.find_by_id, pid, user_id, retry=True)
        if user:
            self._notify(ctx, EmailTemplate.PASSWORD_CHANGED, user)
        self.logger.info("password_reset_completed", project_id=pid, user_id=user_id)

    async def request_email_verification(self, ctx: RequestContext, email: str) -> None:
        await self._begin(ctx, Operation.VERIFY_EMAIL)
        pid = ctx.project_id
        user = await self._call(ctx, self.users.find_by_email, pid, email, retry=True)
        if not user or user.is_verified or user.is_deleted:
            return
        token = await self._call(ctx, self.side_channel.issue, pid, user.id, TokenPurpose.VERIFY_EMAIL)
        self._notify(ctx, EmailTemplate.VERIFY_EMAIL, user, token)
        self.logger.info("email_verification_requested", project_id=pid, user_id=user.id)

    async def verify_email(self, ctx: RequestContext, token: str) -> Dict[str, Any]:
        await self._begin(ctx, Operation.VERIFY_EMAIL)
        pid = ctx.project_id

        def _apply(user_id: str) -> None:
            if self.users.update(pid, user_id, {"is_verified": True}) is None:
                raise NotFoundError("user not found")

        user_id = await self._call(
            ctx,
            self.side_channel.redeem,
            token,
            TokenPurpose.VERIFY_EMAIL,
            project_id=pid,
            apply=_apply,
            deadline=time.monotonic() + self._timeout(ctx),
            bounded=False,
        )
        user = await self._load_user(ctx, user_id)
        self.logger.info("email_verified", project_id=pid, user_id=user_id)
        return user.public_view()

    async def change_password(
        self, ctx: RequestContext, current_password: str, new_password: str
    ) -> None:
        await self._begin(ctx, Operation.GENERAL)
        user = await self._load_user(ctx, self._require_user(ctx))
        if not await self._call(ctx, self.passwords.verify, current_password, user.password_hash):
            raise InvalidCredentialsError("current password is incorrect")
        self._check_password(ctx, new_password)
        new_hash = await self._call(ctx, self.passwords.hash, new_password)
        user = await self._call(
            ctx, self._update_and_revoke, ctx.project_id, user.id, {"password_hash": new_hash}
        )
        self._notify(ctx, EmailTemplate.PASSWORD_CHANGED, user)
        self.logger.info("password_changed", project_id=ctx.project_id, user_id=user.id)

    # profile
    async def get_profile(
        self, ctx: RequestContext, user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        await self._begin(ctx, Operation.GENERAL)
        if user_id and user_id != ctx.user_id:
            self._require_admin(ctx)
            user = await self._call(ctx, self.users.find_by_id, ctx.project_id, user_id, retry=True)
            if not user:
                raise NotFoundError("user not found")
        else:
            user = await self._load_user(ctx, self._require_user(ctx))
        return user.public_view()

    async def update_profile(
        self, ctx: RequestContext, changes: Mapping[str, Any]
    ) -> Dict[str, Any]:
        await self._begin(ctx, Operation.GENERAL)
        user_id = self._require_user(ctx)
        rejected = sorted(set(changes) - set(PROFILE_FIELDS))
        if rejected:
            raise ValidationError("fields cannot be updated", detail={"rejected": rejected})
        try:
            update = ProfileUpdate(**changes)
        except PydanticValidationError as exc:
            raise ValidationError("invalid profile", detail={"errors": describe_errors(exc)}) from None
        patch = {name: getattr(update, name) for name in update.model_fields_set}
        user = await self._load_user(ctx, user_id)
        if "custom_fields" in patch:
            provided = patch["custom_fields"] or {}
            cleaned, problems = check_custom_fields(
                ctx.project.custom_fields, provided, partial=True
            )
            if problems:
                raise ValidationError("invalid custom fields", detail={"custom_fields": problems})
            merged = {**user.custom_fields, **cleaned}
            for name, value in provided.items():
                if value is None:
                    merged.pop(name, None)
            patch["custom_fields"] = merged
        if not patch:
            return user.public_view()
        user = await self._update_user(ctx, user_id, patch)
        self.logger.info(
            "profile_updated", project_id=ctx.project_id, user_id=user_id, fields=sorted(patch)
        )
        return user.public_view()

    # administration
    async def change_status(
        self,
        ctx: RequestContext,
        user_id: str,
        *,
        is_active: Optional[bool] = None,
        is_suspended: Optional[bool] = None,
        is_verified: Optional[bool] = None,
    ) -> Dict[str, Any]:
        await self._begin(ctx, Operation.GENERAL)
        self._require_admin(ctx)
        patch: Dict[str, Any] = {}
        if is_active is not None:
            patch["is_active"] = bool(is_active)
        if is_suspended is not None:
            patch["is_suspended"] = bool(is_suspended)
        if is_verified is not None:
            patch["is_verified"] = bool(is_verified)
        if not patch:
            raise ValidationError("no status change requested")
        await self._load_user(ctx, user_id)
        if patch.get("is_active") is False or patch.get("is_suspended") is True:
            user = await self._call(ctx, self._update_and_revoke, ctx.project_id, user_id, patch)
        else:
            user = await self._update_user(ctx, user_id, patch)
        self.logger.info("user_status_changed", project_id=ctx.project_id, user_id=user_id, **patch)
        return user.public_view()

    async def delete_user(self, ctx: RequestContext, user_id: str) -> None:
        await self._begin(ctx, Operation.GENERAL)
        self._require_admin(ctx)
        deleted = await self._call(ctx, self.users.soft_delete, ctx.project_id, user_id)
        if not deleted:
            raise NotFoundError("user not found")
        await self._call(ctx, self.tokens.revoke_user_tokens, ctx.project_id, user_id)
        self.logger.info("user_deleted", project_id=ctx.project_id, user_id=user_id)

    async def list_users(
        self,
        ctx: RequestContext,
        *,
        page: int = 1,
        limit: int = 20,
        search: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Dict[str, Any]:
        await self._begin(ctx, Operation.GENERAL)
        self._require_admin(ctx)
        try:
            status_filter = UserStatus(status) if status else None
        except ValueError:
            raise ValidationError(
                "unknown status filter",
                detail={"status": status, "allowed": [s.value for s in UserStatus]},
            ) from None
        limit = min(max(1, limit), MAX_PAGE_SIZE)
        result = await self._call(
            ctx,
            self.users.list,
            ctx.project_id,
            page=max(1, page),
            limit=limit,
            search=search,
            status=status_filter,
            retry=True,
        )
        return {
            "users": [u.public_view() for u in result.users],
            "pagination": {
                "page": result.page,
                "limit": result.limit,
                "total": result.total,
                "pages": result.pages,
            },
        }

    async def user_stats(self, ctx: RequestContext) -> Dict[str, int]:
        await self._begin(ctx, Operation.GENERAL)
        self._require_admin(ctx)
        users = await self._call(ctx, self.users.iter_users, ctx.project_id, retry=True)
        now = utcnow()
        start_of_day = datetime(now.year, now.month, now.day, tzinfo=now.tzinfo)
        week_ago = now - timedelta(days=7)
        return {
            "totalUsers": len(users),
            "activeUsers": sum(1 for u in users if u.is_active),
            "verifiedUsers": sum(1 for u in users if u.is_verified),
            "suspendedUsers": sum(1 for u in users if u.is_suspended),
            "newUsersToday": sum(1 for u in users if u.created_at >= start_of_day),
            "newUsersThisWeek": sum(1 for u in users if u.created_at >= week_ago),
        }
