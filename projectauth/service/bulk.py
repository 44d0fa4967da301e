from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from projectauth.config import Settings
from projectauth.service.accounts import ContextualService
from projectauth.service.errors import ServiceError, ValidationError
from projectauth.service.passwords import PasswordService, generate_unusable_password
from projectauth.service.projects import RequestContext
from projectauth.service.rate_limit import RateLimiter
from projectauth.service.schemas import ImportRecord, check_custom_fields, describe_errors
from projectauth.storage.common import UserRepository
from projectauth.storage.models import Operation, UserRecord, utcnow

EXPORT_FORMATS = ("json", "csv")

_CSV_COLUMNS = (
    "id",
    "email",
    "username",
    "firstName",
    "lastName",
    "displayName",
    "avatar",
    "bio",
    "phoneNumber",
    "isVerified",
    "isActive",
    "isSuspended",
    "createdAt",
    "updatedAt",
    "lastLogin",
    "deletedAt",
)

# Spreadsheets evaluate cells starting with these as formulas
_FORMULA_PREFIXES = ("=", "+", "-", "@")

_IMPORT_PROFILE_FIELDS = (
    "first_name",
    "last_name",
    "display_name",
    "avatar",
    "bio",
    "phone_number",
)


def sanitize_csv_cell(value: Any) -> Any:
    if isinstance(value, str) and value.startswith(_FORMULA_PREFIXES):
        return "\t" + value
    return value


@dataclass
class ExportResult:
    users: List[Dict[str, Any]]
    metadata: Dict[str, Any]
    content: Optional[str] = None


@dataclass
class ImportResult:
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "imported": self.imported,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


class _RecordRejected(Exception):
    def __init__(self, reason: str, *, invalid: bool = False) -> None:
        super().__init__(reason)
        self.reason = reason
        self.invalid = invalid


class BulkReconciler(ContextualService):
    """Export a project's users and import batches with a conflict policy."""

    def __init__(
        self,
        settings: Settings,
        *,
        users: UserRepository,
        passwords: PasswordService,
        rate_limiter: RateLimiter,
    ) -> None:
        super().__init__(settings, rate_limiter)
        self.users = users
        self.passwords = passwords

    # export
    async def export(
        self,
        ctx: RequestContext,
        *,
        include_custom_fields: bool = True,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        include_deleted: bool = False,
        fmt: str = "json",
    ) -> ExportResult:
        await self._begin(ctx, Operation.EXPORT)
        self._require_admin(ctx)
        if fmt not in EXPORT_FORMATS:
            raise ValidationError("unsupported export format", detail={"allowed": list(EXPORT_FORMATS)})
        if date_from and date_to and date_from > date_to:
            raise ValidationError("date_from must not be after date_to")
        records: List[UserRecord] = await self._call(
            ctx,
            self.users.iter_users,
            ctx.project_id,
            created_from=date_from,
            created_to=date_to,
            include_deleted=include_deleted,
            retry=True,
        )
        exported = []
        for record in records:
            view = record.public_view()
            if not include_custom_fields:
                view.pop("customFields", None)
            exported.append(view)
        metadata = {
            "exportedAt": utcnow().isoformat(),
            "totalCount": len(exported),
            "projectId": ctx.project_id,
            "format": fmt,
        }
        content = self._render_csv(ctx, exported) if fmt == "csv" else None
        self.logger.info(
            "users_exported", project_id=ctx.project_id, count=len(exported), format=fmt
        )
        return ExportResult(users=exported, metadata=metadata, content=content)

    def _render_csv(self, ctx: RequestContext, users: List[Dict[str, Any]]) -> str:
        custom_names = [spec.name for spec in ctx.project.custom_fields]
        extra = sorted(
            {name for u in users for name in (u.get("customFields") or {})} - set(custom_names)
        )
        custom_columns = custom_names + extra if any("customFields" in u for u in users) else []
        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow(list(_CSV_COLUMNS) + [f"customFields.{name}" for name in custom_columns])
        for user in users:
            custom = user.get("customFields") or {}
            row = [user.get(column) for column in _CSV_COLUMNS]
            row += [custom.get(name) for name in custom_columns]
            writer.writerow(["" if v is None else sanitize_csv_cell(v) for v in row])
        return buf.getvalue()

    # import
    async def import_users(
        self,
        ctx: RequestContext,
        data: Iterable[Mapping[str, Any]],
        *,
        update_existing: bool = False,
        skip_invalid: bool = True,
    ) -> ImportResult:
        """Reconcile a batch of users; each record succeeds or fails on its own."""
        await self._begin(ctx, Operation.IMPORT)
        self._require_admin(ctx)
        result = ImportResult()
        for index, raw in enumerate(data):
            email = raw.get("email") if isinstance(raw, Mapping) else None
            try:
                outcome = await self._import_one(ctx, raw, update_existing=update_existing)
            except _RecordRejected as exc:
                if exc.invalid and skip_invalid:
                    result.skipped += 1
                    continue
                result.errors.append({"index": index, "email": email, "reason": exc.reason})
                continue
            except ServiceError as exc:
                result.errors.append({"index": index, "email": email, "reason": exc.message})
                continue
            if outcome == "imported":
                result.imported += 1
            elif outcome == "updated":
                result.updated += 1
            else:
                result.skipped += 1
        self.logger.info(
            "users_imported",
            project_id=ctx.project_id,
            imported=result.imported,
            updated=result.updated,
            skipped=result.skipped,
            errors=len(result.errors),
        )
        return result

    async def _import_one(
        self, ctx: RequestContext, raw: Any, *, update_existing: bool
    ) -> str:
        if not isinstance(raw, Mapping):
            raise _RecordRejected("record must be an object", invalid=True)
        try:
            record = ImportRecord.model_validate(dict(raw))
        except PydanticValidationError as exc:
            problems = describe_errors(exc)
            reason = "; ".join(f"{p['field']}: {p['message']}" for p in problems)
            raise _RecordRejected(reason, invalid=True) from None
        custom, problems = check_custom_fields(
            ctx.project.custom_fields,
            record.custom_fields,
            partial=record.custom_fields is None,
        )
        if problems:
            reason = "; ".join(f"customFields.{k}: {v}" for k, v in sorted(problems.items()))
            raise _RecordRejected(reason, invalid=True)

        pid = ctx.project_id
        existing = await self._call(ctx, self.users.find_by_email, pid, record.email, retry=True)
        if existing:
            if not update_existing:
                return "skipped"
            patch: Dict[str, Any] = {
                name: getattr(record, name)
                for name in _IMPORT_PROFILE_FIELDS
                if getattr(record, name) is not None
            }
            if record.username is not None and record.username != existing.username:
                patch["username"] = record.username
            if record.custom_fields is not None:
                patch["custom_fields"] = {**existing.custom_fields, **custom}
            if patch:
                await self._call(ctx, self.users.update, pid, existing.id, patch)
            return "updated"

        if record.custom_fields is None:
            _, missing = check_custom_fields(ctx.project.custom_fields, {})
            if missing:
                reason = "; ".join(f"customFields.{k}: {v}" for k, v in sorted(missing.items()))
                raise _RecordRejected(reason, invalid=True)
        if record.password:
            password_hash = await self._call(ctx, self.passwords.hash, record.password)
        elif record.password_hash and self.passwords.recognizes(record.password_hash):
            password_hash = record.password_hash
        else:
            # Nobody knows this password; the user signs in after a reset
            password_hash = await self._call(
                ctx, self.passwords.hash, generate_unusable_password()
            )
        user = UserRecord.new(
            pid,
            record.email,
            password_hash,
            username=record.username,
            first_name=record.first_name,
            last_name=record.last_name,
            display_name=record.display_name,
            avatar=record.avatar,
            bio=record.bio,
            phone_number=record.phone_number,
            custom_fields=custom,
            is_verified=bool(record.is_verified),
            is_active=True if record.is_active is None else record.is_active,
        )
        await self._call(ctx, self.users.create, user)
        return "imported"
