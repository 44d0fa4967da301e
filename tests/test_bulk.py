"""Tests for bulk user export and import."""

import csv
import io
from datetime import timedelta

import pytest

from projectauth.service.bulk import sanitize_csv_cell
from projectauth.service.errors import ForbiddenError, InvalidCredentialsError, ValidationError
from projectauth.service.projects import RequestContext
from projectauth.storage.models import CustomFieldSpec, FieldType, ProjectSettings, utcnow


@pytest.fixture
def bulk(runtime):
    return runtime.bulk


BATCH = [
    {"email": "ann@x.com", "password": "secret1", "firstName": "Ann"},
    {"email": "not-an-email"},
    {"email": "bob@x.com", "username": "bob", "isVerified": True},
]


class TestImport:
    """Per-record reconciliation with a conflict policy."""

    async def test_import_is_idempotent(self, runtime, bulk, admin_ctx):
        first = await bulk.import_users(admin_ctx, BATCH)
        assert first.as_dict() == {"imported": 2, "updated": 0, "skipped": 1, "errors": []}
        second = await bulk.import_users(admin_ctx, BATCH)
        assert second.imported == 0
        assert second.skipped == 3
        assert len(runtime.store.iter_users(admin_ctx.project_id)) == 2

    async def test_invalid_records_reported_when_not_skipped(self, bulk, admin_ctx):
        result = await bulk.import_users(admin_ctx, BATCH, skip_invalid=False)
        assert result.imported == 2
        assert len(result.errors) == 1
        error = result.errors[0]
        assert error["index"] == 1
        assert error["email"] == "not-an-email"
        assert "email" in error["reason"]

    async def test_non_object_record(self, bulk, admin_ctx):
        result = await bulk.import_users(admin_ctx, ["oops"], skip_invalid=False)
        assert result.errors == [{"index": 0, "email": None, "reason": "record must be an object"}]

    async def test_update_existing(self, runtime, bulk, admin_ctx):
        await bulk.import_users(admin_ctx, BATCH)
        result = await bulk.import_users(
            admin_ctx,
            [{"email": "ANN@x.com", "lastName": "Lee", "customFields": {"tier": "gold"}}],
            update_existing=True,
        )
        assert result.updated == 1
        ann = runtime.store.find_by_email(admin_ctx.project_id, "ann@x.com")
        assert ann.first_name == "Ann"
        assert ann.last_name == "Lee"
        assert ann.custom_fields == {"tier": "gold"}

    async def test_plaintext_password_is_hashed(self, runtime, bulk, admin_ctx):
        await bulk.import_users(admin_ctx, BATCH[:1])
        ann = runtime.store.find_by_email(admin_ctx.project_id, "ann@x.com")
        assert ann.password_hash.startswith("$argon2id$")
        assert (await runtime.accounts.login(admin_ctx, "secret1", email="ann@x.com")).tokens

    async def test_recognized_password_hash_kept(self, runtime, bulk, admin_ctx):
        encoded = runtime.passwords.hash("carried-over")
        await bulk.import_users(admin_ctx, [{"email": "c@x.com", "passwordHash": encoded}])
        assert runtime.store.find_by_email(admin_ctx.project_id, "c@x.com").password_hash == encoded
        assert (await runtime.accounts.login(admin_ctx, "carried-over", email="c@x.com")).tokens

    async def test_unrecognized_password_hash_replaced(self, runtime, bulk, admin_ctx):
        await bulk.import_users(admin_ctx, [{"email": "d@x.com", "passwordHash": "md5:abc"}])
        stored = runtime.store.find_by_email(admin_ctx.project_id, "d@x.com")
        assert stored.password_hash != "md5:abc"
        assert stored.password_hash.startswith("$argon2id$")
        with pytest.raises(InvalidCredentialsError):
            await runtime.accounts.login(admin_ctx, "md5:abc", email="d@x.com")

    async def test_username_conflict_is_per_record_error(self, runtime, bulk, admin_ctx):
        result = await bulk.import_users(
            admin_ctx,
            [
                {"email": "e1@x.com", "username": "same"},
                {"email": "e2@x.com", "username": "same"},
                {"email": "e3@x.com"},
            ],
        )
        assert result.imported == 2
        assert [e["index"] for e in result.errors] == [1]

    async def test_required_custom_fields(self, runtime, bulk):
        project, _ = runtime.projects.create_project(
            "Schema",
            custom_fields=[CustomFieldSpec("company", FieldType.STRING, required=True)],
        )
        ctx = RequestContext(project=project, role="admin")
        result = await bulk.import_users(
            ctx,
            [{"email": "a@x.com"}, {"email": "b@x.com", "customFields": {"company": "Acme"}}],
            skip_invalid=False,
        )
        assert result.imported == 1
        assert result.errors[0]["index"] == 0
        assert "company" in result.errors[0]["reason"]

    async def test_admin_required(self, bulk, open_ctx):
        with pytest.raises(ForbiddenError):
            await bulk.import_users(open_ctx, BATCH)


class TestExport:
    async def test_export_excludes_credentials(self, bulk, admin_ctx):
        await bulk.import_users(admin_ctx, BATCH)
        result = await bulk.export(admin_ctx)
        assert result.metadata["totalCount"] == 2
        assert result.metadata["projectId"] == admin_ctx.project_id
        assert result.metadata["format"] == "json"
        for user in result.users:
            assert "passwordHash" not in user
            assert "loginAttempts" not in user
            assert "customFields" in user

    async def test_export_without_custom_fields(self, bulk, admin_ctx):
        await bulk.import_users(admin_ctx, BATCH)
        result = await bulk.export(admin_ctx, include_custom_fields=False)
        assert all("customFields" not in u for u in result.users)

    async def test_deleted_users_opt_in(self, runtime, bulk, admin_ctx):
        await bulk.import_users(admin_ctx, BATCH)
        ann = runtime.store.find_by_email(admin_ctx.project_id, "ann@x.com")
        await runtime.accounts.delete_user(admin_ctx, ann.id)
        assert (await bulk.export(admin_ctx)).metadata["totalCount"] == 1
        assert (await bulk.export(admin_ctx, include_deleted=True)).metadata["totalCount"] == 2

    async def test_date_filters(self, bulk, admin_ctx):
        await bulk.import_users(admin_ctx, BATCH)
        later = utcnow() + timedelta(days=1)
        assert (await bulk.export(admin_ctx, date_from=later)).users == []
        with pytest.raises(ValidationError):
            await bulk.export(admin_ctx, date_from=later, date_to=utcnow())
        with pytest.raises(ValidationError):
            await bulk.export(admin_ctx, fmt="xml")

    async def test_csv_neutralises_formulas(self, bulk, admin_ctx):
        await bulk.import_users(
            admin_ctx,
            [
                {
                    "email": "f@x.com",
                    "firstName": '=HYPERLINK("http://evil","x")',
                    "customFields": {"note": "+1-555"},
                }
            ],
        )
        result = await bulk.export(admin_ctx, fmt="csv")
        rows = list(csv.DictReader(io.StringIO(result.content)))
        assert len(rows) == 1
        assert rows[0]["email"] == "f@x.com"
        assert rows[0]["firstName"] == '\t=HYPERLINK("http://evil","x")'
        assert rows[0]["customFields.note"] == "\t+1-555"


class TestSanitizeCell:
    @pytest.mark.parametrize("value", ["=1+1", "+cmd", "-2", "@SUM(A1)"])
    def test_formula_prefixes(self, value):
        assert sanitize_csv_cell(value) == "\t" + value

    @pytest.mark.parametrize("value", ["plain", "", 5, None, True])
    def test_other_values_unchanged(self, value):
        assert sanitize_csv_cell(value) == value


class TestRoundTrip:
    async def test_export_feeds_import(self, runtime, bulk, admin_ctx):
        await bulk.import_users(admin_ctx, BATCH)
        exported = await bulk.export(admin_ctx)
        project, _ = runtime.projects.create_project(
            "Copy", settings=ProjectSettings(require_email_verification=False)
        )
        target = RequestContext(project=project, role="admin")
        result = await bulk.import_users(target, exported.users)
        assert result.imported == 2
        bob = runtime.store.find_by_email(project.id, "bob@x.com")
        assert bob.username == "bob"
        assert bob.is_verified is True
