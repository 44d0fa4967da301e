"""Tests for the in-memory user and token store."""

from datetime import timedelta

import pytest

from projectauth.storage.errors import ConstraintViolation
from projectauth.storage.memory import MemoryStore
from projectauth.storage.models import (
    RefreshTokenRecord,
    SideChannelTokenRecord,
    TokenPurpose,
    UserRecord,
    UserStatus,
    utcnow,
)


@pytest.fixture
def store():
    return MemoryStore()


def _user(email, project_id="p1", **profile):
    return UserRecord.new(project_id, email, "hash", **profile)


class TestUserUniqueness:
    """Email and username uniqueness per project."""

    def test_email_is_case_insensitive(self, store):
        store.create(_user("Alice@Example.com"))
        with pytest.raises(ConstraintViolation):
            store.create(_user("alice@example.COM"))
        assert store.find_by_email("p1", "ALICE@example.com").email == "alice@example.com"

    def test_same_email_in_other_project(self, store):
        store.create(_user("alice@example.com"))
        store.create(_user("alice@example.com", project_id="p2"))
        assert store.find_by_email("p2", "alice@example.com").project_id == "p2"

    def test_missing_usernames_do_not_collide(self, store):
        store.create(_user("a@example.com"))
        store.create(_user("b@example.com", username=None))
        store.create(_user("c@example.com", username="   "))
        assert store.find_by_username("p1", "") is None

    def test_duplicate_username_rejected(self, store):
        store.create(_user("a@example.com", username="alice"))
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create(_user("b@example.com", username="alice"))
        assert excinfo.value.detail == {"field": "username"}

    def test_update_to_taken_email_rejected(self, store):
        store.create(_user("a@example.com"))
        b = store.create(_user("b@example.com"))
        with pytest.raises(ConstraintViolation):
            store.update("p1", b.id, {"email": "A@example.com"})

    def test_update_reindexes_username(self, store):
        user = store.create(_user("a@example.com", username="old"))
        store.update("p1", user.id, {"username": "new"})
        assert store.find_by_username("p1", "old") is None
        assert store.find_by_username("p1", "new").id == user.id

    def test_unknown_patch_field_rejected(self, store):
        user = store.create(_user("a@example.com"))
        with pytest.raises(ValueError):
            store.update("p1", user.id, {"id": "other"})
        with pytest.raises(ValueError):
            store.update("p1", user.id, {"favourite_colour": "blue"})

    def test_reads_are_copies(self, store):
        user = store.create(_user("a@example.com"))
        loaded = store.find_by_id("p1", user.id)
        loaded.is_verified = True
        assert store.find_by_id("p1", user.id).is_verified is False

    def test_cross_project_lookup_misses(self, store):
        user = store.create(_user("a@example.com"))
        assert store.find_by_id("p2", user.id) is None
        assert store.update("p2", user.id, {"bio": "x"}) is None


class TestListing:
    def test_pagination_and_search(self, store):
        for i in range(5):
            store.create(_user(f"user{i}@example.com", first_name="Sam" if i % 2 else "Kim"))
        page = store.list("p1", page=2, limit=2)
        assert page.total == 5
        assert page.pages == 3
        assert len(page.users) == 2
        assert store.list("p1", search="sam").total == 2

    def test_status_filters(self, store):
        a = store.create(_user("a@example.com", is_verified=True))
        b = store.create(_user("b@example.com"))
        store.soft_delete("p1", b.id)
        assert [u.id for u in store.list("p1").users] == [a.id]
        assert [u.id for u in store.list("p1", status=UserStatus.DELETED).users] == [b.id]
        assert store.list("p1", status=UserStatus.UNVERIFIED).total == 0

    def test_iter_users_date_range(self, store):
        old = _user("old@example.com")
        old.created_at = utcnow() - timedelta(days=10)
        store.create(old)
        store.create(_user("new@example.com"))
        recent = store.iter_users("p1", created_from=utcnow() - timedelta(days=1))
        assert [u.email for u in recent] == ["new@example.com"]


class TestTokenState:
    def test_consume_is_compare_and_set(self, store):
        record = RefreshTokenRecord.new("h1", "p1", "u1", 60)
        store.save_refresh_token(record)
        assert store.consume_refresh_token("h1", replaced_by="r2") is True
        assert store.consume_refresh_token("h1") is False
        assert store.get_refresh_token("h1").replaced_by == "r2"

    def test_duplicate_token_hash_rejected(self, store):
        store.save_refresh_token(RefreshTokenRecord.new("h1", "p1", "u1", 60))
        with pytest.raises(ConstraintViolation):
            store.save_refresh_token(RefreshTokenRecord.new("h1", "p1", "u1", 60))

    def test_claim_and_release(self, store):
        store.save_side_channel_token(
            SideChannelTokenRecord(
                token_hash="s1",
                project_id="p1",
                user_id="u1",
                purpose=TokenPurpose.VERIFY_EMAIL,
                expires_at=utcnow() + timedelta(hours=1),
            )
        )
        assert store.claim_side_channel_token("s1", utcnow()) is True
        assert store.claim_side_channel_token("s1", utcnow()) is False
        store.release_side_channel_token("s1")
        assert store.claim_side_channel_token("s1", utcnow()) is True

    def test_purge_expired(self, store):
        expired = RefreshTokenRecord.new("h1", "p1", "u1", 60)
        expired.expires_at = utcnow() - timedelta(seconds=1)
        store.save_refresh_token(expired)
        store.save_refresh_token(RefreshTokenRecord.new("h2", "p1", "u1", 60))
        assert store.purge_expired_tokens() == 1
        assert store.get_refresh_token("h1") is None
        assert store.get_refresh_token("h2") is not None

    def test_expired_side_channel_kept_through_grace(self, store):
        for token_hash, age in (("recent", timedelta(hours=1)), ("stale", timedelta(hours=25))):
            store.save_side_channel_token(
                SideChannelTokenRecord(
                    token_hash=token_hash,
                    project_id="p1",
                    user_id="u1",
                    purpose=TokenPurpose.RESET_PASSWORD,
                    expires_at=utcnow() - age,
                )
            )
        assert store.purge_expired_tokens() == 1
        assert store.get_side_channel_token("recent") is not None
        assert store.get_side_channel_token("stale") is None

    def test_saves_sweep_expired_records(self):
        store = MemoryStore(purge_interval_seconds=0)
        expired = RefreshTokenRecord.new("h1", "p1", "u1", 60)
        expired.expires_at = utcnow() - timedelta(seconds=1)
        store.save_refresh_token(expired)
        store.save_refresh_token(RefreshTokenRecord.new("h2", "p1", "u1", 60))
        assert list(store.refresh_tokens) == ["h2"]

    def test_sweep_is_throttled(self, store):
        expired = RefreshTokenRecord.new("h1", "p1", "u1", 60)
        expired.expires_at = utcnow() - timedelta(seconds=1)
        store.save_refresh_token(expired)
        store.save_refresh_token(RefreshTokenRecord.new("h2", "p1", "u1", 60))
        assert store.get_refresh_token("h1") is not None
