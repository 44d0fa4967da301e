"""Tests for single-use email verification and password reset tokens."""

import time
from datetime import timedelta

import pytest

from projectauth.service.errors import (
    InvalidTokenError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    TransientError,
)
from projectauth.service.side_channel import SideChannelTokenManager
from projectauth.storage.common import hash_token
from projectauth.storage.memory import MemoryStore
from projectauth.storage.models import TokenPurpose


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def manager(settings, store):
    return SideChannelTokenManager(settings, store)


class TestIssue:
    def test_token_is_stored_hashed(self, manager, store):
        token = manager.issue("proj-1", "user-1", TokenPurpose.VERIFY_EMAIL)
        assert len(token) == 64
        assert token not in store.side_channel_tokens
        assert hash_token(token) in store.side_channel_tokens

    def test_default_lifetimes(self, manager):
        assert manager.default_ttl(TokenPurpose.VERIFY_EMAIL) == timedelta(hours=24)
        assert manager.default_ttl(TokenPurpose.RESET_PASSWORD) == timedelta(hours=1)

    def test_new_token_invalidates_previous(self, manager):
        first = manager.issue("proj-1", "user-1", TokenPurpose.RESET_PASSWORD)
        second = manager.issue("proj-1", "user-1", TokenPurpose.RESET_PASSWORD)
        with pytest.raises(TokenAlreadyUsedError):
            manager.redeem(first, TokenPurpose.RESET_PASSWORD, project_id="proj-1")
        assert manager.redeem(second, TokenPurpose.RESET_PASSWORD, project_id="proj-1") == "user-1"

    def test_other_purpose_left_alone(self, manager):
        verify = manager.issue("proj-1", "user-1", TokenPurpose.VERIFY_EMAIL)
        manager.issue("proj-1", "user-1", TokenPurpose.RESET_PASSWORD)
        assert manager.redeem(verify, TokenPurpose.VERIFY_EMAIL, project_id="proj-1") == "user-1"


class TestRedeem:
    """Redemption checks purpose, project, use and expiry."""

    def test_redeem_once(self, manager):
        token = manager.issue("proj-1", "user-1", TokenPurpose.VERIFY_EMAIL)
        assert manager.redeem(token, TokenPurpose.VERIFY_EMAIL, project_id="proj-1") == "user-1"
        with pytest.raises(TokenAlreadyUsedError):
            manager.redeem(token, TokenPurpose.VERIFY_EMAIL, project_id="proj-1")

    def test_wrong_purpose_is_invalid(self, manager):
        token = manager.issue("proj-1", "user-1", TokenPurpose.VERIFY_EMAIL)
        with pytest.raises(InvalidTokenError):
            manager.redeem(token, TokenPurpose.RESET_PASSWORD, project_id="proj-1")
        # A rejected attempt does not burn the token
        assert manager.redeem(token, TokenPurpose.VERIFY_EMAIL, project_id="proj-1") == "user-1"

    def test_wrong_project_is_invalid(self, manager):
        token = manager.issue("proj-1", "user-1", TokenPurpose.VERIFY_EMAIL)
        with pytest.raises(InvalidTokenError):
            manager.redeem(token, TokenPurpose.VERIFY_EMAIL, project_id="proj-2")

    def test_unknown_token_is_invalid(self, manager):
        with pytest.raises(InvalidTokenError):
            manager.redeem("0" * 64, TokenPurpose.VERIFY_EMAIL, project_id="proj-1")
        with pytest.raises(InvalidTokenError):
            manager.redeem("", TokenPurpose.VERIFY_EMAIL, project_id="proj-1")

    def test_expired_token(self, manager):
        token = manager.issue(
            "proj-1", "user-1", TokenPurpose.RESET_PASSWORD, ttl=timedelta(seconds=-1)
        )
        with pytest.raises(TokenExpiredError):
            manager.redeem(token, TokenPurpose.RESET_PASSWORD, project_id="proj-1")

    def test_apply_runs_with_user_id(self, manager):
        token = manager.issue("proj-1", "user-1", TokenPurpose.VERIFY_EMAIL)
        seen = []
        manager.redeem(token, TokenPurpose.VERIFY_EMAIL, project_id="proj-1", apply=seen.append)
        assert seen == ["user-1"]

    def test_failed_apply_releases_token(self, manager, store):
        token = manager.issue("proj-1", "user-1", TokenPurpose.RESET_PASSWORD)

        def broken(user_id):
            raise RuntimeError("write failed")

        with pytest.raises(RuntimeError):
            manager.redeem(token, TokenPurpose.RESET_PASSWORD, project_id="proj-1", apply=broken)
        assert store.get_side_channel_token(hash_token(token)).used is False
        assert manager.redeem(token, TokenPurpose.RESET_PASSWORD, project_id="proj-1") == "user-1"

    def test_lost_claim_is_already_used(self, manager, store, monkeypatch):
        token = manager.issue("proj-1", "user-1", TokenPurpose.VERIFY_EMAIL)
        monkeypatch.setattr(store, "claim_side_channel_token", lambda *a, **k: False)
        with pytest.raises(TokenAlreadyUsedError):
            manager.redeem(token, TokenPurpose.VERIFY_EMAIL, project_id="proj-1")

    def test_past_deadline_claims_nothing(self, manager, store):
        token = manager.issue("proj-1", "user-1", TokenPurpose.RESET_PASSWORD)
        applied = []
        with pytest.raises(TransientError):
            manager.redeem(
                token,
                TokenPurpose.RESET_PASSWORD,
                project_id="proj-1",
                apply=applied.append,
                deadline=time.monotonic() - 1,
            )
        assert applied == []
        assert store.get_side_channel_token(hash_token(token)).used is False
        assert manager.redeem(token, TokenPurpose.RESET_PASSWORD, project_id="proj-1") == "user-1"
