from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from projectauth.config import Settings
from projectauth.logging import get_logger
from projectauth.storage.models import ProjectSettings

logger = get_logger(__name__)

# $2b$<rounds>$<32 hex chars of salt><128 hex chars of PBKDF2-SHA512 output>
_LEGACY_PATTERN = re.compile(r"^\$2b\$(\d+)\$([0-9a-f]{32})([0-9a-f]{128})$")
_LEGACY_ITERATIONS = 10_000
_LEGACY_KEY_BYTES = 64

_SPECIAL_CHARS = re.compile(r"[^A-Za-z0-9]")


class PasswordService:
    """Argon2id password hashing with read-only support for legacy PBKDF2 hashes."""

    def __init__(self, settings: Settings) -> None:
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_time_cost,
            memory_cost=settings.password_memory_cost,
            parallelism=settings.password_parallelism,
            type=Type.ID,
        )
        # Verified against when no account matches, so both paths pay for a KDF run
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    def hash(self, plaintext: str) -> str:
        return self._pwd_hasher.hash(plaintext)

    def verify(self, plaintext: str, encoded: Optional[str]) -> bool:
        """Check a password against an encoded hash; malformed input is a mismatch."""
        if not encoded or plaintext is None:
            return False
        if encoded.startswith("$argon2"):
            try:
                return self._pwd_hasher.verify(encoded, plaintext)
            except VerifyMismatchError:
                return False
            except (InvalidHash, VerificationError):
                self.logger.warning("password_hash_invalid", scheme="argon2")
                return False
        legacy = _LEGACY_PATTERN.match(encoded)
        if legacy:
            return self._verify_legacy(plaintext, legacy.group(2), legacy.group(3))
        self.logger.warning("password_hash_unrecognized", hash_prefix=encoded[:4])
        return False

    def _verify_legacy(self, plaintext: str, salt: str, expected_hex: str) -> bool:
        # The stored rounds value was never fed to the derivation
        derived = hashlib.pbkdf2_hmac(
            "sha512",
            plaintext.encode("utf-8"),
            salt.encode("utf-8"),
            _LEGACY_ITERATIONS,
            dklen=_LEGACY_KEY_BYTES,
        )
        return hmac.compare_digest(derived.hex(), expected_hex)

    def recognizes(self, encoded: Optional[str]) -> bool:
        """True when ``encoded`` is a hash format this service can verify."""
        if not encoded:
            return False
        if _LEGACY_PATTERN.match(encoded):
            return True
        if not encoded.startswith("$argon2"):
            return False
        try:
            self._pwd_hasher.check_needs_rehash(encoded)
        except (InvalidHash, ValueError):
            return False
        return True

    def needs_rehash(self, encoded: str) -> bool:
        if _LEGACY_PATTERN.match(encoded or ""):
            return True
        try:
            return self._pwd_hasher.check_needs_rehash(encoded)
        except (InvalidHash, ValueError):
            return True

    def dummy_verify(self, plaintext: str) -> None:
        self.verify(plaintext or "", self._dummy_hash)


def generate_unusable_password() -> str:
    """Random secret nobody knows; the account must go through a reset to log in."""
    return secrets.token_urlsafe(32)


def password_policy_violations(password: str, policy: ProjectSettings) -> List[str]:
    problems: List[str] = []
    if not password:
        return ["password is required"]
    if len(password) < policy.min_password_length:
        problems.append(
            f"password must be at least {policy.min_password_length} characters long"
        )
    if policy.require_uppercase and not any(c.isupper() for c in password):
        problems.append("password must contain an uppercase letter")
    if policy.require_lowercase and not any(c.islower() for c in password):
        problems.append("password must contain a lowercase letter")
    if policy.require_numbers and not any(c.isdigit() for c in password):
        problems.append("password must contain a number")
    if policy.require_special_chars and not _SPECIAL_CHARS.search(password):
        problems.append("password must contain a special character")
    return problems
