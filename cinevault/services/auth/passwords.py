from __future__ import annotations

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError


_hasher = PasswordHasher()
# Verified against when the email is unknown so both failure paths cost the same.
_DUMMY_HASH = _hasher.hash("cinevault-timing-equalizer")


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_password(password: str, password_hash: str | None) -> bool:
    # Always run one argon2 verification, even without a stored hash.
    target = password_hash or _DUMMY_HASH
    try:
        matched = _hasher.verify(target, password)
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False
    return matched and password_hash is not None


def needs_rehash(password_hash: str) -> bool:
    # Upgrade stored hashes transparently when argon2 parameters change.
    return _hasher.check_needs_rehash(password_hash)
