"""Password hashing and strength checks.

Uses argon2id with OWASP-recommended parameters: 64 MiB memory, 3 passes,
4 lanes, 32-byte output. Each hash embeds its own random salt, so hashing
the same password twice yields different strings.
"""

import logging
import re
from dataclasses import dataclass, field

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

log = logging.getLogger(__name__)

ARGON2_MEMORY_COST = 65536  # KiB
ARGON2_TIME_COST = 3
ARGON2_PARALLELISM = 4
ARGON2_HASH_LENGTH = 32

# Stored in place of a hash for accounts created without a password
NO_PASSWORD_MARKER = "WALLET_AUTH_NO_PASSWORD"

COMMON_PASSWORDS = (
    "password", "123456", "qwerty", "abc123", "password123",
    "admin", "letmein", "welcome", "monkey", "dragon",
)

_SPECIAL_CHARS = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")

_hasher = PasswordHasher(
    time_cost=ARGON2_TIME_COST,
    memory_cost=ARGON2_MEMORY_COST,
    parallelism=ARGON2_PARALLELISM,
    hash_len=ARGON2_HASH_LENGTH,
    type=Type.ID,
)


@dataclass
class PasswordStrength:
    """Result of validate_password_strength()."""

    is_valid: bool
    errors: list[str] = field(default_factory=list)
    score: int = 0


def hash_password(password: str) -> str:
    """Hash a password with argon2id."""
    return _hasher.hash(password)


def verify_password(password: str, password_hash: str | None) -> bool:
    """Check a candidate password against a stored hash.

    Returns False for missing, marker or malformed hashes instead of raising.
    """
    if not password_hash or password_hash == NO_PASSWORD_MARKER:
        return False
    try:
        return _hasher.verify(password_hash, password)
    except VerifyMismatchError:
        return False
    except (InvalidHashError, VerificationError) as e:
        log.warning(f"Password verification error: {e}")
        return False


def needs_rehash(password_hash: str) -> bool:
    """True when the stored hash was made with different parameters."""
    try:
        return _hasher.check_needs_rehash(password_hash)
    except InvalidHashError:
        return False


def has_usable_password(password_hash: str | None) -> bool:
    return bool(password_hash) and password_hash != NO_PASSWORD_MARKER


def validate_password_strength(password: str) -> PasswordStrength:
    """Score a password 0-100 and list the rules it violates."""
    errors: list[str] = []
    score = 0

    if len(password) < 8:
        errors.append("Password must be at least 8 characters long")
    else:
        score += 20
        if len(password) >= 12:
            score += 10
        if len(password) >= 16:
            score += 10

    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    else:
        score += 15

    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    else:
        score += 15

    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number")
    else:
        score += 15

    if not _SPECIAL_CHARS.search(password):
        errors.append("Password must contain at least one special character")
    else:
        score += 15

    lowered = password.lower()
    if any(common in lowered for common in COMMON_PASSWORDS):
        errors.append("Password is too common")
        score = max(0, score - 30)

    return PasswordStrength(is_valid=not errors, errors=errors, score=min(100, score))
