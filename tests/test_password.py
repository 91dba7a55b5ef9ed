"""Tests for argon2 password hashing and strength checks."""

from argon2 import PasswordHasher

from vdid.auth.password import (
    NO_PASSWORD_MARKER,
    has_usable_password,
    hash_password,
    needs_rehash,
    validate_password_strength,
    verify_password,
)


class TestHashing:
    """Tests for hash_password / verify_password."""

    def test_hash_is_argon2id(self):
        h = hash_password("Correct-Horse-9")
        assert h.startswith("$argon2id$")
        assert "m=65536,t=3,p=4" in h

    def test_hashes_are_salted(self):
        assert hash_password("Correct-Horse-9") != hash_password("Correct-Horse-9")

    def test_verify_roundtrip(self):
        h = hash_password("Correct-Horse-9")
        assert verify_password("Correct-Horse-9", h) is True
        assert verify_password("correct-horse-9", h) is False

    def test_verify_never_raises_on_bad_hash(self):
        assert verify_password("x", "not-a-hash") is False
        assert verify_password("x", "") is False
        assert verify_password("x", None) is False

    def test_marker_never_verifies(self):
        assert verify_password(NO_PASSWORD_MARKER, NO_PASSWORD_MARKER) is False
        assert has_usable_password(NO_PASSWORD_MARKER) is False
        assert has_usable_password(None) is False
        assert has_usable_password(hash_password("Correct-Horse-9")) is True


class TestRehash:
    """Tests for needs_rehash."""

    def test_current_parameters(self):
        assert needs_rehash(hash_password("Correct-Horse-9")) is False

    def test_weaker_parameters(self):
        weak = PasswordHasher(time_cost=1, memory_cost=8192, parallelism=1).hash("Correct-Horse-9")
        assert needs_rehash(weak) is True
        assert verify_password("Correct-Horse-9", weak) is True

    def test_malformed_hash(self):
        assert needs_rehash("garbage") is False


class TestStrength:
    """Tests for validate_password_strength."""

    def test_strong_password(self):
        result = validate_password_strength("Str0ng!Passphrase")
        assert result.is_valid
        assert result.errors == []
        assert result.score == 100

    def test_short_password(self):
        result = validate_password_strength("Ab1!")
        assert not result.is_valid
        assert "Password must be at least 8 characters long" in result.errors

    def test_missing_classes(self):
        result = validate_password_strength("alllowercase")
        assert not result.is_valid
        assert "Password must contain at least one uppercase letter" in result.errors
        assert "Password must contain at least one number" in result.errors
        assert "Password must contain at least one special character" in result.errors

    def test_common_password_penalised(self):
        result = validate_password_strength("Password123!")
        assert not result.is_valid
        assert "Password is too common" in result.errors
        assert result.score < 70

    def test_score_bounds(self):
        assert validate_password_strength("").score == 0
        assert 0 <= validate_password_strength("aB3$aB3$aB3$aB3$aB3$").score <= 100
