"""Unit tests for credential primitives.

Tests for:
- bcrypt hashing and verification
- Password strength rules and score
- Random token and password generation
- Username and email validation
"""

import re

import pytest

from gymauth.service.errors import ValidationError
from gymauth.service.passwords import (
    generate_csrf_token,
    generate_secure_password,
    generate_secure_token,
    generate_session_id,
    hash_password,
    normalize_email,
    normalize_unicode,
    password_strength_score,
    validate_password_strength,
    validate_username,
    verify_password,
)

_HEX64 = re.compile(r"^[0-9a-f]{64}$")


class TestPasswordHashing:
    def test_hash_verifies_and_is_not_plaintext(self):
        password_hash, salt = hash_password("Gym!Strong7Pass", rounds=4)

        assert password_hash != "Gym!Strong7Pass"
        assert password_hash.startswith("$2")
        assert password_hash.startswith(salt)
        assert verify_password("Gym!Strong7Pass", password_hash)
        assert not verify_password("gym!strong7pass", password_hash)

    def test_same_password_produces_different_hashes(self):
        first, _ = hash_password("Gym!Strong7Pass", rounds=4)
        second, _ = hash_password("Gym!Strong7Pass", rounds=4)
        assert first != second

    def test_default_cost_is_twelve(self):
        password_hash, _ = hash_password("Gym!Strong7Pass")
        assert password_hash.split("$")[2] == "12"

    def test_empty_password_cannot_be_hashed(self):
        with pytest.raises(ValidationError):
            hash_password("")

    def test_verify_rejects_empty_and_malformed_input(self):
        password_hash, _ = hash_password("Gym!Strong7Pass", rounds=4)
        assert verify_password("", password_hash) is False
        assert verify_password("Gym!Strong7Pass", None) is False
        assert verify_password("Gym!Strong7Pass", "not-a-bcrypt-hash") is False

    def test_long_passwords_are_accepted(self):
        long_password = "Aa1!" + "x" * 120
        password_hash, _ = hash_password(long_password, rounds=4)
        assert verify_password(long_password, password_hash)


class TestPasswordStrength:
    def test_strong_password_passes(self):
        result = validate_password_strength("Gym!Strong7Pass")
        assert result.is_valid
        assert result.errors == []
        assert result.score > 50

    def test_each_failed_rule_is_reported(self):
        result = validate_password_strength("abc")
        assert not result.is_valid
        assert "Password must be at least 8 characters long" in result.errors
        assert "Password must contain at least one uppercase letter" in result.errors
        assert "Password must contain at least one number" in result.errors
        assert "Password must contain at least one special character" in result.errors

    @pytest.mark.parametrize(
        "password, expected_error",
        [
            ("short", "Password must be at least 8 characters long"),
            ("nouppercase123!", "Password must contain at least one uppercase letter"),
            ("NOLOWERCASE123!", "Password must contain at least one lowercase letter"),
            ("NoNumbers!", "Password must contain at least one number"),
            ("NoSpecialChar123", "Password must contain at least one special character"),
        ],
    )
    def test_weak_samples_fail_with_matching_error(self, password, expected_error):
        result = validate_password_strength(password)
        assert result.is_valid is False
        assert expected_error in result.errors

    @pytest.mark.parametrize("password", ["TestPass123!", "MyP@ssw0rd"])
    def test_strong_samples_pass(self, password):
        result = validate_password_strength(password)
        assert result.is_valid is True
        assert result.errors == []

    def test_too_long(self):
        result = validate_password_strength("Aa1!" + "b" * 130)
        assert "Password must be less than 128 characters" in result.errors

    def test_common_patterns_rejected(self):
        assert "Password contains common patterns and is not secure" in (
            validate_password_strength("Qwerty!99Zz").errors
        )
        assert "Password contains common patterns and is not secure" in (
            validate_password_strength("Baaa!9xyzW").errors
        )

    def test_common_password_rejected(self):
        result = validate_password_strength("Password1!")
        assert "Password is too common" in result.errors

    def test_score_bounds(self):
        assert password_strength_score("") == 0
        assert 0 <= password_strength_score("aaaaaa") <= 100
        assert password_strength_score("Xk9!vR2#mQ7$wL4@zT") <= 100
        assert password_strength_score("Xk9!vR2#mQ7$wL4@zT") > password_strength_score("Xk9!vR2#")


class TestTokens:
    def test_token_shapes(self):
        assert re.fullmatch(r"[0-9a-f]{32}", generate_session_id())
        assert _HEX64.match(generate_secure_token())
        assert _HEX64.match(generate_csrf_token())

    def test_tokens_are_unique(self):
        tokens = {generate_secure_token() for _ in range(100)}
        assert len(tokens) == 100

    def test_generated_password_is_valid(self):
        for _ in range(20):
            password = generate_secure_password()
            assert len(password) == 16
            assert validate_password_strength(password).is_valid

    def test_generated_password_minimum_length(self):
        with pytest.raises(ValidationError):
            generate_secure_password(4)


class TestIdentityValidation:
    @pytest.mark.parametrize("username", ["jdoe", "j.doe", "coach_mike", "a-b-c"])
    def test_valid_usernames(self, username):
        assert validate_username(username) == []

    def test_invalid_usernames(self):
        assert "Username must be between 3 and 30 characters" in validate_username("ab")
        assert validate_username("john doe")
        assert "Username cannot start or end with special characters" in validate_username(".jdoe")
        assert "Username cannot contain consecutive special characters" in validate_username("j..doe")

    def test_normalize_email(self):
        assert normalize_email("  JDoe@Example.COM ") == "jdoe@example.com"
        with pytest.raises(ValidationError):
            normalize_email("not-an-email")

    def test_normalize_email_drops_invisible_characters(self):
        assert normalize_email("jdoe\u200b@example.com") == "jdoe@example.com"
        assert normalize_unicode("ｊｄｏｅ") == "jdoe"

    @pytest.mark.parametrize(
        "email",
        ["jdoe@example", "jdoe@-gym.com", "j doe@example.com", "@example.com", "a" * 65 + "@example.com"],
    )
    def test_normalize_email_rejects_malformed(self, email):
        with pytest.raises(ValidationError) as excinfo:
            normalize_email(email)
        assert excinfo.value.detail == {"field": "email"}
