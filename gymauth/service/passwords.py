"""Credential primitives: password hashing, strength rules and random tokens."""

from __future__ import annotations

import re
import secrets
import string
import unicodedata
from dataclasses import dataclass, field
from typing import List, Tuple

import bcrypt

from gymauth.logging import get_logger
from gymauth.service.errors import ValidationError

logger = get_logger(__name__)

BCRYPT_ROUNDS = 12
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"

_REPEATED_CHAR = re.compile(r"(.)\1{2,}")
_COMMON_SEQUENCE = re.compile(r"123456|654321|qwerty|password|admin", re.IGNORECASE)

COMPROMISED_PASSWORDS = frozenset(
    {
        "password",
        "123456",
        "123456789",
        "qwerty",
        "abc123",
        "password123",
        "password1!",
        "111111",
        "123123",
        "admin",
        "welcome",
        "monkey",
        "dragon",
        "master",
        "sunshine",
        "princess",
    }
)

_USERNAME_ALLOWED = re.compile(r"^[A-Za-z0-9_.-]+$")
_USERNAME_SEPARATORS = "._-"
_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9._%+-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
# Zero-width characters and bidi overrides that make identifiers look alike
_INVISIBLE_CHARACTERS = frozenset(
    ["\u200b", "\u200c", "\u200d", "\ufeff"]
    + [chr(c) for c in range(0x202A, 0x202F)]
    + [chr(c) for c in range(0x2066, 0x206A)]
)


@dataclass
class PasswordStrength:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    score: int = 0


# bcrypt reads at most 72 bytes; recent releases reject longer input outright
_BCRYPT_MAX_BYTES = 72


def _encode(plaintext: str) -> bytes:
    return plaintext.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plaintext: str, *, rounds: int = BCRYPT_ROUNDS) -> Tuple[str, str]:
    """Hash ``plaintext`` with bcrypt and return ``(hash, salt)``.

    The salt is generated per call and is also embedded in the hash; the
    separate value is the 29-character bcrypt salt prefix.
    """
    if not isinstance(plaintext, str) or not plaintext:
        raise ValidationError("Password is required")
    salt = bcrypt.gensalt(rounds=rounds)
    digest = bcrypt.hashpw(_encode(plaintext), salt)
    return digest.decode("utf-8"), salt.decode("utf-8")


def verify_password(plaintext: str, password_hash: str | None) -> bool:
    if not plaintext or not password_hash:
        return False
    try:
        return bcrypt.checkpw(_encode(plaintext), password_hash.encode("utf-8"))
    except ValueError as exc:
        logger.warning("password_hash_invalid", error=str(exc))
        return False


def _has_common_pattern(plaintext: str) -> Tuple[bool, bool]:
    return bool(_REPEATED_CHAR.search(plaintext)), bool(_COMMON_SEQUENCE.search(plaintext))


def validate_password_strength(plaintext: str) -> PasswordStrength:
    """Check ``plaintext`` against the password policy.

    Every failed rule contributes its own message so a client can show all
    of them at once. The score is advisory and never decides validity.
    """
    plaintext = plaintext or ""
    errors: List[str] = []
    if len(plaintext) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(plaintext) > MAX_PASSWORD_LENGTH:
        errors.append(f"Password must be less than {MAX_PASSWORD_LENGTH} characters")
    if not any(ch.isupper() for ch in plaintext):
        errors.append("Password must contain at least one uppercase letter")
    if not any(ch.islower() for ch in plaintext):
        errors.append("Password must contain at least one lowercase letter")
    if not any(ch.isdigit() for ch in plaintext):
        errors.append("Password must contain at least one number")
    if not any(ch in SPECIAL_CHARACTERS for ch in plaintext):
        errors.append("Password must contain at least one special character")
    repeated, common = _has_common_pattern(plaintext)
    if repeated or common:
        errors.append("Password contains common patterns and is not secure")
    if plaintext.lower() in COMPROMISED_PASSWORDS:
        errors.append("Password is too common")
    return PasswordStrength(
        is_valid=not errors, errors=errors, score=password_strength_score(plaintext)
    )


def password_strength_score(plaintext: str) -> int:
    if not plaintext:
        return 0
    length = len(plaintext)
    score = min(length * 2, 25)
    if any(ch.islower() for ch in plaintext):
        score += 5
    if any(ch.isupper() for ch in plaintext):
        score += 5
    if any(ch.isdigit() for ch in plaintext):
        score += 5
    if any(ch in SPECIAL_CHARACTERS for ch in plaintext):
        score += 10
    score += min(len(set(plaintext)) * 2, 25)
    repeated, common = _has_common_pattern(plaintext)
    if repeated:
        score -= 15
    if common:
        score -= 25
    if length > 12:
        score += min((length - 12) * 3, 25)
    return max(0, min(100, score))


def generate_session_id() -> str:
    """32 lowercase hex characters from 16 CSPRNG bytes."""
    return secrets.token_hex(16)


def generate_secure_token() -> str:
    """64 lowercase hex characters from 32 CSPRNG bytes."""
    return secrets.token_hex(32)


def generate_csrf_token() -> str:
    return secrets.token_hex(32)


def generate_secure_password(length: int = 16) -> str:
    """Random password that satisfies every character-class rule."""
    if length < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Generated passwords must be at least {MIN_PASSWORD_LENGTH} characters")
    classes = [string.ascii_lowercase, string.ascii_uppercase, string.digits, SPECIAL_CHARACTERS]
    alphabet = "".join(classes)
    while True:
        chars = [secrets.choice(group) for group in classes]
        chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
        secrets.SystemRandom().shuffle(chars)
        candidate = "".join(chars)
        # Random draws can still trip the repeated-character rule
        if validate_password_strength(candidate).is_valid:
            return candidate


def validate_username(username: str) -> List[str]:
    errors: List[str] = []
    username = (username or "").strip()
    if not 3 <= len(username) <= 30:
        errors.append("Username must be between 3 and 30 characters")
    if username and not _USERNAME_ALLOWED.match(username):
        errors.append("Username can only contain letters, numbers, dots, hyphens, and underscores")
    if username and (username[0] in _USERNAME_SEPARATORS or username[-1] in _USERNAME_SEPARATORS):
        errors.append("Username cannot start or end with special characters")
    if re.search(r"[._-]{2,}", username):
        errors.append("Username cannot contain consecutive special characters")
    return errors


def normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    cleaned = "".join(c for c in value if c not in _INVISIBLE_CHARACTERS)
    return unicodedata.normalize("NFKC", cleaned)


def normalize_email(email: str) -> str:
    """Trimmed, lower-cased ``local@domain.tld``; anything else is a ValidationError."""
    value = normalize_unicode((email or "").strip().lower())
    local, sep, domain = value.partition("@")
    labels = domain.split(".")
    valid = (
        len(value) <= 254
        and bool(sep and local and domain)
        and len(local) <= 64
        and _EMAIL_LOCAL_PART.match(local) is not None
        and len(labels) >= 2
        and len(labels[-1]) >= 2
        and all(len(label) <= 63 and _EMAIL_DOMAIN_LABEL.match(label) for label in labels)
    )
    if not valid:
        raise ValidationError("Invalid email format", detail={"field": "email"})
    return value


__all__ = [
    "BCRYPT_ROUNDS",
    "PasswordStrength",
    "hash_password",
    "verify_password",
    "validate_password_strength",
    "password_strength_score",
    "generate_session_id",
    "generate_secure_token",
    "generate_csrf_token",
    "generate_secure_password",
    "validate_username",
    "normalize_unicode",
    "normalize_email",
]
