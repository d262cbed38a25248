"""HS256 access/refresh token codec.

Access and refresh tokens are signed with separate secrets, so a token of one
kind can never verify as the other. Verification pins the algorithm, issuer,
audience, token type and expiry.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from gymauth.config import Settings
from gymauth.logging import get_logger
from gymauth.service.errors import TokenExpiredError, TokenInvalidError, TokenTypeError
from gymauth.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
_TOKEN_TYPES = (ACCESS, REFRESH)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime
    jti: str
    token_type: str


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _split(token: str) -> Optional[tuple[dict[str, Any], dict[str, Any], str, str]]:
    """Parse a compact JWT without checking anything. None when malformed."""
    if not isinstance(token, str):
        return None
    parts = token.split(".")
    if len(parts) != 3:
        return None
    header_b64, payload_b64, sig_b64 = parts
    try:
        header = json.loads(_decode_segment(header_b64))
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(header, dict) or not isinstance(payload, dict):
        return None
    return header, payload, f"{header_b64}.{payload_b64}", sig_b64


def extract_bearer(header_value: str | None) -> Optional[str]:
    """Return the token from ``Bearer <token>``; anything else yields None."""
    if not header_value:
        return None
    parts = header_value.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        return None
    return parts[1]


def get_token_expiration(token: str) -> Optional[datetime]:
    """Read ``exp`` without verifying the signature."""
    parsed = _split(token)
    if parsed is None:
        return None
    exp = parsed[1].get("exp")
    try:
        return datetime.fromtimestamp(float(exp), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def is_token_expired(token: str, *, now: datetime | None = None) -> bool:
    """True when ``exp`` has passed or the token cannot be read at all."""
    expires_at = get_token_expiration(token)
    if expires_at is None:
        return True
    return expires_at <= (now or datetime.now(timezone.utc))


class TokenCodec:
    def __init__(self, settings: Settings, *, clock: Callable[[], datetime] | None = None):
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._secrets = {
            ACCESS: settings.access_token_secret.encode("utf-8"),
            REFRESH: settings.refresh_token_secret.encode("utf-8"),
        }
        self._ttl = {
            ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
            REFRESH: timedelta(minutes=settings.refresh_token_ttl_minutes),
        }
        self._leeway = settings.jwt_leeway_seconds

    def create_access_token(self, user: User, session_id: str) -> IssuedToken:
        return self._issue(user, session_id, ACCESS)

    def create_refresh_token(self, user: User, session_id: str) -> IssuedToken:
        return self._issue(user, session_id, REFRESH)

    def verify_access_token(self, token: str) -> dict[str, Any]:
        return self._verify(token, ACCESS)

    def verify_refresh_token(self, token: str) -> dict[str, Any]:
        return self._verify(token, REFRESH)

    def _issue(self, user: User, session_id: str, token_type: str) -> IssuedToken:
        now = self._clock()
        expires_at = now + self._ttl[token_type]
        jti = secrets.token_hex(16)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": str(user.id),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": jti,
            "username": user.username,
            "role": user.role,
            "email": user.email,
            "session_id": session_id,
            "token_type": token_type,
        }
        return IssuedToken(
            token=self._encode(payload, token_type),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            jti=jti,
            token_type=token_type,
        )

    def _sign(self, signing_input: str, token_type: str) -> str:
        digest = hmac.new(
            self._secrets[token_type], signing_input.encode("utf-8"), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def _encode(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, token_type)}"

    def _verify(self, token: str, expected: str) -> dict[str, Any]:
        invalid = TokenInvalidError(f"Invalid {expected} token", token_type=expected)
        parsed = _split(token)
        if parsed is None:
            raise invalid
        header, payload, signing_input, signature = parsed
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise invalid

        # The signing key follows the declared type; a mismatch is only
        # reported as wrong-type once the signature proves the claim genuine.
        declared = payload.get("token_type")
        if declared not in _TOKEN_TYPES:
            raise invalid
        if not hmac.compare_digest(self._sign(signing_input, declared), signature):
            raise invalid

        if payload.get("iss") != self.settings.jwt_issuer:
            raise invalid
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise invalid

        if declared != expected:
            raise TokenTypeError("Invalid token type", token_type=expected)

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise invalid
        if exp_ts <= self._clock().timestamp() - self._leeway:
            raise TokenExpiredError(
                f"{expected.capitalize()} token expired", token_type=expected
            )
        if not payload.get("sub") or not payload.get("session_id"):
            raise invalid
        return payload


__all__ = [
    "ACCESS",
    "REFRESH",
    "IssuedToken",
    "TokenCodec",
    "extract_bearer",
    "get_token_expiration",
    "is_token_expired",
]
