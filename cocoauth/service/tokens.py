"""Signed, expiring tokens for access and refresh.

Tokens are compact HS256 JWS strings. The claim set is
``{sub, userId, fcmToken, jti, iat, exp}`` where ``sub`` is the token kind.
Parsing distinguishes why a token was rejected, since callers treat an
expired token differently from a tampered one.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from cocoauth.logging import get_logger

logger = get_logger(__name__)

_ALGORITHM = "HS256"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenError(Exception):
    """Base class for token parsing failures."""

    reason = "invalid_token"


class MalformedTokenError(TokenError):
    """Not three base64url segments carrying JSON objects."""

    reason = "malformed"


class BadSignatureError(TokenError):
    reason = "bad_signature"


class TokenExpiredError(TokenError):
    reason = "expired"


class UnsupportedTokenError(TokenError):
    """Unexpected algorithm, claim shape, or token kind."""

    reason = "unsupported"


@dataclass(frozen=True)
class TokenPayload:
    kind: TokenKind
    user_id: str
    fcm_token: Optional[str]
    issued_at: datetime
    expires_at: datetime
    token_id: Optional[str] = None


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode((segment + padding).encode("ascii"))


def _decode_json_segment(segment: str) -> dict[str, Any]:
    try:
        decoded = json.loads(_decode_segment(segment))
    except (binascii.Error, ValueError, UnicodeError) as exc:
        raise MalformedTokenError("token segment is not base64url JSON") from exc
    if not isinstance(decoded, dict):
        raise MalformedTokenError("token segment is not a JSON object")
    return decoded


class TokenCodec:
    """Issue and parse HS256 tokens with independent access/refresh lifetimes."""

    def __init__(
        self,
        secret: str,
        *,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        if refresh_ttl_seconds <= access_ttl_seconds:
            raise ValueError("refresh token TTL must be longer than access token TTL")
        self._key = secret.encode()
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self._clock = clock

    def ttl_for(self, kind: TokenKind) -> int:
        if TokenKind(kind) is TokenKind.ACCESS:
            return self.access_ttl_seconds
        return self.refresh_ttl_seconds

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def issue(
        self,
        kind: TokenKind,
        user_id: str,
        fcm_token: Optional[str],
        ttl_seconds: Optional[int] = None,
    ) -> str:
        kind = TokenKind(kind)
        now = int(self._clock())
        ttl = self.ttl_for(kind) if ttl_seconds is None else int(ttl_seconds)
        claims = {
            "sub": kind.value,
            "userId": user_id,
            "fcmToken": fcm_token,
            # Nonce so two tokens minted in the same second never collide
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + ttl,
        }
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def parse(
        self,
        token: str,
        *,
        expected_kind: Optional[TokenKind] = None,
        verify_expiry: bool = True,
    ) -> TokenPayload:
        """Verify ``token`` and return its payload.

        Raises:
            MalformedTokenError: structurally invalid
            UnsupportedTokenError: wrong algorithm, claims shape or kind
            BadSignatureError: signature does not match
            TokenExpiredError: ``exp`` is in the past (when ``verify_expiry``)
        """
        if not isinstance(token, str) or not token:
            raise MalformedTokenError("token is empty")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise MalformedTokenError("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts

        header = _decode_json_segment(header_b64)
        # Reject anything but HS256 to prevent algorithm confusion
        if header.get("alg") != _ALGORITHM:
            raise UnsupportedTokenError(f"unsupported algorithm: {header.get('alg')!r}")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            raise BadSignatureError("token signature mismatch")

        claims = _decode_json_segment(payload_b64)
        payload = self._payload_from_claims(claims)
        if expected_kind is not None and payload.kind is not TokenKind(expected_kind):
            raise UnsupportedTokenError(
                f"expected {TokenKind(expected_kind).value} token, got {payload.kind.value}"
            )
        if verify_expiry and payload.expires_at.timestamp() <= self._clock():
            raise TokenExpiredError("token has expired")
        return payload

    @staticmethod
    def _payload_from_claims(claims: dict[str, Any]) -> TokenPayload:
        try:
            kind = TokenKind(claims.get("sub"))
        except ValueError as exc:
            raise UnsupportedTokenError("unknown token subject") from exc
        user_id = claims.get("userId")
        fcm_token = claims.get("fcmToken")
        iat = claims.get("iat")
        exp = claims.get("exp")
        if not isinstance(user_id, str) or not user_id:
            raise UnsupportedTokenError("userId claim missing")
        if fcm_token is not None and not isinstance(fcm_token, str):
            raise UnsupportedTokenError("fcmToken claim must be a string")
        for name, value in (("iat", iat), ("exp", exp)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise UnsupportedTokenError(f"{name} claim must be numeric")
        jti = claims.get("jti")
        return TokenPayload(
            kind=kind,
            user_id=user_id,
            fcm_token=fcm_token,
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            token_id=jti if isinstance(jti, str) else None,
        )


def log_token_rejection(event: str, exc: TokenError, **fields: Any) -> None:
    """Token rejections are frequent and not actionable; keep them at warning."""
    logger.warning(event, reason=exc.reason, error=str(exc), **fields)
