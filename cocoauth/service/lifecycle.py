"""Session and token lifecycle flows.

Every flow receives the caller's headers and client description as
arguments and returns a ``FlowResult``. Soft outcomes (bad credentials,
missing or stale tokens) are results; infrastructure failures raise a
``ServiceError`` subclass.
"""

from __future__ import annotations

import asyncio
import hmac
import secrets
import string
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from cocoauth.config import Settings
from cocoauth.logging import get_logger
from cocoauth.service.coordinator import DeviceCoordinator
from cocoauth.service.credentials import CredentialVerifier
from cocoauth.service.email import EmailService
from cocoauth.service.errors import MailDeliveryError, PersistenceError, ServiceError
from cocoauth.service.tokens import (
    TokenCodec,
    TokenError,
    TokenKind,
    TokenPayload,
    log_token_rejection,
)
from cocoauth.storage.common import SessionStore, UserStore, VerificationCodeStore
from cocoauth.storage.models import ClientInfo, User

EMAIL_CODE_LENGTH = 10
_CODE_ALPHABET = string.ascii_letters + string.digits


class Outcome(str, Enum):
    SUCCESS = "SUCCESS"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    UNAUTHORIZED = "UNAUTHORIZED"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class EmailCodeIssued:
    expires_at: datetime


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool


@dataclass(frozen=True)
class FlowResult:
    outcome: Outcome
    data: Any = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @classmethod
    def success(cls, data: Any = None) -> "FlowResult":
        return cls(Outcome.SUCCESS, data)

    @classmethod
    def unauthorized(cls) -> "FlowResult":
        return cls(Outcome.UNAUTHORIZED)


def generate_email_code(length: int = EMAIL_CODE_LENGTH) -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


class SessionLifecycleManager:
    """Sign-in, sign-out, reissue, email verification and last-device checks.

    Holds no per-request state; all session state lives in the stores, so
    several instances can serve the same users concurrently.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        users: UserStore,
        sessions: SessionStore,
        codes: VerificationCodeStore,
        coordinator: DeviceCoordinator,
        email_service: EmailService,
        verifier: Optional[CredentialVerifier] = None,
        codec: Optional[TokenCodec] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.users = users
        self.sessions = sessions
        self.codes = codes
        self.coordinator = coordinator
        self.email_service = email_service
        self.verifier = verifier or CredentialVerifier(users)
        self.codec = codec or TokenCodec(
            settings.jwt_secret,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            clock=clock,
        )
        self._clock = clock
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _issue_pair(self, user_id: str, fcm_token: Optional[str]) -> TokenPair:
        return TokenPair(
            access_token=self.codec.issue(TokenKind.ACCESS, user_id, fcm_token),
            refresh_token=self.codec.issue(TokenKind.REFRESH, user_id, fcm_token),
        )

    async def sign_in(
        self,
        client: ClientInfo,
        login_id: str,
        password: str,
        fcm_token: Optional[str] = None,
    ) -> FlowResult:
        """Authenticate and start a session for ``client.client_type``.

        Both coordination calls must succeed before the refresh token is
        stored, so a coordination failure never leaves a session behind
        that the chat service was not told about. The session write is the
        last step that can fail.
        """
        user = self.verifier.verify(login_id, password)
        if user is None:
            return FlowResult(Outcome.INVALID_CREDENTIALS)

        pair = self._issue_pair(user.id, fcm_token)
        self._stamp_login(user)
        await self.coordinator.notify_fcm_token_changed(user.id, fcm_token, client)
        await self.coordinator.notify_other_devices_evicted(
            user.id, fcm_token, client.client_type, pair.access_token
        )
        await self.sessions.put(
            client.client_type,
            user.id,
            pair.refresh_token,
            self.codec.ttl_for(TokenKind.REFRESH),
        )
        self.logger.info(
            "signin_success", user_id=user.id, client_type=client.client_type.value
        )
        return FlowResult.success(pair)

    def _stamp_login(self, user: User) -> None:
        try:
            self.users.save(replace(user, logged_in_at=self._now()))
        except ServiceError:
            raise
        except Exception as exc:
            self.logger.error("login_stamp_failed", user_id=user.id, error=str(exc))
            raise PersistenceError("failed to record login time") from exc

    async def sign_out(self, client: ClientInfo, refresh_token: Optional[str]) -> FlowResult:
        if not refresh_token:
            return FlowResult.success()
        try:
            payload = self.codec.parse(
                refresh_token, expected_kind=TokenKind.REFRESH, verify_expiry=False
            )
        except TokenError as exc:
            log_token_rejection("signout_token_rejected", exc)
            return FlowResult.success()
        await self.sessions.delete(client.client_type, payload.user_id)
        self.logger.info(
            "signout", user_id=payload.user_id, client_type=client.client_type.value
        )
        return FlowResult.success()

    async def reissue(self, client: ClientInfo, refresh_token: Optional[str]) -> FlowResult:
        """Rotate the refresh token; the presented one is dead afterwards."""
        if not refresh_token:
            return FlowResult.unauthorized()
        try:
            payload = self.codec.parse(refresh_token, expected_kind=TokenKind.REFRESH)
        except TokenError as exc:
            log_token_rejection("reissue_token_rejected", exc)
            return FlowResult.unauthorized()

        pair = self._issue_pair(payload.user_id, payload.fcm_token)
        rotated = await self.sessions.rotate(
            client.client_type,
            payload.user_id,
            refresh_token,
            pair.refresh_token,
            self.codec.ttl_for(TokenKind.REFRESH),
        )
        if not rotated:
            self.logger.warning(
                "reissue_session_mismatch",
                user_id=payload.user_id,
                client_type=client.client_type.value,
            )
            return FlowResult.unauthorized()
        self.logger.info(
            "reissue_success", user_id=payload.user_id, client_type=client.client_type.value
        )
        return FlowResult.success(pair)

    async def issue_email_code(self, email: str) -> FlowResult:
        code = generate_email_code()
        ttl = self.settings.email_code_ttl_seconds
        expires_at = datetime.fromtimestamp(self._clock() + ttl, tz=timezone.utc)
        sent = await asyncio.to_thread(
            self.email_service.send_verification_code, email, code, expires_at
        )
        if not sent:
            raise MailDeliveryError("verification code could not be delivered")
        # Stored only once delivered; an earlier code stays valid on failure
        await self.codes.put(email, code, ttl)
        self.logger.info("email_code_issued", expires_at=expires_at.isoformat())
        return FlowResult.success(EmailCodeIssued(expires_at=expires_at))

    async def check_email_code(self, email: str, code: str) -> FlowResult:
        # Codes stay valid until TTL expiry; checking does not consume them
        stored = await self.codes.get(email)
        valid = stored is not None and hmac.compare_digest(
            stored.encode(), (code or "").encode()
        )
        return FlowResult.success(ValidationResult(is_valid=valid))

    async def check_last_device(
        self, client: ClientInfo, access_token: Optional[str]
    ) -> FlowResult:
        """Whether the caller is still the most recently signed-in device."""
        if not access_token:
            return FlowResult.unauthorized()
        try:
            current = self.codec.parse(access_token, expected_kind=TokenKind.ACCESS)
        except TokenError as exc:
            log_token_rejection("last_device_token_rejected", exc)
            return FlowResult.unauthorized()

        stored_token = await self.sessions.get(client.client_type, current.user_id)
        if stored_token is None:
            return FlowResult.success(ValidationResult(is_valid=False))
        stored = self._parse_stored_refresh(stored_token, current.user_id)
        if stored is None:
            return FlowResult.success(ValidationResult(is_valid=False))
        valid = (
            current.fcm_token is not None
            and stored.fcm_token is not None
            and hmac.compare_digest(current.fcm_token.encode(), stored.fcm_token.encode())
        )
        return FlowResult.success(ValidationResult(is_valid=valid))

    def _parse_stored_refresh(self, token: str, user_id: str) -> Optional[TokenPayload]:
        # The store TTL bounds the stored token's lifetime
        try:
            return self.codec.parse(
                token, expected_kind=TokenKind.REFRESH, verify_expiry=False
            )
        except TokenError as exc:
            log_token_rejection("stored_refresh_unparseable", exc, user_id=user_id)
            return None
