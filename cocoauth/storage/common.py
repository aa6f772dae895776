"""Store contracts shared by the Redis and in-memory backends.

Both backends build their keys with the helpers below so a deployment can
switch between them without changing what a session or code is keyed by.
"""

from __future__ import annotations

from typing import Optional, Protocol

from cocoauth.storage.models import ClientType, User


def session_key(client_type: ClientType, user_id: str) -> str:
    return f"auth:refresh:{ClientType(client_type).value}:{user_id}"


def email_code_key(email: str) -> str:
    return f"auth:email_code:{normalize_email(email)}"


def normalize_email(email: str) -> str:
    return email.strip().lower()


class SessionStore(Protocol):
    """Current refresh token per (client type, user id), with TTL.

    ``put`` overwrites unconditionally; absence is reported as ``None``.
    """

    async def put(
        self, client_type: ClientType, user_id: str, token: str, ttl_seconds: int
    ) -> None: ...

    async def get(self, client_type: ClientType, user_id: str) -> Optional[str]: ...

    async def delete(self, client_type: ClientType, user_id: str) -> None: ...

    async def matches(
        self, client_type: ClientType, user_id: str, token: str
    ) -> bool: ...

    async def rotate(
        self,
        client_type: ClientType,
        user_id: str,
        expected: str,
        new_token: str,
        ttl_seconds: int,
    ) -> bool: ...


class VerificationCodeStore(Protocol):
    async def put(self, email: str, code: str, ttl_seconds: int) -> None: ...

    async def get(self, email: str) -> Optional[str]: ...


class UserStore(Protocol):
    def find_by_login_id(self, login_id: str) -> Optional[User]: ...

    def exists_by_login_id(self, login_id: str) -> bool: ...

    def exists_by_phone(self, phone: str) -> bool: ...

    def exists_by_email(self, email: str) -> bool: ...

    def save(self, user: User) -> User: ...
