from __future__ import annotations

import hmac
import json
import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from cocoauth.logging import get_logger
from cocoauth.service.errors import ParseError, PersistenceError
from cocoauth.storage.common import email_code_key, normalize_email, session_key
from cocoauth.storage.errors import ConstraintViolation
from cocoauth.storage.models import ClientType, ProfilePayload, User

Clock = Callable[[], float]


class MemoryUserStore:
    """In-process credential and profile store used for dev and tests.

    When ``state_path`` is given, users are loaded from that JSON file at
    start-up and written back after every change, so a seeded user survives
    restarts of a single-node deployment.
    """

    def __init__(self, state_path: Optional[str | Path] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._data_lock = threading.RLock()
        self._state_path = Path(state_path) if state_path else None
        if self._state_path is not None and self._load_state():
            self.logger.info("user_store_loaded", users=len(self.users))

    @staticmethod
    def _serialize_user(user: User) -> dict:
        return {
            "id": user.id,
            "login_id": user.login_id,
            "password_digest": user.password_digest,
            "password_algo": user.password_algo,
            "email": user.email,
            "phone": user.phone,
            "profile": user.profile,
            "created_at": user.created_at.isoformat(),
            "logged_in_at": user.logged_in_at.isoformat() if user.logged_in_at else None,
        }

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        logged_in_at = data.get("logged_in_at")
        return User(
            id=data["id"],
            login_id=data["login_id"],
            password_digest=data["password_digest"],
            password_algo=data.get("password_algo", "argon2id"),
            email=data.get("email"),
            phone=data.get("phone"),
            profile=data.get("profile"),
            created_at=datetime.fromisoformat(data["created_at"]),
            logged_in_at=datetime.fromisoformat(logged_in_at) if logged_in_at else None,
        )

    def _persist_state(self) -> None:
        if self._state_path is None:
            return
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        try:
            self._state_path.parent.mkdir(parents=True, exist_ok=True)
            self._state_path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise PersistenceError(f"failed to persist user store: {exc}") from exc

    def _load_state(self) -> bool:
        try:
            data = json.loads(self._state_path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"failed to load user store: {exc}") from exc
        try:
            self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise ParseError("user store state is malformed") from exc
        return True

    def create_user(
        self,
        login_id: str,
        password_digest: str,
        password_algo: str = "argon2id",
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        profile: Optional[ProfilePayload] = None,
    ) -> User:
        with self._data_lock:
            if self.exists_by_login_id(login_id):
                raise ConstraintViolation("login id already exists", {"field": "login_id"})
            if phone and self.exists_by_phone(phone):
                raise ConstraintViolation("phone already exists", {"field": "phone"})
            if email and self.exists_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                login_id=login_id,
                password_digest=password_digest,
                password_algo=password_algo,
                email=normalize_email(email) if email else None,
                phone=phone,
                profile=(profile or ProfilePayload()).to_json(),
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def find_by_login_id(self, login_id: str) -> Optional[User]:
        with self._data_lock:
            found = next((u for u in self.users.values() if u.login_id == login_id), None)
            # Callers get a copy; changes only land through save()
            return replace(found) if found else None

    def exists_by_login_id(self, login_id: str) -> bool:
        with self._data_lock:
            return any(u.login_id == login_id for u in self.users.values())

    def exists_by_phone(self, phone: str) -> bool:
        with self._data_lock:
            return any(u.phone == phone for u in self.users.values())

    def exists_by_email(self, email: str) -> bool:
        normalized = normalize_email(email)
        with self._data_lock:
            return any(u.email == normalized for u in self.users.values())

    def save(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user.id})
            self.users[user.id] = replace(user)
            self._persist_state()
            return user


class _ExpiringDict:
    """Lock-guarded key -> (value, expires_at) map with lazy expiry."""

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[str, float]] = {}

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._get_locked(key)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def compare_and_set(
        self, key: str, expected: str, value: str, ttl_seconds: int
    ) -> bool:
        with self._lock:
            current = self._get_locked(key)
            if current is None or not hmac.compare_digest(current.encode(), expected.encode()):
                return False
            self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))
            return True

    def _get_locked(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            # Remove expired entry to prevent memory leak
            self._entries.pop(key, None)
            return None
        return value


class MemorySessionStore:
    """Session records kept in process memory.

    Only safe for a single process; multi-instance deployments use
    ``RedisSessionStore``.
    """

    def __init__(self, clock: Clock = time.time) -> None:
        self._entries = _ExpiringDict(clock)

    async def put(
        self, client_type: ClientType, user_id: str, token: str, ttl_seconds: int
    ) -> None:
        self._entries.set(session_key(client_type, user_id), token, ttl_seconds)

    async def get(self, client_type: ClientType, user_id: str) -> Optional[str]:
        return self._entries.get(session_key(client_type, user_id))

    async def delete(self, client_type: ClientType, user_id: str) -> None:
        self._entries.delete(session_key(client_type, user_id))

    async def matches(self, client_type: ClientType, user_id: str, token: str) -> bool:
        stored = await self.get(client_type, user_id)
        if stored is None:
            return False
        return hmac.compare_digest(stored.encode(), token.encode())

    async def rotate(
        self,
        client_type: ClientType,
        user_id: str,
        expected: str,
        new_token: str,
        ttl_seconds: int,
    ) -> bool:
        return self._entries.compare_and_set(
            session_key(client_type, user_id), expected, new_token, ttl_seconds
        )


class MemoryVerificationCodeStore:
    def __init__(self, clock: Clock = time.time) -> None:
        self._entries = _ExpiringDict(clock)

    async def put(self, email: str, code: str, ttl_seconds: int) -> None:
        self._entries.set(email_code_key(email), code, ttl_seconds)

    async def get(self, email: str) -> Optional[str]:
        return self._entries.get(email_code_key(email))
