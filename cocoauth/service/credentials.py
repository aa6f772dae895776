from __future__ import annotations

import hashlib
import hmac
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from cocoauth.logging import get_logger
from cocoauth.service.errors import PersistenceError
from cocoauth.storage.common import UserStore
from cocoauth.storage.models import User

ALGO_ARGON2ID = "argon2id"
ALGO_SHA256 = "sha256"

_DUMMY_SHA256_DIGEST = hashlib.sha256(b"cocoauth-dummy-secret").hexdigest()


class CredentialVerifier:
    """Check a login id and secret against the stored one-way digest.

    Every call runs exactly one argon2 verify and one SHA-256 comparison,
    whatever the stored algorithm and whether or not the login id exists.
    The comparison that does not apply runs against a dummy digest.
    """

    def __init__(self, users: UserStore, hasher: Optional[PasswordHasher] = None) -> None:
        self.users = users
        self.logger = get_logger(__name__)
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_digest = self._pwd_hasher.hash("cocoauth-dummy-secret")

    def hash_secret(self, secret: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(secret), ALGO_ARGON2ID

    def verify(self, login_id: str, secret: str) -> Optional[User]:
        try:
            user = self.users.find_by_login_id(login_id)
        except PersistenceError:
            raise
        except Exception as exc:
            self.logger.error("credential_lookup_failed", error=str(exc))
            raise PersistenceError("user store lookup failed") from exc

        algo = user.password_algo if user is not None else None
        argon2_digest = user.password_digest if algo == ALGO_ARGON2ID else self._dummy_digest
        sha256_digest = user.password_digest if algo == ALGO_SHA256 else _DUMMY_SHA256_DIGEST
        argon2_ok = self._check_argon2(argon2_digest, secret)
        sha256_ok = self._check_sha256(sha256_digest, secret)

        if user is None:
            self.logger.info("credentials_rejected", reason="unknown_login_id")
            return None
        if algo not in (ALGO_ARGON2ID, ALGO_SHA256):
            self.logger.warning("password_algo_unsupported", algo=algo, user_id=user.id)
            return None
        matched = argon2_ok if algo == ALGO_ARGON2ID else sha256_ok
        if not matched:
            self.logger.info("credentials_rejected", reason="digest_mismatch", user_id=user.id)
            return None
        return user

    def _check_sha256(self, stored: str, secret: str) -> bool:
        supplied = hashlib.sha256(secret.encode()).hexdigest()
        return hmac.compare_digest(supplied.encode(), stored.lower().encode())

    def _check_argon2(self, stored: str, secret: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored, secret)
        except (InvalidHash, VerifyMismatchError):
            return False
