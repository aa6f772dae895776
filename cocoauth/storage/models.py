from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from cocoauth.service.errors import ParseError


class ClientType(str, Enum):
    """Device class a session belongs to; sessions are tracked per type."""

    MOBILE = "MOBILE"
    WEB = "WEB"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "ClientType":
        if not raw:
            return cls.WEB
        return cls(raw.strip().upper())


@dataclass(frozen=True)
class ClientInfo:
    """Caller description forwarded to downstream services."""

    client_type: ClientType = ClientType.WEB
    agent: Optional[str] = None
    ip: Optional[str] = None


class ProfilePayload(BaseModel):
    """Public profile fields kept as a JSON blob on the user record."""

    profile: Optional[str] = None
    background: Optional[str] = None
    message: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    def to_json(self) -> str:
        try:
            return self.model_dump_json()
        except (TypeError, ValueError) as exc:
            raise ParseError("profile payload could not be serialized") from exc

    @classmethod
    def from_json(cls, raw: Optional[str]) -> "ProfilePayload":
        if not raw:
            return cls()
        try:
            return cls.model_validate_json(raw)
        except (PydanticValidationError, json.JSONDecodeError) as exc:
            raise ParseError("profile payload could not be parsed") from exc


@dataclass
class User:
    id: str
    login_id: str
    password_digest: str
    password_algo: str = "argon2id"
    email: Optional[str] = None
    phone: Optional[str] = None
    profile: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    logged_in_at: Optional[datetime] = None
