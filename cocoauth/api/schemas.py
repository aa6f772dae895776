from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cocoauth.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "validation_error",
    "not_found",
    "conflict",
    "server_error",
    "parse_error",
    "upstream_error",
})


class ErrorBody(BaseModel):
    """Error part of the response envelope; ``code`` is one of a fixed set."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class SigninRequest(BaseModel):
    cid: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=128)
    fcm_token: Optional[str] = Field(default=None, alias="fcmToken", max_length=4096)

    model_config = ConfigDict(populate_by_name=True)


class EmailIssueRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_issue_email(cls, value: str) -> str:
        return _validate_email(value)


class EmailCheckRequest(BaseModel):
    email: str
    code: str = Field(..., min_length=1, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_check_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str


class EmailCodeIssuedResponse(BaseModel):
    expires_at: datetime


class ValidationResultResponse(BaseModel):
    is_valid: bool
