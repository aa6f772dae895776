from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Header, Request

from cocoauth.api.schemas import (
    EmailCheckRequest,
    EmailCodeIssuedResponse,
    EmailIssueRequest,
    Envelope,
    SigninRequest,
    TokenPairResponse,
    ValidationResultResponse,
)
from cocoauth.service.errors import InvalidCredentialsError, UnauthorizedError, ValidationError
from cocoauth.service.lifecycle import FlowResult, Outcome
from cocoauth.service.runtime import get_runtime
from cocoauth.storage.models import ClientInfo, ClientType

router = APIRouter(prefix="/v1/auth", tags=["auth"])


def _client_info(request: Request, client_type: Optional[str]) -> ClientInfo:
    """Describe the caller from its headers."""
    try:
        parsed = ClientType.parse(client_type)
    except ValueError as exc:
        raise ValidationError(
            "X-CLIENT-TYPE must be MOBILE or WEB", detail={"header": "X-CLIENT-TYPE"}
        ) from exc
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else None
    return ClientInfo(
        client_type=parsed,
        agent=request.headers.get("user-agent"),
        ip=ip,
    )


def _unwrap(result: FlowResult):
    if result.outcome is Outcome.INVALID_CREDENTIALS:
        raise InvalidCredentialsError("invalid login id or password")
    if result.outcome is Outcome.UNAUTHORIZED:
        raise UnauthorizedError("invalid or expired token")
    return result.data


@router.post("/signin", response_model=Envelope)
async def signin(
    body: SigninRequest,
    request: Request,
    x_client_type: Optional[str] = Header(None, alias="X-CLIENT-TYPE"),
):
    """Sign in with a login id and password.

    Returns an access/refresh token pair. Other devices of the same client
    type are evicted before the new session is stored.

    Raises:
        401: invalid credentials
        502: push or chat service failed
    """
    runtime = get_runtime()
    client = _client_info(request, x_client_type)
    pair = _unwrap(
        await runtime.manager.sign_in(client, body.cid, body.password, body.fcm_token)
    )
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            access_token=pair.access_token, refresh_token=pair.refresh_token
        ),
    )


@router.post("/signout", response_model=Envelope)
async def signout(
    request: Request,
    x_refresh_token: Optional[str] = Header(None, alias="X-REFRESH-TOKEN"),
    x_client_type: Optional[str] = Header(None, alias="X-CLIENT-TYPE"),
):
    runtime = get_runtime()
    client = _client_info(request, x_client_type)
    _unwrap(await runtime.manager.sign_out(client, x_refresh_token))
    return Envelope(status="ok", data={"signed_out": True})


@router.post("/reissue", response_model=Envelope)
async def reissue(
    request: Request,
    x_refresh_token: Optional[str] = Header(None, alias="X-REFRESH-TOKEN"),
    x_client_type: Optional[str] = Header(None, alias="X-CLIENT-TYPE"),
):
    """Exchange the current refresh token for a new pair; the old one stops working."""
    runtime = get_runtime()
    client = _client_info(request, x_client_type)
    pair = _unwrap(await runtime.manager.reissue(client, x_refresh_token))
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            access_token=pair.access_token, refresh_token=pair.refresh_token
        ),
    )


@router.post("/email/issue", response_model=Envelope)
async def issue_email_code(body: EmailIssueRequest):
    runtime = get_runtime()
    issued = _unwrap(await runtime.manager.issue_email_code(body.email))
    return Envelope(status="ok", data=EmailCodeIssuedResponse(expires_at=issued.expires_at))


@router.post("/email/check", response_model=Envelope)
async def check_email_code(body: EmailCheckRequest):
    runtime = get_runtime()
    result = _unwrap(await runtime.manager.check_email_code(body.email, body.code))
    return Envelope(status="ok", data=ValidationResultResponse(is_valid=result.is_valid))


@router.get("/last-device", response_model=Envelope)
async def last_device(
    request: Request,
    x_access_token: Optional[str] = Header(None, alias="X-ACCESS-TOKEN"),
    x_client_type: Optional[str] = Header(None, alias="X-CLIENT-TYPE"),
):
    """Report whether the caller's device is the last one signed in for its client type."""
    runtime = get_runtime()
    client = _client_info(request, x_client_type)
    result = _unwrap(await runtime.manager.check_last_device(client, x_access_token))
    return Envelope(status="ok", data=ValidationResultResponse(is_valid=result.is_valid))
