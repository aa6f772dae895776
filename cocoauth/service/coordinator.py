"""Outbound calls to the push and chat services behind the gateway."""

from __future__ import annotations

from typing import Optional, Protocol

import httpx

from cocoauth.logging import get_logger
from cocoauth.service.errors import UpstreamCoordinationError
from cocoauth.storage.models import ClientInfo, ClientType

logger = get_logger(__name__)


class DeviceCoordinator(Protocol):
    async def notify_fcm_token_changed(
        self, user_id: str, fcm_token: Optional[str], client: ClientInfo
    ) -> None: ...

    async def notify_other_devices_evicted(
        self,
        user_id: str,
        fcm_token: Optional[str],
        client_type: ClientType,
        access_token: str,
    ) -> None: ...

    async def aclose(self) -> None: ...


class HttpDeviceCoordinator:
    """Coordinator backed by one long-lived ``httpx.AsyncClient``.

    Any transport error, timeout or non-2xx status raises
    ``UpstreamCoordinationError``; callers must not commit session state
    when a call fails.
    """

    PUSH_DEVICE_PATH = "/push/device"
    CHAT_EVICT_PATH = "/chat/crash"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            follow_redirects=False,
            transport=transport,
        )

    async def notify_fcm_token_changed(
        self, user_id: str, fcm_token: Optional[str], client: ClientInfo
    ) -> None:
        headers = {}
        if client.agent:
            headers["User-Agent"] = client.agent
        if client.ip:
            headers["X-Forwarded-For"] = client.ip
        await self._post(
            "push_device",
            self.PUSH_DEVICE_PATH,
            json={"userId": user_id, "fcmToken": fcm_token},
            headers=headers,
        )

    async def notify_other_devices_evicted(
        self,
        user_id: str,
        fcm_token: Optional[str],
        client_type: ClientType,
        access_token: str,
    ) -> None:
        await self._post(
            "chat_evict",
            self.CHAT_EVICT_PATH,
            json={
                "clientType": ClientType(client_type).value,
                "userId": user_id,
                "fcmToken": fcm_token,
            },
            headers={"X-ACCESS-TOKEN": access_token},
        )

    async def _post(self, call: str, path: str, *, json: dict, headers: dict) -> None:
        try:
            response = await self._client.post(path, json=json, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "coordination_http_error",
                call=call,
                status=exc.response.status_code,
            )
            raise UpstreamCoordinationError(
                f"{call} returned {exc.response.status_code}",
                detail={"call": call, "status": exc.response.status_code},
            ) from exc
        except httpx.TimeoutException as exc:
            logger.error("coordination_timeout", call=call)
            raise UpstreamCoordinationError(
                f"{call} timed out", detail={"call": call}
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("coordination_failed", call=call, error=str(exc))
            raise UpstreamCoordinationError(
                f"{call} failed", detail={"call": call}
            ) from exc
        logger.debug("coordination_ok", call=call, user_id=json.get("userId"))

    async def aclose(self) -> None:
        await self._client.aclose()
