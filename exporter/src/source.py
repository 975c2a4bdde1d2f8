"""
Device snapshot source: the protocol the collector consumes, plus a WinPower
G2 HTTP adapter implementing it.

The collector depends only on :class:`DeviceSource`: one call returning the
current snapshot of every reachable device, plus connection status and the
time of the last successful collection.

:class:`WinPowerSource` logs in to the WinPower REST API with username and
password, caches the bearer token until it ages past ``token_ttl_s`` or a
request is answered with 401 (one re-login and retry), and maps each entry of
the device detail list into a :class:`~exporter.src.models.DeviceSnapshot`.
An entry that fails validation is logged and skipped; the rest of the batch
is still returned.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

import httpx
from pydantic import ValidationError

from exporter.src.errors import AuthenticationError, SourceResponseError
from exporter.src.models import DeviceSnapshot, RealtimeReadings

logger = logging.getLogger(__name__)

SUCCESS_CODE = "000000"
"""WinPower response code for a successful request."""

LOGIN_PATH = "/api/v1/auth/login"
DEVICE_LIST_PATH = "/api/v1/deviceData/detail/list"

_USER_AGENT = "winpower-exporter"


@runtime_checkable
class DeviceSource(Protocol):
    """Capability to fetch the current snapshot of every reachable device."""

    async def collect_device_data(self) -> list[DeviceSnapshot]: ...

    def connection_status(self) -> bool: ...

    def last_collection_time(self) -> datetime | None: ...


def parse_device(item: dict[str, Any], collected_at: datetime) -> DeviceSnapshot:
    """Map one WinPower device detail entry into a DeviceSnapshot.

    Args:
        item: One element of the ``data`` list of the device detail response.
        collected_at: Timestamp to stamp on the snapshot.

    Raises:
        pydantic.ValidationError: If the entry has no device id or carries
            readings that cannot be coerced.
    """
    asset = item.get("assetDevice") or {}
    return DeviceSnapshot(
        device_id=str(asset.get("id") or ""),
        device_name=asset.get("alias") or "",
        device_type=asset.get("deviceType") or 0,
        device_model=asset.get("model") or "",
        connected=bool(item.get("connected", False)),
        collected_at=collected_at,
        realtime=RealtimeReadings.model_validate(item.get("realtime") or {}),
    )


class WinPowerSource:
    """WinPower G2 REST client producing device snapshots.

    Args:
        base_url: WinPower base URL, e.g. ``https://winpower.local:8081``.
        username: WinPower login user.
        password: WinPower login password.
        timeout_s: Per-request timeout in seconds.
        verify_tls: Verify the server TLS certificate.
        page_size: Devices requested per device list call.
        token_ttl_s: Re-login once the cached token is older than this.
    """

    def __init__(
        self,
        *,
        base_url: str,
        username: str,
        password: str,
        timeout_s: float = 10.0,
        verify_tls: bool = True,
        page_size: int = 100,
        token_ttl_s: float = 3000.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._username = username
        self._password = password
        self._timeout_s = timeout_s
        self._verify_tls = verify_tls
        self._page_size = page_size
        self._token_ttl_s = token_ttl_s
        self._token: str | None = None
        self._token_obtained_at: float = 0.0
        self._connected = False
        self._last_collection: datetime | None = None

    # ------------------------------------------------------------------
    # DeviceSource protocol
    # ------------------------------------------------------------------

    def connection_status(self) -> bool:
        """True when the last collection attempt reached WinPower."""
        return self._connected

    def last_collection_time(self) -> datetime | None:
        """Time of the last successful collection, or None."""
        return self._last_collection

    async def collect_device_data(self) -> list[DeviceSnapshot]:
        """Fetch and parse the current snapshot of every device.

        Returns:
            One DeviceSnapshot per valid device entry.

        Raises:
            AuthenticationError: If login fails.
            SourceResponseError: If WinPower answers with an error code.
            httpx.HTTPError: On transport failures or unexpected HTTP status.
        """
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout_s,
                verify=self._verify_tls,
                headers={"User-Agent": _USER_AGENT, "Accept": "application/json"},
            ) as client:
                body = await self._fetch_device_list(client)
        except Exception:
            self._connected = False
            raise

        self._connected = True
        collected_at = datetime.now(tz=UTC)
        snapshots = self._parse_devices(body, collected_at)
        self._last_collection = collected_at
        logger.info(
            "Collected %d/%d devices from WinPower",
            len(snapshots),
            len(body.get("data") or []),
        )
        return snapshots

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _fetch_device_list(self, client: httpx.AsyncClient) -> dict[str, Any]:
        token = await self._ensure_token(client)
        response = await self._get_devices(client, token)

        if response.status_code == httpx.codes.UNAUTHORIZED:
            logger.warning("WinPower rejected cached token, logging in again")
            self._invalidate_token()
            token = await self._ensure_token(client)
            response = await self._get_devices(client, token)

        response.raise_for_status()
        body = response.json()
        code = str(body.get("code", ""))
        if code != SUCCESS_CODE:
            raise SourceResponseError(
                f"device list request failed: {body.get('msg', '')}", code=code
            )
        return body

    async def _get_devices(self, client: httpx.AsyncClient, token: str) -> httpx.Response:
        return await client.get(
            DEVICE_LIST_PATH,
            params={"current": 1, "pageSize": self._page_size},
            headers={"Authorization": f"Bearer {token}"},
        )

    async def _ensure_token(self, client: httpx.AsyncClient) -> str:
        age = time.monotonic() - self._token_obtained_at
        if self._token is not None and age < self._token_ttl_s:
            return self._token

        try:
            response = await client.post(
                LOGIN_PATH,
                json={"username": self._username, "password": self._password},
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPStatusError, ValueError) as exc:
            raise AuthenticationError(f"login failed: {exc}") from exc

        if str(body.get("code", "")) != SUCCESS_CODE:
            raise AuthenticationError(f"login failed: {body.get('message', '')}")
        token = (body.get("data") or {}).get("token")
        if not token:
            raise AuthenticationError("login failed: response carried no token")

        self._token = token
        self._token_obtained_at = time.monotonic()
        logger.info("WinPower login successful")
        return token

    def _invalidate_token(self) -> None:
        self._token = None
        self._token_obtained_at = 0.0

    def _parse_devices(
        self, body: dict[str, Any], collected_at: datetime
    ) -> list[DeviceSnapshot]:
        snapshots: list[DeviceSnapshot] = []
        for index, item in enumerate(body.get("data") or []):
            try:
                snapshots.append(parse_device(item, collected_at))
            except (ValidationError, AttributeError) as exc:
                logger.warning(
                    "Skipping unparseable device entry index=%d: %s", index, exc
                )
        return snapshots
