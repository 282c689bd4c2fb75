"""HTTP client helpers for the N.I.N.A. Advanced API REST endpoints."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..config import Settings
from ..errors import TransportError
from ..state import DeviceKind

logger = logging.getLogger(__name__)

# REST path segment per device kind
DEVICE_PATHS: Dict[DeviceKind, str] = {
    DeviceKind.CAMERA: "camera",
    DeviceKind.MOUNT: "mount",
    DeviceKind.FILTER_WHEEL: "filterwheel",
    DeviceKind.FOCUSER: "focuser",
    DeviceKind.ROTATOR: "rotator",
    DeviceKind.GUIDER: "guider",
    DeviceKind.SAFETY_MONITOR: "safetymonitor",
    DeviceKind.FLAT_PANEL: "flatdevice",
    DeviceKind.DOME: "dome",
    DeviceKind.WEATHER: "weather",
    DeviceKind.SWITCH: "switch",
}


class NinaHttpClient:
    """
    Thin wrapper around the Advanced API.

    Every call unwraps the ``{Response, Success, Error}`` envelope and raises
    :class:`TransportError` on failure. Timeouts and dropped connections are
    retried ``retry_attempts`` times; HTTP errors are not.
    """

    def __init__(self, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings
        self._client = httpx.AsyncClient(
            base_url=self.settings.api_base_url,
            timeout=self.settings.http.timeout_s,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def get_equipment_info(self, device: DeviceKind) -> Dict[str, Any]:
        path = DEVICE_PATHS.get(device)
        if path is None:
            raise TransportError(f"no info endpoint for device {device}")
        body = await self._get(f"/equipment/{path}/info")
        if not isinstance(body, dict):
            raise TransportError(f"unexpected {device.value} info payload", endpoint=f"/equipment/{path}/info")
        return body

    async def get_event_history(self) -> List[Dict[str, Any]]:
        """Recent events as recorded by the tool, oldest first."""
        body = await self._get("/event-history")
        if not isinstance(body, list):
            raise TransportError("event history is not a list", endpoint="/event-history")
        return [event for event in body if isinstance(event, dict)]

    async def get_guider_graph(self) -> Dict[str, Any]:
        body = await self._get("/equipment/guider/graph")
        if not isinstance(body, dict):
            raise TransportError("unexpected guider graph payload", endpoint="/equipment/guider/graph")
        return body

    async def get_application_start(self) -> Any:
        return await self._get("/application-start")

    async def _get(self, endpoint: str) -> Any:
        attempts = max(self.settings.http.retry_attempts, 0)
        for attempt in range(attempts + 1):
            try:
                response = await self._client.get(endpoint)
                response.raise_for_status()
                payload = response.json()
            except (httpx.TimeoutException, httpx.NetworkError) as e:
                if attempt < attempts:
                    logger.warning(
                        "nina.get %s: %s, retrying (%d attempts remaining)",
                        endpoint,
                        type(e).__name__,
                        attempts - attempt,
                    )
                    await asyncio.sleep(self.settings.http.retry_delay_s)
                    continue
                logger.error("nina.get %s: giving up - %s", endpoint, e)
                raise TransportError(f"request failed: {e}", endpoint=endpoint) from e
            except httpx.HTTPStatusError as e:
                logger.error("nina.get %s: HTTP %d", endpoint, e.response.status_code)
                raise TransportError(
                    f"HTTP {e.response.status_code}", endpoint=endpoint, status_code=e.response.status_code
                ) from e
            except ValueError as e:
                logger.error("nina.get %s: invalid JSON - %s", endpoint, e)
                raise TransportError("invalid JSON response", endpoint=endpoint) from e
            return self._unwrap(endpoint, payload)
        raise TransportError("request not attempted", endpoint=endpoint)

    @staticmethod
    def _unwrap(endpoint: str, payload: Any) -> Any:
        if not isinstance(payload, dict) or "Response" not in payload:
            return payload
        if payload.get("Success") is False:
            error = payload.get("Error") or "request unsuccessful"
            raise TransportError(str(error), endpoint=endpoint, status_code=payload.get("StatusCode"))
        return payload["Response"]

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning("Error closing HTTP client: %s", e)
