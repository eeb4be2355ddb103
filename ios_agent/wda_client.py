"""Async HTTP client for the WebDriverAgent control API."""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Dict, List, Optional

import httpx

from ios_agent.errors import AgentError, BackendRequestError, BackendUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8100"
DEFAULT_TIMEOUT = 30.0
# Used when WDA cannot report the window size (iPhone 14/15 logical points).
DEFAULT_WINDOW_SIZE = {"width": 390, "height": 844}
SWIPE_OFFSET = 200
_SWIPE_DELTAS = {
    "up": (0, -SWIPE_OFFSET),
    "down": (0, SWIPE_OFFSET),
    "left": (-SWIPE_OFFSET, 0),
    "right": (SWIPE_OFFSET, 0),
}

_W3C_ELEMENT_KEY = "element-6066-11e4-a52e-4f735466cecf"


def _element_id(value: Any) -> Optional[str]:
    if not isinstance(value, dict):
        return None
    element_id = value.get("ELEMENT") or value.get(_W3C_ELEMENT_KEY)
    return str(element_id) if element_id else None


class WDAClient:
    """Thin wrapper over WDA endpoints sharing one session id.

    Every request is bounded by ``timeout`` seconds. Non-2xx answers raise
    :class:`BackendRequestError` carrying WDA's body text verbatim; transport
    failures raise :class:`BackendUnavailableError`.

    The daemon does not call every endpoint wrapped here: ``get_status``,
    ``find_elements`` and ``get_active_app_info`` are kept for scripts that
    drive WDA through this client directly.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session_id: Optional[str] = None
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )
        self._session_lock = asyncio.Lock()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        logger.debug("WDA %s %s", method, path)
        try:
            response = await self._client.request(method, path, json=body)
        except httpx.TimeoutException as exc:
            raise BackendUnavailableError(
                f"WDA request {method} {path} timed out after {self.timeout:.0f}s. "
                "Check 'ios-agent status'; restart the session if WDA is hung."
            ) from exc
        except httpx.TransportError as exc:
            raise BackendUnavailableError(
                f"WDA not reachable at {self.base_url}: {exc}. "
                "Run 'ios-agent start-session' to restart it."
            ) from exc

        if not response.is_success:
            raise BackendRequestError(response.status_code, response.text)

        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError:
            logger.debug("Received non-JSON payload from WDA: %s", response.text)
            return {"value": response.text}
        return payload if isinstance(payload, dict) else {"value": payload}

    async def _session_path(self, suffix: str) -> str:
        session_id = await self.ensure_session()
        return f"/session/{session_id}{suffix}"

    # ------------------------------------------------------------------
    # Status & sessions
    # ------------------------------------------------------------------
    async def get_status(self) -> Dict[str, Any]:
        response = await self._request("GET", "/status")
        value = response.get("value") or {}
        status = dict(value) if isinstance(value, dict) else {}
        status.setdefault("ready", True)
        return status

    async def create_session(self, capabilities: Optional[Dict[str, Any]] = None) -> str:
        response = await self._request(
            "POST",
            "/session",
            {"capabilities": {"alwaysMatch": capabilities or {}, "firstMatch": [{}]}},
        )
        value = response.get("value") or {}
        session_id = response.get("sessionId") or (value.get("sessionId") if isinstance(value, dict) else None)
        if not session_id:
            raise BackendRequestError(200, f"WDA did not return a session id: {response}")
        self.session_id = str(session_id)
        logger.info("Created WDA session %s", self.session_id)
        return self.session_id

    async def delete_session(self) -> None:
        """Delete the cached session; the id is forgotten even if WDA errors."""

        if not self.session_id:
            return
        session_id = self.session_id
        self.session_id = None
        await self._request("DELETE", f"/session/{session_id}")

    async def ensure_session(self) -> str:
        """Return the cached session id, creating a session only if none exists."""

        if self.session_id:
            return self.session_id
        async with self._session_lock:
            if not self.session_id:
                await self.create_session()
            return self.session_id  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Tree & screenshots
    # ------------------------------------------------------------------
    async def get_source(self) -> str:
        response = await self._request("GET", await self._session_path("/source"))
        return str(response.get("value") or "")

    async def screenshot(self) -> str:
        """Return the current screen as a base64-encoded PNG."""

        response = await self._request("GET", await self._session_path("/screenshot"))
        return str(response.get("value") or "")

    async def screenshot_bytes(self) -> bytes:
        return base64.b64decode(await self.screenshot())

    async def get_window_size(self) -> Dict[str, float]:
        response = await self._request("GET", await self._session_path("/window/size"))
        value = response.get("value")
        if isinstance(value, dict) and value.get("width") and value.get("height"):
            return {"width": float(value["width"]), "height": float(value["height"])}
        return dict(DEFAULT_WINDOW_SIZE)

    # ------------------------------------------------------------------
    # Elements
    # ------------------------------------------------------------------
    async def find_element(self, using: str, value: str) -> Optional[str]:
        """Return the id of the first element matching the query, or ``None``."""

        path = await self._session_path("/element")
        try:
            response = await self._request("POST", path, {"using": using, "value": value})
        except BackendRequestError as exc:
            logger.debug("No element for %s=%r: %s", using, value, exc.status_code)
            return None
        return _element_id(response.get("value"))

    async def find_elements(self, using: str, value: str) -> List[str]:
        path = await self._session_path("/elements")
        try:
            response = await self._request("POST", path, {"using": using, "value": value})
        except BackendRequestError:
            return []
        found = response.get("value") or []
        return [element_id for element_id in map(_element_id, found) if element_id]

    async def click(self, element_id: str) -> None:
        await self._request("POST", await self._session_path(f"/element/{element_id}/click"))

    async def type(self, element_id: str, text: str) -> None:
        await self._request(
            "POST",
            await self._session_path(f"/element/{element_id}/value"),
            {"value": list(text)},
        )

    async def clear(self, element_id: str) -> None:
        await self._request("POST", await self._session_path(f"/element/{element_id}/clear"))

    async def is_displayed(self, element_id: str) -> bool:
        response = await self._request(
            "GET", await self._session_path(f"/element/{element_id}/displayed")
        )
        return bool(response.get("value"))

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------
    async def get_alert_text(self) -> Optional[str]:
        """Return the text of the visible alert, or ``None`` when there is none."""

        path = await self._session_path("/alert/text")
        try:
            response = await self._request("GET", path)
        except BackendRequestError:
            return None
        value = response.get("value")
        return None if value is None else str(value)

    async def get_alert_buttons(self) -> List[str]:
        path = await self._session_path("/wda/alert/buttons")
        try:
            response = await self._request("GET", path)
        except BackendRequestError:
            return []
        return [str(button) for button in response.get("value") or []]

    async def accept_alert(self) -> None:
        await self._request("POST", await self._session_path("/alert/accept"))

    async def dismiss_alert(self) -> None:
        await self._request("POST", await self._session_path("/alert/dismiss"))

    async def tap_alert_button(self, name: str) -> None:
        await self._request("POST", await self._session_path("/alert/accept"), {"name": name})

    # ------------------------------------------------------------------
    # Apps
    # ------------------------------------------------------------------
    async def launch_app(self, bundle_id: str) -> None:
        await self._request("POST", await self._session_path("/wda/apps/launch"), {"bundleId": bundle_id})

    async def terminate_app(self, bundle_id: str) -> None:
        await self._request(
            "POST", await self._session_path("/wda/apps/terminate"), {"bundleId": bundle_id}
        )

    async def get_active_app_info(self) -> Optional[Dict[str, Any]]:
        path = await self._session_path("/wda/activeAppInfo")
        try:
            response = await self._request("GET", path)
        except BackendRequestError:
            return None
        value = response.get("value")
        return value if isinstance(value, dict) else None

    # ------------------------------------------------------------------
    # Gestures
    # ------------------------------------------------------------------
    async def swipe(self, element_id: str, direction: str) -> None:
        await self._request(
            "POST",
            await self._session_path(f"/wda/element/{element_id}/swipe"),
            {"direction": direction},
        )

    async def swipe_screen(self, direction: str) -> None:
        """Drag across the middle of the screen in ``direction``."""

        if direction not in _SWIPE_DELTAS:
            raise AgentError(
                f"Unsupported swipe direction: {direction}. Use up, down, left or right."
            )
        dx, dy = _SWIPE_DELTAS[direction]
        try:
            size = await self.get_window_size()
        except BackendRequestError:
            size = dict(DEFAULT_WINDOW_SIZE)
        center_x = size["width"] / 2
        center_y = size["height"] / 2
        from_x, from_y = center_x - dx, center_y - dy
        to_x, to_y = center_x + dx, center_y + dy

        await self._request(
            "POST",
            await self._session_path("/wda/touch/perform"),
            {
                "actions": [
                    {"action": "press", "options": {"x": from_x, "y": from_y}},
                    {"action": "wait", "options": {"ms": 100}},
                    {"action": "moveTo", "options": {"x": to_x, "y": to_y}},
                    {"action": "release"},
                ]
            },
        )
