"""WebSocket transport and HTTP device authentication against a Nakama-style server."""

from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import logging
import urllib.error
import urllib.request
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import InvalidHandshake

from rtlink.config import LinkSettings
from rtlink.network.endpoint import EndpointDescriptor
from rtlink.network.protocol import ProtocolResolver
from rtlink.network.transport.base import IdentityProvider, Session, Transport

LOGGER = logging.getLogger(__name__)

DEVICE_AUTH_PATH = "/v2/account/authenticate/device"


class IdentityRequestError(RuntimeError):
    """HTTP-level failure talking to the identity backend."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _request_json(url: str, payload: Dict[str, Any], headers: Dict[str, str], timeout: float) -> Dict[str, Any]:
    data = json.dumps(payload).encode("utf-8")
    request = urllib.request.Request(url, data=data, headers=headers, method="POST")
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read()
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", "ignore")
        raise IdentityRequestError(f"HTTP {exc.code}: {body or exc.reason}", status_code=exc.code) from exc
    except urllib.error.URLError as exc:
        raise IdentityRequestError(f"Request failed: {exc.reason}") from exc
    except TimeoutError as exc:
        raise IdentityRequestError(f"Request timed out after {timeout:.1f}s") from exc
    return json.loads(raw.decode("utf-8"))


def _basic_auth(credential: str) -> str:
    # The server key is the Basic user with an empty password.
    encoded = base64.b64encode(f"{credential}:".encode("utf-8")).decode("ascii")
    return f"Basic {encoded}"


class WebSocketTransport(Transport):
    """Real-time socket carried over WebSocket."""

    def __init__(self, settings: LinkSettings, endpoint: EndpointDescriptor) -> None:
        super().__init__()
        self._settings = settings
        self.endpoint = endpoint
        self._ws: Any = None
        self._watch_task: Optional[asyncio.Task[None]] = None
        self._closing = False

    def socket_url(self, session: Session, create_presence: bool) -> str:
        query = urlencode(
            {"lang": "en", "status": "true" if create_presence else "false", "token": session.token}
        )
        return f"{self.endpoint.url(self._settings.ws_path)}?{query}"

    async def connect(self, session: Session, create_presence: bool = True) -> None:
        url = self.socket_url(session, create_presence)
        LOGGER.info("Connecting to real-time socket at %s", url.split("?", 1)[0])
        self._closing = False
        self._ws = await websockets.connect(url, open_timeout=None)
        self._watch_task = asyncio.create_task(self._watch(), name="rtlink-socket-watch")

    async def _watch(self) -> None:
        ws = self._ws
        await ws.wait_closed()
        if self._closing:
            return
        code = getattr(ws, "close_code", None)
        reason = getattr(ws, "close_reason", None) or ""
        error = ConnectionError(f"WebSocket connection closed unexpectedly (code {code}) {reason}".strip())
        LOGGER.warning("%s", error)
        if code not in (None, 1000, 1001):
            self._notify_error(error)
        self._notify_disconnect(error)

    async def close(self) -> None:
        self._closing = True
        if self._ws:
            LOGGER.info("Closing WebSocket transport")
            await self._ws.close()
            self._ws = None
        if self._watch_task:
            self._watch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._watch_task
            self._watch_task = None


class HttpIdentityProvider(IdentityProvider):
    """Device authentication over the backend's REST API."""

    def __init__(self, settings: LinkSettings, resolver: ProtocolResolver) -> None:
        self._settings = settings
        self._resolver = resolver

    async def authenticate(self, device_id: str) -> Session:
        base_url = self._resolver.http_url()
        url = f"{base_url}{DEVICE_AUTH_PATH}?{urlencode({'create': 'true'})}"
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": _basic_auth(self._settings.identity_credential),
        }
        timeout = self._settings.identity_timeout_ms / 1000
        LOGGER.debug("Authenticating device against %s", base_url)
        body = await asyncio.to_thread(_request_json, url, {"id": device_id}, headers, timeout)
        token = body.get("token")
        if not token:
            raise IdentityRequestError("Authentication response did not include a session token")
        return Session.from_token(
            token,
            refresh_token=body.get("refresh_token"),
            created=bool(body.get("created", False)),
        )

    def create_transport(self, endpoint: EndpointDescriptor) -> Transport:
        return WebSocketTransport(self._settings, endpoint)


async def websocket_probe(url: str, timeout_s: float) -> None:
    """Open and immediately close a socket to prove the endpoint is reachable.

    A handshake the server answers with an HTTP status (typically 401 because
    the probe carries no session token) still proves reachability.
    """

    try:
        ws = await asyncio.wait_for(websockets.connect(url, open_timeout=None), timeout_s)
    except InvalidHandshake as exc:
        LOGGER.debug("Probe of %s reached the server but the handshake was rejected: %s", url, exc)
        return
    await ws.close()
