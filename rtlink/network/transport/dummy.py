"""No-op identity provider and transport for offline runs."""

from __future__ import annotations

import logging
import uuid

from rtlink.network.endpoint import EndpointDescriptor

from .base import IdentityProvider, Session, Transport

LOGGER = logging.getLogger(__name__)


class DummyTransport(Transport):
    """Transport that accepts every connect; tests call drop() to simulate a server close."""

    def __init__(self, endpoint: EndpointDescriptor | None = None) -> None:
        super().__init__()
        self.secure = bool(endpoint and endpoint.secure)
        self.endpoint = endpoint
        self.connected = False

    async def connect(self, session: Session, create_presence: bool = True) -> None:
        LOGGER.debug("Dummy transport connect() secure=%s presence=%s", self.secure, create_presence)
        self.connected = True

    async def close(self) -> None:
        LOGGER.debug("Dummy transport close()")
        self.connected = False

    def drop(self, error: BaseException | None = None) -> None:
        """Simulate the server closing the socket."""

        self.connected = False
        if error is not None:
            self._notify_error(error)
        self._notify_disconnect(error)


class DummyIdentityProvider(IdentityProvider):
    """Issues a local session for any device id."""

    def __init__(self) -> None:
        self.transports: list[DummyTransport] = []

    async def authenticate(self, device_id: str) -> Session:
        LOGGER.debug("Dummy authenticate() device=%s", device_id)
        return Session(token=f"dummy.{uuid.uuid4().hex}", user_id=device_id, username=device_id)

    def create_transport(self, endpoint: EndpointDescriptor) -> Transport:
        transport = DummyTransport(endpoint=endpoint)
        self.transports.append(transport)
        return transport


async def dummy_probe(url: str, timeout_s: float) -> None:
    LOGGER.debug("Dummy probe of %s (timeout %.1fs)", url, timeout_s)
