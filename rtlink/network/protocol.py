"""Protocol and endpoint resolution for the real-time link."""

from __future__ import annotations

import logging
from typing import Optional

from rtlink.config import LinkSettings
from rtlink.network.endpoint import EndpointDescriptor, PageContextProvider, static_page_context

LOGGER = logging.getLogger(__name__)

MANAGED_HOST_PORT = "443"


class ProtocolResolver:
    """Derives the endpoint descriptor from page context, host patterns and configuration.

    Resolution is a pure function of its inputs; the page context is read again
    on every call because it may change between attempts.
    """

    def __init__(
        self,
        settings: LinkSettings,
        page_context: Optional[PageContextProvider] = None,
    ) -> None:
        self._settings = settings
        self._page_context = page_context or static_page_context(settings.page_origin)

    def is_managed_host(self, host: str) -> bool:
        if self._settings.managed_platform:
            return True
        lowered = host.lower()
        return any(pattern.lower() in lowered for pattern in self._settings.managed_host_patterns)

    def requires_secure(self) -> bool:
        """Return True when the hosting page forbids plaintext connections."""

        context = self._page_context()
        return context.is_secure or context.is_ambiguous

    def resolve(
        self,
        raw_host: Optional[str] = None,
        raw_port: Optional[str] = None,
        configured_secure: Optional[bool] = None,
    ) -> EndpointDescriptor:
        host = (raw_host if raw_host is not None else self._settings.host).strip()
        port = (raw_port if raw_port is not None else self._settings.port).strip() or self._settings.port
        context = self._page_context()

        if context.is_secure:
            secure = True
        elif context.is_ambiguous or configured_secure is None:
            secure = True
        else:
            secure = bool(configured_secure)

        if self.is_managed_host(host):
            if not secure:
                LOGGER.debug("Managed host %s terminates TLS at the edge; forcing secure transport", host)
            return EndpointDescriptor(host=host, port=MANAGED_HOST_PORT, secure=True)

        if configured_secure is False and secure:
            LOGGER.debug("Page context %s requires secure transport; ignoring plaintext preference", context.scheme)
        return EndpointDescriptor(host=host, port=port, secure=secure)

    def websocket_url(self, configured_secure: Optional[bool] = None) -> str:
        if configured_secure is None:
            configured_secure = self._settings.use_encrypted_transport
        return self.resolve(configured_secure=configured_secure).url(self._settings.ws_path)

    def http_url(self) -> str:
        return self.resolve(configured_secure=self._settings.use_encrypted_transport).http_url()
