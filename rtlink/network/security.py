"""Mixed-content detection and secure-endpoint upgrades."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from rtlink.diagnostics.keywords import MIXED_CONTENT_PHRASES
from rtlink.network.endpoint import (
    IMPLICIT_PORTS,
    PLAINTEXT_PAGE_SCHEMES,
    SECURE_PAGE_SCHEMES,
    EndpointDescriptor,
    PageContext,
)

LOGGER = logging.getLogger(__name__)

Endpoint = Union[EndpointDescriptor, str]


class UnupgradableEndpoint(ValueError):
    """Raised when an endpoint does not use a real-time transport scheme."""


@dataclass(frozen=True)
class ViolationOutcome:
    was_upgraded: bool
    reason: str
    endpoint: Optional[Endpoint] = None


@dataclass(frozen=True)
class UrlValidation:
    is_valid: bool
    reason: str
    url: Optional[str] = None


class SecurityPolicyEnforcer:
    """Detects security-policy violations and upgrades endpoints to secure transport."""

    def detect_violation(self, error: BaseException | str | None) -> bool:
        if error is None:
            return False
        message = str(error).lower()
        if any(phrase in message for phrase in MIXED_CONTENT_PHRASES):
            LOGGER.info("Mixed-content policy violation detected: %s", error)
            return True
        if isinstance(error, BaseException):
            if "security" in type(error).__name__.lower():
                LOGGER.info("Security-related error detected: %s", type(error).__name__)
                return True
            category = getattr(error, "category", None)
            if isinstance(category, str) and "security" in category.lower():
                LOGGER.info("Security-category error detected: %s", error)
                return True
        return False

    def upgrade(self, endpoint: Endpoint) -> Endpoint:
        if isinstance(endpoint, EndpointDescriptor):
            if endpoint.secure:
                return endpoint
            port = IMPLICIT_PORTS[True] if endpoint.port == IMPLICIT_PORTS[False] else endpoint.port
            upgraded = endpoint.model_copy(update={"secure": True, "port": port})
            LOGGER.info("Upgraded endpoint %s to %s", endpoint.url(), upgraded.url())
            return upgraded
        return self.upgrade_url(endpoint)

    def upgrade_url(self, url: str) -> str:
        if not url or not isinstance(url, str):
            raise UnupgradableEndpoint("Invalid URL provided for upgrade")
        if url.startswith("wss://"):
            return url
        if url.startswith("ws://"):
            upgraded = "wss://" + url[len("ws://"):]
        elif url.startswith("//"):
            upgraded = "wss:" + url
        elif "://" not in url:
            upgraded = "wss://" + url
        else:
            raise UnupgradableEndpoint(f"Cannot upgrade URL with non-WebSocket scheme: {url}")
        LOGGER.info("Upgraded URL %s to %s", url, upgraded)
        return upgraded

    def handle_violation(self, endpoint: Endpoint, error: BaseException | str | None) -> ViolationOutcome:
        if not self.detect_violation(error):
            return ViolationOutcome(was_upgraded=False, reason="Error is not related to a security policy")
        try:
            upgraded = self.upgrade(endpoint)
        except UnupgradableEndpoint as exc:
            LOGGER.error("Failed to upgrade endpoint after security violation: %s", exc)
            return ViolationOutcome(was_upgraded=False, reason=f"Failed to upgrade endpoint: {exc}")
        return ViolationOutcome(
            was_upgraded=True,
            endpoint=upgraded,
            reason="Upgraded to secure transport due to a security-policy violation",
        )

    def validate_protocol(self, page_scheme: Optional[str], ws_scheme: str) -> bool:
        """Return True when a socket scheme may be opened from a page scheme."""

        page = (page_scheme or "").lower().rstrip(":")
        socket_scheme = ws_scheme.lower()
        if page in SECURE_PAGE_SCHEMES:
            return socket_scheme == "wss"
        if page in PLAINTEXT_PAGE_SCHEMES:
            return socket_scheme in {"ws", "wss"}
        if not page:
            # No hosting page: nothing to violate
            return socket_scheme in {"ws", "wss"}
        LOGGER.warning("Unknown page scheme %s; rejecting socket scheme %s", page_scheme, ws_scheme)
        return False

    def validate_and_upgrade_url(self, url: str, page_context: PageContext) -> UrlValidation:
        if url.startswith("wss://"):
            ws_scheme = "wss"
        elif url.startswith("ws://"):
            ws_scheme = "ws"
        else:
            return UrlValidation(is_valid=False, reason="Invalid WebSocket URL format")
        if self.validate_protocol(page_context.scheme, ws_scheme):
            return UrlValidation(is_valid=True, url=url, reason="URL is compatible with the page scheme")
        try:
            upgraded = self.upgrade_url(url)
        except UnupgradableEndpoint as exc:
            return UrlValidation(is_valid=False, reason=f"Cannot upgrade URL: {exc}")
        return UrlValidation(is_valid=True, url=upgraded, reason="URL was upgraded to secure transport")
