"""Endpoint descriptors and hosting-page context."""

from __future__ import annotations

from typing import Callable, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict

SECURE_PAGE_SCHEMES = frozenset({"https", "wss"})
PLAINTEXT_PAGE_SCHEMES = frozenset({"http", "ws"})
IMPLICIT_PORTS = {True: "443", False: "80"}


class EndpointDescriptor(BaseModel):
    """Resolved (host, port, secure) triple used to build connection URLs."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: str
    secure: bool

    @property
    def scheme(self) -> str:
        return "wss" if self.secure else "ws"

    def _authority(self) -> str:
        if not self.port or self.port == IMPLICIT_PORTS[self.secure]:
            return self.host
        return f"{self.host}:{self.port}"

    def url(self, path: str = "/ws") -> str:
        if path and not path.startswith("/"):
            path = "/" + path
        return f"{self.scheme}://{self._authority()}{path}"

    def http_url(self) -> str:
        return f"{'https' if self.secure else 'http'}://{self._authority()}"


class PageContext(BaseModel):
    """Transport security of the page hosting the client, if any."""

    model_config = ConfigDict(frozen=True)

    origin: Optional[str] = None

    @property
    def scheme(self) -> Optional[str]:
        if not self.origin:
            return None
        raw = self.origin.strip()
        if "://" not in raw:
            # Bare scheme such as "https:" as reported by location.protocol
            raw = raw.rstrip(":") + "://"
        scheme = urlparse(raw).scheme.lower()
        return scheme or None

    @property
    def is_secure(self) -> bool:
        return self.scheme in SECURE_PAGE_SCHEMES

    @property
    def is_ambiguous(self) -> bool:
        scheme = self.scheme
        return scheme is not None and scheme not in SECURE_PAGE_SCHEMES and scheme not in PLAINTEXT_PAGE_SCHEMES


PageContextProvider = Callable[[], PageContext]


def static_page_context(origin: Optional[str]) -> PageContextProvider:
    """Return a provider that always reports the given origin."""

    context = PageContext(origin=origin)
    return lambda: context
