"""Collaborator abstractions consumed by the link: identity sessions and transports."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from rtlink.network.endpoint import EndpointDescriptor

LOGGER = logging.getLogger(__name__)

DisconnectHook = Callable[[Optional[BaseException]], None]
ErrorHook = Callable[[BaseException], None]
Prober = Callable[[str, float], Awaitable[None]]


@dataclass(frozen=True)
class Session:
    """Authenticated identity session issued by the identity backend."""

    token: str
    user_id: Optional[str] = None
    username: Optional[str] = None
    created: bool = False
    expires_at: Optional[datetime] = None
    refresh_token: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(tz=timezone.utc)) >= self.expires_at

    @classmethod
    def from_token(cls, token: str, *, refresh_token: Optional[str] = None, created: bool = False) -> "Session":
        """Build a session from a JWT issued by the backend, reading uid/usn/exp claims."""

        claims = _decode_claims(token)
        expires_at = None
        exp = claims.get("exp")
        if isinstance(exp, (int, float)):
            expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        return cls(
            token=token,
            user_id=claims.get("uid"),
            username=claims.get("usn"),
            created=created,
            expires_at=expires_at,
            refresh_token=refresh_token,
        )


def _decode_claims(token: str) -> dict[str, Any]:
    parts = token.split(".")
    if len(parts) != 3:
        return {}
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError):
        LOGGER.debug("Session token claims could not be decoded", exc_info=True)
        return {}
    return claims if isinstance(claims, dict) else {}


class Transport(ABC):
    """Real-time socket created by an identity provider for one endpoint."""

    def __init__(self) -> None:
        self.on_disconnect: Optional[DisconnectHook] = None
        self.on_error: Optional[ErrorHook] = None

    @abstractmethod
    async def connect(self, session: Session, create_presence: bool = True) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    def _notify_disconnect(self, error: Optional[BaseException] = None) -> None:
        hook = self.on_disconnect
        if hook is None:
            return
        try:
            hook(error)
        except Exception:  # noqa: BLE001
            LOGGER.debug("Suppress transport disconnect hook error", exc_info=True)

    def _notify_error(self, error: BaseException) -> None:
        hook = self.on_error
        if hook is None:
            return
        try:
            hook(error)
        except Exception:  # noqa: BLE001
            LOGGER.debug("Suppress transport error hook error", exc_info=True)


class IdentityProvider(ABC):
    """Identity backend plus factory for transports bound to it."""

    @abstractmethod
    async def authenticate(self, device_id: str) -> Session:
        ...

    @abstractmethod
    def create_transport(self, endpoint: EndpointDescriptor) -> Transport:
        """Return an unconnected transport that will dial exactly ``endpoint``."""
