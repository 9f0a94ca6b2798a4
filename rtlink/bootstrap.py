"""Link bootstrap: wire collaborators from settings and run until cancelled."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from rtlink.auth.device import DeviceIdStore
from rtlink.auth.orchestrator import AuthenticationOrchestrator
from rtlink.config import LinkSettings, config_summary, get_settings
from rtlink.diagnostics.monitor import ConnectionMonitor
from rtlink.network.client import RealtimeLink
from rtlink.network.establisher import ConnectionEstablisher
from rtlink.network.endpoint import PageContextProvider
from rtlink.network.protocol import ProtocolResolver
from rtlink.network.transport.base import IdentityProvider, Prober
from rtlink.network.transport.dummy import DummyIdentityProvider, dummy_probe
from rtlink.network.transport.websocket import HttpIdentityProvider, websocket_probe

LOGGER = logging.getLogger(__name__)


def build_link(
    settings: Optional[LinkSettings] = None,
    *,
    page_context: Optional[PageContextProvider] = None,
    provider: Optional[IdentityProvider] = None,
) -> RealtimeLink:
    """Construct a fully wired link; components share one monitor and resolver."""

    settings = settings or get_settings()
    resolver = ProtocolResolver(settings, page_context)
    monitor = ConnectionMonitor(settings.monitor_max_entries)
    prober: Prober
    if provider is None:
        if settings.transport == "websocket":
            provider, prober = HttpIdentityProvider(settings, resolver), websocket_probe
        else:
            provider, prober = DummyIdentityProvider(), dummy_probe
    else:
        prober = websocket_probe if settings.transport == "websocket" else dummy_probe
    LOGGER.debug("Initialising real-time link via %s", type(provider).__name__)

    orchestrator = AuthenticationOrchestrator(
        settings,
        provider,
        monitor=monitor,
        resolver=resolver,
        device_store=DeviceIdStore(path=settings.device_id_path),
    )
    establisher = ConnectionEstablisher(
        settings,
        provider,
        resolver=resolver,
        monitor=monitor,
        prober=prober,
    )
    return RealtimeLink(settings, orchestrator, establisher, monitor=monitor)


async def serve_forever(settings: Optional[LinkSettings] = None) -> None:
    """Connect the link and keep the process alive until cancelled."""

    settings = settings or get_settings()
    for problem in settings.deployment_problems():
        LOGGER.warning("Configuration problem: %s", problem)
    LOGGER.info("%s", config_summary(settings))
    link = build_link(settings)
    try:
        await link.connect()
        await asyncio.Future()  # block until cancelled
    except asyncio.CancelledError:
        LOGGER.info("Link shutdown requested")
        raise
    finally:
        await link.stop()
