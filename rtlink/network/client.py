"""High-level link: authenticate, connect, and reconnect after unexpected drops."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict

from rtlink.auth.orchestrator import AuthenticationError, AuthenticationOrchestrator, AuthStatus
from rtlink.config import LinkSettings
from rtlink.diagnostics.classifier import ErrorClassifier
from rtlink.diagnostics.monitor import ConnectionMetrics, ConnectionMonitor
from rtlink.network.delays import CancelableDelay, DelayCancelled
from rtlink.network.establisher import AttemptSuperseded, ConnectionEstablisher, ConnectionStatus, EstablishError
from rtlink.network.transport.base import Session, Transport

LOGGER = logging.getLogger(__name__)

ConnectedHook = Callable[[Transport, bool], Awaitable[None]]


class LinkStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    auth: AuthStatus
    connection: ConnectionStatus
    metrics: ConnectionMetrics
    reconnecting: bool = False
    reconnect_attempts: int = 0


class RealtimeLink:
    """Owns one authenticated real-time connection for the application."""

    def __init__(
        self,
        settings: LinkSettings,
        orchestrator: AuthenticationOrchestrator,
        establisher: ConnectionEstablisher,
        *,
        monitor: Optional[ConnectionMonitor] = None,
        classifier: Optional[ErrorClassifier] = None,
        delay: Optional[CancelableDelay] = None,
        on_connected: Optional[ConnectedHook] = None,
    ) -> None:
        self._settings = settings
        self._orchestrator = orchestrator
        self._establisher = establisher
        self._monitor = monitor or establisher.monitor
        self._classifier = classifier or ErrorClassifier()
        self._delay = delay or CancelableDelay()
        self._on_connected = on_connected
        self._device_id: Optional[str] = None
        self._transport: Optional[Transport] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._reconnect_attempts = 0
        self._stopped = asyncio.Event()
        self._establisher.add_disconnect_listener(self._on_disconnect)

    @property
    def transport(self) -> Optional[Transport]:
        return self._transport

    @property
    def monitor(self) -> ConnectionMonitor:
        return self._monitor

    async def connect(self, device_id: Optional[str] = None) -> Transport:
        """Authenticate (with retry) and establish the real-time connection."""

        self._stopped.clear()
        self._device_id = device_id
        session = await self._orchestrator.retry_authenticate(self._settings.auth_max_attempts, device_id)
        transport = await self._establisher.create_connection(session)
        await self._adopt(transport, initial=True)
        return transport

    async def stop(self) -> None:
        """Stop reconnecting and close the transport."""

        self._stopped.set()
        self._delay.cancel_pending()
        task = self._reconnect_task
        if task and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._reconnect_task = None
        await self._establisher.close()
        self._transport = None
        LOGGER.info("Real-time link stopped")

    def status(self) -> LinkStatus:
        return LinkStatus(
            auth=self._orchestrator.get_status(),
            connection=self._establisher.get_status(),
            metrics=self._monitor.get_metrics(),
            reconnecting=bool(self._reconnect_task and not self._reconnect_task.done()),
            reconnect_attempts=self._reconnect_attempts,
        )

    def debug_info(self) -> dict[str, Any]:
        info = self._monitor.get_debug_info()
        info["link"] = self.status().model_dump(mode="json", exclude={"metrics"})
        return info

    async def _adopt(self, transport: Transport, *, initial: bool) -> None:
        self._transport = transport
        self._reconnect_attempts = 0
        if self._on_connected:
            try:
                await self._on_connected(transport, initial)
            except Exception:  # noqa: BLE001
                LOGGER.debug("Suppress link on_connected callback error", exc_info=True)

    def _on_disconnect(self, transport: Transport, error: Optional[BaseException]) -> None:
        if transport is not self._transport:
            return
        self._transport = None
        if self._stopped.is_set() or not self._settings.reconnect_on_disconnect:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop(error), name="rtlink-reconnect")

    async def _reconnect_loop(self, error: Optional[BaseException]) -> None:
        cause: BaseException = error or ConnectionError("WebSocket connection closed")
        while not self._stopped.is_set():
            classification = self._classifier.classify(cause, "transport")
            if not self._classifier.should_retry(classification, self._reconnect_attempts):
                LOGGER.error(
                    "Giving up reconnecting after %s attempt(s): %s",
                    self._reconnect_attempts,
                    classification.user_message,
                )
                return
            delay_ms = self._classifier.retry_delay_ms(classification.kind, self._reconnect_attempts)
            self._reconnect_attempts += 1
            LOGGER.warning(
                "Reconnecting in %sms (attempt %s, %s): %s",
                delay_ms,
                self._reconnect_attempts,
                classification.kind.value,
                cause,
            )
            try:
                await self._delay(delay_ms / 1000)
            except DelayCancelled:
                return
            if self._stopped.is_set():
                return
            try:
                session = await self._session_for_reconnect()
                transport = await self._establisher.create_connection(session)
            except AttemptSuperseded:
                return
            except (AuthenticationError, EstablishError) as exc:
                if exc.classification is not None and not exc.classification.retryable:
                    LOGGER.error("Giving up reconnecting: %s", exc.classification.user_message)
                    return
                cause = exc
                continue
            await self._adopt(transport, initial=False)
            LOGGER.info("Real-time link re-established")
            return

    async def _session_for_reconnect(self) -> Session:
        session = self._orchestrator.get_current_session()
        if session is not None:
            return session
        LOGGER.info("Identity session no longer valid; re-authenticating before reconnect")
        return await self._orchestrator.retry_authenticate(self._settings.auth_max_attempts, self._device_id)
