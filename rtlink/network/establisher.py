"""Connection establishment with probing, protocol fallback and backoff."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict

from rtlink.config import LinkSettings
from rtlink.diagnostics.classifier import ErrorClassification, ErrorClassifier
from rtlink.diagnostics.monitor import AttemptKind, ConnectionMonitor
from rtlink.network.delays import CancelableDelay, DelayCancelled
from rtlink.network.endpoint import EndpointDescriptor
from rtlink.network.protocol import ProtocolResolver
from rtlink.network.security import SecurityPolicyEnforcer
from rtlink.network.transport.base import IdentityProvider, Prober, Session, Transport

LOGGER = logging.getLogger(__name__)

CandidateProtocol = Literal["secure", "plaintext"]


class EstablishError(RuntimeError):
    """Raised when no connection could be established within the retry policy."""

    def __init__(
        self,
        message: str,
        *,
        classification: Optional[ErrorClassification] = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.classification = classification
        self.attempts = attempts


class AttemptSuperseded(RuntimeError):
    """Raised by a call whose outcome was invalidated by a newer call."""


class ConnectTimeout(TimeoutError):
    """A transport connect did not complete within the connect timeout."""


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delays_ms: tuple[int, ...] = (1000, 2000, 4000)
    candidate_protocols: tuple[CandidateProtocol, ...] = ("secure", "plaintext")

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not self.delays_ms:
            raise ValueError("delays_ms must contain at least one entry")
        if not self.candidate_protocols:
            raise ValueError("candidate_protocols must contain at least one entry")

    def delay_for(self, attempt: int) -> int:
        return self.delays_ms[min(max(attempt, 0), len(self.delays_ms) - 1)]

    def candidate_for(self, attempt: int) -> CandidateProtocol:
        return self.candidate_protocols[min(max(attempt, 0), len(self.candidate_protocols) - 1)]

    @classmethod
    def from_settings(cls, settings: LinkSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            delays_ms=tuple(settings.retry_delays_ms),
            candidate_protocols=tuple(settings.retry_candidate_protocols),
        )


class ConnectionStatus(BaseModel):
    """Read-only snapshot of the establisher's connection state."""

    model_config = ConfigDict(frozen=True)

    connected: bool = False
    secure: Optional[bool] = None
    url: Optional[str] = None
    last_error: Optional[str] = None
    last_classification: Optional[ErrorClassification] = None
    attempts_made: int = 0
    updated_at: Optional[datetime] = None


StatusListener = Callable[[ConnectionStatus], None]
DisconnectListener = Callable[[Transport, Optional[BaseException]], None]


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class ConnectionEstablisher:
    """Turns an identity session into a connected transport.

    Each ``create_connection`` call takes a new generation; completions from an
    older call never overwrite status and raise ``AttemptSuperseded`` instead.
    """

    def __init__(
        self,
        settings: LinkSettings,
        provider: IdentityProvider,
        *,
        resolver: Optional[ProtocolResolver] = None,
        enforcer: Optional[SecurityPolicyEnforcer] = None,
        classifier: Optional[ErrorClassifier] = None,
        monitor: Optional[ConnectionMonitor] = None,
        prober: Optional[Prober] = None,
        delay: Optional[CancelableDelay] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings
        self._provider = provider
        self._resolver = resolver or ProtocolResolver(settings)
        self._enforcer = enforcer or SecurityPolicyEnforcer()
        self._classifier = classifier or ErrorClassifier()
        self._monitor = monitor or ConnectionMonitor(settings.monitor_max_entries)
        self._prober = prober
        self._delay = delay or CancelableDelay()
        self._clock = clock
        self._policy = RetryPolicy.from_settings(settings)
        self._generation = 0
        self._transport: Optional[Transport] = None
        self._status = ConnectionStatus(updated_at=clock())
        self._status_listeners: list[StatusListener] = []
        self._disconnect_listeners: list[DisconnectListener] = []

    @property
    def monitor(self) -> ConnectionMonitor:
        return self._monitor

    @property
    def transport(self) -> Optional[Transport]:
        return self._transport

    def get_status(self) -> ConnectionStatus:
        return self._status

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        self._status_listeners.append(listener)

        def _remove() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return _remove

    def add_disconnect_listener(self, listener: DisconnectListener) -> None:
        self._disconnect_listeners.append(listener)

    async def create_connection(
        self,
        session: Session,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> Transport:
        policy = retry_policy or self._policy
        self._generation += 1
        generation = self._generation
        self._delay.cancel_pending()
        previous, self._transport = self._transport, None
        if previous is not None:
            LOGGER.info("Releasing current connection before re-establishing")
            await self._discard(previous)
            self._ensure_current(generation)

        attempts_made = 0
        last_error: Optional[BaseException] = None
        last_classification: Optional[ErrorClassification] = None
        upgraded = False
        fast_retry = False
        attempt = 0
        self._publish(generation, connected=False, attempts_made=0)

        while attempt < policy.max_attempts:
            candidate = policy.candidate_for(attempt)
            endpoint = self._resolver.resolve(configured_secure=candidate == "secure")
            if upgraded:
                endpoint = self._enforcer.upgrade(endpoint)
            url = endpoint.url(self._settings.ws_path)

            if self._prober is not None and self._settings.validate_before_connect and not fast_retry:
                try:
                    await self._probe(url)
                except Exception as exc:  # noqa: BLE001
                    self._ensure_current(generation)
                    attempts_made += 1
                    last_error = exc
                    last_classification = self._classifier.classify(exc, "transport")
                    self._publish(
                        generation,
                        last_error=str(exc),
                        last_classification=last_classification,
                        attempts_made=attempts_made,
                    )
                    if attempt + 1 >= policy.max_attempts:
                        raise EstablishError(
                            f"Connection validation failed: {exc}",
                            classification=last_classification,
                            attempts=attempts_made,
                        ) from exc
                    delay_ms = policy.delay_for(attempt)
                    LOGGER.warning(
                        "Endpoint %s failed validation (attempt %s/%s): %s; retrying in %sms",
                        url,
                        attempt + 1,
                        policy.max_attempts,
                        exc,
                        delay_ms,
                    )
                    await self._sleep(delay_ms, generation)
                    attempt += 1
                    continue
                self._ensure_current(generation)
            fast_retry = False

            transport = self._provider.create_transport(endpoint)
            try:
                await self._tracked_connect(transport, session, endpoint, attempt)
            except Exception as exc:  # noqa: BLE001
                await self._discard(transport)
                self._ensure_current(generation)
                attempts_made += 1
                last_error = exc
                last_classification = self._classifier.classify(exc, "transport")
                self._publish(
                    generation,
                    connected=False,
                    last_error=str(exc),
                    last_classification=last_classification,
                    attempts_made=attempts_made,
                )

                if not upgraded and not endpoint.secure:
                    outcome = self._enforcer.handle_violation(endpoint, exc)
                    if outcome.was_upgraded:
                        upgraded = True
                        fast_retry = True
                        LOGGER.warning(
                            "Security policy blocked %s; retrying immediately over %s",
                            url,
                            self._enforcer.upgrade(endpoint).url(self._settings.ws_path),
                        )
                        continue

                if not last_classification.retryable:
                    LOGGER.error("Non-retryable connection failure: %s", last_classification.technical_message)
                    raise EstablishError(
                        f"Connection failed: {exc}",
                        classification=last_classification,
                        attempts=attempts_made,
                    ) from exc
                if attempt + 1 >= policy.max_attempts:
                    break
                delay_ms = policy.delay_for(attempt)
                LOGGER.warning(
                    "Connect to %s failed (attempt %s/%s, %s): %s; retrying in %sms",
                    url,
                    attempt + 1,
                    policy.max_attempts,
                    last_classification.kind.value,
                    exc,
                    delay_ms,
                )
                await self._sleep(delay_ms, generation)
                attempt += 1
                continue

            if generation != self._generation:
                LOGGER.info("Discarding connection to %s established by a superseded call", url)
                await self._discard(transport)
                raise AttemptSuperseded("Connection attempt superseded by a newer call")
            attempts_made += 1
            self._adopt(transport, generation)
            self._publish(
                generation,
                connected=True,
                secure=endpoint.secure,
                url=url,
                last_error=None,
                last_classification=None,
                attempts_made=attempts_made,
            )
            LOGGER.info("Connected to %s after %s attempt(s)", url, attempts_made)
            return transport

        message = (
            f"Failed to establish connection after {attempts_made} attempts. "
            f"Last error: {last_error if last_error is not None else 'unknown'}"
        )
        LOGGER.error("%s", message)
        raise EstablishError(message, classification=last_classification, attempts=attempts_made) from last_error

    async def close(self) -> None:
        """Invalidate in-flight calls and close the current transport."""

        self._generation += 1
        self._delay.cancel_pending()
        transport, self._transport = self._transport, None
        if transport is not None:
            await self._discard(transport)
        self._status = self._status.model_copy(update={"connected": False, "updated_at": self._clock()})

    async def _probe(self, url: str) -> None:
        assert self._prober is not None
        timeout_ms = self._settings.probe_timeout_ms
        try:
            await asyncio.wait_for(self._prober(url, timeout_ms / 1000), timeout_ms / 1000)
        except asyncio.TimeoutError as exc:
            raise ConnectTimeout(f"Connection validation timed out after {timeout_ms}ms") from exc

    async def _tracked_connect(
        self,
        transport: Transport,
        session: Session,
        endpoint: EndpointDescriptor,
        retry_index: int,
    ) -> None:
        timeout_ms = self._settings.connect_timeout_ms
        attempt_id = self._monitor.start_attempt(AttemptKind.TRANSPORT, endpoint, retry_index)
        try:
            await asyncio.wait_for(
                transport.connect(session, self._settings.create_presence),
                timeout_ms / 1000,
            )
        except asyncio.TimeoutError as exc:
            self._monitor.mark_timeout(attempt_id, timeout_ms)
            raise ConnectTimeout(f"Connection timed out after {timeout_ms}ms") from exc
        except asyncio.CancelledError:
            self._monitor.mark_failure(attempt_id, "Connection attempt cancelled")
            raise
        except Exception as exc:
            self._monitor.mark_failure(attempt_id, exc)
            raise
        self._monitor.mark_success(attempt_id, {"secure": endpoint.secure})

    async def _sleep(self, delay_ms: int, generation: int) -> None:
        try:
            await self._delay(delay_ms / 1000)
        except DelayCancelled:
            raise AttemptSuperseded("Backoff cancelled by a newer connection call") from None
        self._ensure_current(generation)

    def _ensure_current(self, generation: int) -> None:
        if generation != self._generation:
            raise AttemptSuperseded("Connection attempt superseded by a newer call")

    def _adopt(self, transport: Transport, generation: int) -> None:
        self._transport = transport

        def _on_disconnect(error: Optional[BaseException]) -> None:
            self._handle_disconnect(transport, generation, error)

        def _on_error(error: BaseException) -> None:
            self._handle_error(transport, generation, error)

        transport.on_disconnect = _on_disconnect
        transport.on_error = _on_error

    def _handle_error(self, transport: Transport, generation: int, error: BaseException) -> None:
        if generation != self._generation or transport is not self._transport:
            return
        classification = self._classifier.classify(error, "transport")
        LOGGER.warning("Transport error (%s): %s", classification.kind.value, error)
        self._publish(generation, last_error=str(error), last_classification=classification)

    def _handle_disconnect(
        self, transport: Transport, generation: int, error: Optional[BaseException]
    ) -> None:
        if generation != self._generation or transport is not self._transport:
            LOGGER.debug("Ignoring disconnect from a superseded transport")
            return
        self._transport = None
        changes: dict = {"connected": False}
        if error is not None:
            changes["last_error"] = str(error)
            changes["last_classification"] = self._classifier.classify(error, "transport")
        self._publish(generation, **changes)
        LOGGER.warning("Real-time connection lost: %s", error or "closed")
        for listener in list(self._disconnect_listeners):
            try:
                listener(transport, error)
            except Exception:  # noqa: BLE001
                LOGGER.debug("Suppress disconnect listener error", exc_info=True)

    async def _discard(self, transport: Transport) -> None:
        transport.on_disconnect = None
        transport.on_error = None
        try:
            await transport.close()
        except Exception:  # noqa: BLE001
            LOGGER.debug("Suppress transport close error", exc_info=True)

    def _publish(self, generation: int, **changes) -> None:
        if generation != self._generation:
            return
        changes["updated_at"] = self._clock()
        self._status = self._status.model_copy(update=changes)
        for listener in list(self._status_listeners):
            try:
                listener(self._status)
            except Exception:  # noqa: BLE001
                LOGGER.debug("Suppress status listener error", exc_info=True)
