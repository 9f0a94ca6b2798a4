import asyncio
import logging
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from rtlink.auth.device import DeviceIdStore
from rtlink.auth.orchestrator import AuthenticationError, AuthenticationOrchestrator, AuthState
from rtlink.diagnostics.identity import IdentityErrorKind
from rtlink.diagnostics.monitor import AttemptKind, AttemptStatus, ConnectionMonitor
from rtlink.network.endpoint import EndpointDescriptor
from rtlink.network.establisher import AttemptSuperseded
from rtlink.network.transport.base import IdentityProvider, Session
from rtlink.network.transport.dummy import DummyTransport
from rtlink.network.transport.websocket import IdentityRequestError

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class _ZeroJitter:
    def uniform(self, low: float, high: float) -> float:
        return low


class _Clock:
    def __init__(self) -> None:
        self.now = NOW

    def __call__(self) -> datetime:
        return self.now


class _ScriptedIdentity(IdentityProvider):
    def __init__(self, outcomes=()) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[str] = []

    async def authenticate(self, device_id: str) -> Session:
        self.calls.append(device_id)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, asyncio.Event):
            await outcome.wait()
            outcome = None
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome or Session(token="t", user_id=device_id, expires_at=NOW + timedelta(hours=1))

    def create_transport(self, endpoint: EndpointDescriptor) -> DummyTransport:
        return DummyTransport(endpoint=endpoint)


async def _wait_for(predicate, *, timeout: float = 0.5, interval: float = 0.01) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


def _orchestrator(settings, provider, *, delay, clock=None, monitor=None, store=None):
    return AuthenticationOrchestrator(
        settings,
        provider,
        monitor=monitor or ConnectionMonitor(),
        device_store=store or DeviceIdStore(path=settings.device_id_path),
        delay=delay,
        rng=_ZeroJitter(),
        clock=clock or _Clock(),
    )


@pytest.mark.asyncio
async def test_placeholder_credential_in_production_never_reaches_network(make_settings, recording_delay):
    settings = make_settings(environment="production", identity_credential="defaultkey")
    provider = _ScriptedIdentity()
    monitor = ConnectionMonitor()
    orchestrator = _orchestrator(settings, provider, delay=recording_delay, monitor=monitor)

    with pytest.raises(AuthenticationError) as excinfo:
        await orchestrator.retry_authenticate(3)

    classification = excinfo.value.classification
    assert classification.identity_kind is IdentityErrorKind.CREDENTIAL_INVALID
    assert classification.retryable is False
    assert provider.calls == []
    assert len(orchestrator.get_attempt_history()) == 1
    assert recording_delay.calls == []
    assert monitor.get_metrics().total_attempts == 0
    status = orchestrator.get_status()
    assert status.state is AuthState.FAILED
    assert status.credential_valid is False
    assert status.authenticated is False


@pytest.mark.asyncio
async def test_placeholder_credential_in_development_only_warns(make_settings, recording_delay, caplog):
    settings = make_settings(identity_credential="defaultkey")
    provider = _ScriptedIdentity()
    orchestrator = _orchestrator(settings, provider, delay=recording_delay)

    caplog.set_level(logging.WARNING)
    session = await orchestrator.authenticate("device_0123456789")

    assert session.user_id == "device_0123456789"
    assert any("placeholder" in record.getMessage() for record in caplog.records)
    assert "defaultkey" not in caplog.text


@pytest.mark.asyncio
async def test_short_credential_is_rejected(make_settings, recording_delay):
    provider = _ScriptedIdentity()
    orchestrator = _orchestrator(make_settings(identity_credential="abc"), provider, delay=recording_delay)

    with pytest.raises(AuthenticationError, match="credential_invalid error"):
        await orchestrator.authenticate()

    assert provider.calls == []


@pytest.mark.asyncio
async def test_network_failure_is_retried_with_backoff(make_settings, recording_delay):
    provider = _ScriptedIdentity([IdentityRequestError("Request failed: [Errno 111] Connection refused")])
    monitor = ConnectionMonitor()
    orchestrator = _orchestrator(make_settings(), provider, delay=recording_delay, monitor=monitor)

    session = await orchestrator.retry_authenticate(3, device_id="device_0123456789")

    assert session.token == "t"
    assert recording_delay.calls == [4.0]
    assert len(provider.calls) == 2
    identity_logs = monitor.get_filtered_logs(kind=AttemptKind.IDENTITY)
    assert [entry.status for entry in identity_logs] == [AttemptStatus.FAILED, AttemptStatus.SUCCESS]
    status = orchestrator.get_status()
    assert status.authenticated is True
    assert status.state is AuthState.AUTHENTICATED
    assert status.attempts == 2
    assert status.session_expiry == NOW + timedelta(hours=1)


@pytest.mark.asyncio
async def test_server_rejected_credential_stops_immediately(make_settings, recording_delay):
    provider = _ScriptedIdentity([IdentityRequestError("HTTP 401: Unauthorized", status_code=401)])
    orchestrator = _orchestrator(make_settings(), provider, delay=recording_delay)

    with pytest.raises(AuthenticationError) as excinfo:
        await orchestrator.retry_authenticate(3, device_id="device_0123456789")

    assert str(excinfo.value).startswith("credential_invalid error")
    assert excinfo.value.classification.http_status == 401
    assert isinstance(excinfo.value.__cause__, IdentityRequestError)
    assert len(provider.calls) == 1
    assert recording_delay.calls == []


@pytest.mark.asyncio
async def test_exhausted_retries_report_attempt_count(make_settings, recording_delay):
    provider = _ScriptedIdentity(
        [IdentityRequestError("HTTP 503: Service Unavailable", status_code=503) for _ in range(3)]
    )
    orchestrator = _orchestrator(make_settings(), provider, delay=recording_delay)

    with pytest.raises(AuthenticationError) as excinfo:
        await orchestrator.retry_authenticate(3, device_id="device_0123456789")

    assert "Authentication failed after 3 attempts" in str(excinfo.value)
    assert excinfo.value.classification.identity_kind is IdentityErrorKind.SERVER
    assert excinfo.value.attempts == 3
    assert recording_delay.calls == [4.0, 8.0]
    assert orchestrator.get_status().state is AuthState.FAILED


def test_backoff_is_capped(make_settings, recording_delay):
    orchestrator = _orchestrator(make_settings(auth_retry_base_ms=20000), _ScriptedIdentity(), delay=recording_delay)

    assert orchestrator.backoff_ms(1) == 30000


@pytest.mark.asyncio
async def test_expired_session_is_demoted_on_read(make_settings, recording_delay):
    clock = _Clock()
    orchestrator = _orchestrator(make_settings(), _ScriptedIdentity(), delay=recording_delay, clock=clock)
    await orchestrator.authenticate("device_0123456789")
    assert orchestrator.get_status().authenticated is True

    clock.now = NOW + timedelta(hours=2)

    status = orchestrator.get_status()
    assert status.authenticated is False
    assert status.state is AuthState.IDLE
    assert orchestrator.get_current_session() is None


@pytest.mark.asyncio
async def test_malformed_device_id_is_rejected_locally(make_settings, recording_delay):
    provider = _ScriptedIdentity()
    orchestrator = _orchestrator(make_settings(), provider, delay=recording_delay)

    with pytest.raises(AuthenticationError) as excinfo:
        await orchestrator.retry_authenticate(3, device_id="short")

    assert excinfo.value.classification.identity_kind is IdentityErrorKind.TOKEN_MALFORMED
    assert provider.calls == []


@pytest.mark.asyncio
async def test_stored_device_id_is_persisted_and_rotated(make_settings, recording_delay, tmp_path):
    ids = count(1)
    store = DeviceIdStore(path=tmp_path / "state" / "device_id", generator=lambda: f"device_{next(ids):010d}")
    provider = _ScriptedIdentity([IdentityRequestError("HTTP 400: Invalid device ID", status_code=400)])
    orchestrator = _orchestrator(make_settings(), provider, delay=recording_delay, store=store)

    with pytest.raises(AuthenticationError) as excinfo:
        await orchestrator.authenticate()
    await orchestrator.authenticate()

    assert excinfo.value.classification.identity_kind is IdentityErrorKind.TOKEN_MALFORMED
    assert provider.calls == ["device_0000000001", "device_0000000002"]
    assert (tmp_path / "state" / "device_id").read_text(encoding="utf-8") == "device_0000000002"


def test_device_store_reuses_persisted_id(tmp_path):
    path = tmp_path / "device_id"
    path.write_text("device_existing-id\n", encoding="utf-8")

    assert DeviceIdStore(path=path).load_or_create() == "device_existing-id"


@pytest.mark.asyncio
async def test_newer_call_supersedes_in_flight_authentication(make_settings, recording_delay):
    gate = asyncio.Event()
    provider = _ScriptedIdentity([gate])
    orchestrator = _orchestrator(make_settings(), provider, delay=recording_delay)

    first = asyncio.create_task(orchestrator.authenticate("device_0123456789"))
    assert await _wait_for(lambda: len(provider.calls) == 1)
    second = await orchestrator.authenticate("device_9876543210")
    gate.set()

    with pytest.raises(AttemptSuperseded):
        await first
    assert orchestrator.get_current_session() is second
    assert orchestrator.get_status().state is AuthState.AUTHENTICATED


@pytest.mark.asyncio
async def test_clear_session_resets_state(make_settings, recording_delay):
    orchestrator = _orchestrator(make_settings(), _ScriptedIdentity(), delay=recording_delay)
    await orchestrator.authenticate("device_0123456789")

    orchestrator.clear_session()

    assert orchestrator.get_current_session() is None
    status = orchestrator.get_status()
    assert status.state is AuthState.IDLE
    assert status.authenticated is False
