"""Identity-session acquisition with credential checks and retry."""

from __future__ import annotations

import asyncio
import enum
import logging
import random
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Deque, Optional

from pydantic import BaseModel, ConfigDict

from rtlink.auth.credential import CredentialValidator
from rtlink.auth.device import DeviceIdStore, device_id_problem
from rtlink.config import LinkSettings, mask_secret
from rtlink.diagnostics.identity import (
    IdentityContext,
    IdentityErrorClassification,
    IdentityErrorClassifier,
    IdentityErrorKind,
)
from rtlink.diagnostics.monitor import AttemptKind, ConnectionMonitor
from rtlink.network.delays import CancelableDelay, DelayCancelled
from rtlink.network.establisher import AttemptSuperseded
from rtlink.network.protocol import ProtocolResolver
from rtlink.network.transport.base import IdentityProvider, Session

LOGGER = logging.getLogger(__name__)

HISTORY_SIZE = 50


class AuthState(enum.Enum):
    IDLE = "IDLE"
    VALIDATING_CREDENTIAL = "VALIDATING_CREDENTIAL"
    AUTHENTICATING = "AUTHENTICATING"
    AUTHENTICATED = "AUTHENTICATED"
    FAILED = "FAILED"


_ALLOWED_TRANSITIONS: dict[AuthState, set[AuthState]] = {
    AuthState.IDLE: {AuthState.VALIDATING_CREDENTIAL},
    AuthState.VALIDATING_CREDENTIAL: {AuthState.AUTHENTICATING, AuthState.FAILED, AuthState.VALIDATING_CREDENTIAL},
    AuthState.AUTHENTICATING: {AuthState.AUTHENTICATED, AuthState.FAILED, AuthState.VALIDATING_CREDENTIAL},
    AuthState.AUTHENTICATED: {AuthState.VALIDATING_CREDENTIAL, AuthState.IDLE},
    AuthState.FAILED: {AuthState.VALIDATING_CREDENTIAL, AuthState.IDLE},
}


class AuthenticationError(RuntimeError):
    """Authentication failed; carries the identity classification of the last failure."""

    def __init__(self, message: str, *, classification: IdentityErrorClassification, attempts: int = 1) -> None:
        super().__init__(message)
        self.classification = classification
        self.attempts = attempts


class AuthenticationTimeout(TimeoutError):
    """The identity backend did not answer within the identity timeout."""


class AuthStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: AuthState = AuthState.IDLE
    authenticated: bool = False
    credential_valid: Optional[bool] = None
    last_error: Optional[str] = None
    last_classification: Optional[IdentityErrorClassification] = None
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    session_expiry: Optional[datetime] = None


@dataclass(frozen=True)
class AuthAttemptRecord:
    attempt_number: int
    started_at: datetime
    success: bool
    duration_ms: int
    error: Optional[str] = None
    identity_kind: Optional[IdentityErrorKind] = None


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class AuthenticationOrchestrator:
    """Drives IDLE -> VALIDATING_CREDENTIAL -> AUTHENTICATING -> AUTHENTICATED | FAILED."""

    def __init__(
        self,
        settings: LinkSettings,
        provider: IdentityProvider,
        *,
        monitor: Optional[ConnectionMonitor] = None,
        classifier: Optional[IdentityErrorClassifier] = None,
        validator: Optional[CredentialValidator] = None,
        device_store: Optional[DeviceIdStore] = None,
        resolver: Optional[ProtocolResolver] = None,
        delay: Optional[CancelableDelay] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings
        self._provider = provider
        self._monitor = monitor or ConnectionMonitor(settings.monitor_max_entries)
        self._classifier = classifier or IdentityErrorClassifier()
        self._validator = validator or CredentialValidator(settings)
        self._device_store = device_store or DeviceIdStore(path=settings.device_id_path)
        self._resolver = resolver or ProtocolResolver(settings)
        self._delay = delay or CancelableDelay()
        self._rng = rng or random.Random()
        self._clock = clock
        self._generation = 0
        self._session: Optional[Session] = None
        self._status = AuthStatus()
        self._history: Deque[AuthAttemptRecord] = deque(maxlen=HISTORY_SIZE)

    @property
    def state(self) -> AuthState:
        return self._status.state

    def get_status(self) -> AuthStatus:
        session = self._session
        if self._status.state is AuthState.AUTHENTICATED and session is not None and session.is_expired(self._clock()):
            LOGGER.info("Identity session expired at %s", session.expires_at)
            self._session = None
            self._update(
                state=AuthState.IDLE,
                authenticated=False,
                last_error="Session expired",
            )
        return self._status

    def get_current_session(self) -> Optional[Session]:
        self.get_status()
        return self._session

    def clear_session(self) -> None:
        self._generation += 1
        self._delay.cancel_pending()
        self._session = None
        self._update(state=AuthState.IDLE, authenticated=False, session_expiry=None)
        LOGGER.info("Identity session cleared")

    def get_attempt_history(self) -> list[AuthAttemptRecord]:
        return list(self._history)

    def backoff_ms(self, attempt: int) -> int:
        """Delay before retry ``attempt`` (1-based): exponential with jitter, capped."""

        base = self._settings.auth_retry_base_ms * (2 ** attempt)
        jitter = self._rng.uniform(0, self._settings.auth_retry_jitter_ms)
        return int(min(base + jitter, self._settings.auth_retry_max_ms))

    async def authenticate(self, device_id: Optional[str] = None) -> Session:
        generation = self._begin()
        return await self._attempt(device_id, generation, 1)

    async def retry_authenticate(self, max_attempts: Optional[int] = None, device_id: Optional[str] = None) -> Session:
        limit = max_attempts if max_attempts is not None else self._settings.auth_max_attempts
        if limit < 1:
            raise ValueError("max_attempts must be at least 1")
        generation = self._begin()
        last_error: Optional[AuthenticationError] = None
        attempts = 0

        for attempt in range(limit):
            if attempt > 0:
                delay_ms = self.backoff_ms(attempt)
                LOGGER.warning(
                    "Authentication attempt %s/%s failed (%s); retrying in %sms",
                    attempt,
                    limit,
                    last_error.classification.identity_kind.value if last_error else "unknown",
                    delay_ms,
                )
                await self._sleep(delay_ms, generation)
            attempts += 1
            try:
                return await self._attempt(device_id, generation, attempt + 1)
            except AuthenticationError as exc:
                last_error = exc
                if not exc.classification.retryable:
                    raise
                if not self._classifier.should_retry(exc.classification, attempts):
                    LOGGER.warning(
                        "Retry ceiling reached for %s after %s attempt(s)",
                        exc.classification.identity_kind.value,
                        attempts,
                    )
                    break

        assert last_error is not None
        message = f"Authentication failed after {attempts} attempts: {last_error.classification.technical_message}"
        LOGGER.error("%s", message)
        raise AuthenticationError(message, classification=last_error.classification, attempts=attempts) from last_error

    def _begin(self) -> int:
        self._generation += 1
        self._delay.cancel_pending()
        self._update(attempts=0)
        return self._generation

    async def _attempt(self, device_id: Optional[str], generation: int, attempt_number: int) -> Session:
        self._transition(AuthState.VALIDATING_CREDENTIAL)
        started_at = self._clock()
        self._update(attempts=attempt_number, last_attempt_at=started_at)
        context = self._context(attempt_number)

        check = self._validator.validate()
        if not check.valid:
            classification = self._classifier.credential_invalid(check.reason or "invalid credential", context)
            self._fail(classification, check.reason or "invalid credential", attempt_number, started_at, credential_valid=False)
            raise AuthenticationError(
                f"{classification.identity_kind.value} error: {classification.technical_message}",
                classification=classification,
            )
        self._update(credential_valid=True)

        stored = device_id is None
        if stored:
            device_id = self._device_store.load_or_create()
        problem = device_id_problem(device_id)
        if problem:
            classification = self._classifier.token_malformed(problem)
            if stored:
                self._device_store.rotate()
            self._fail(classification, problem, attempt_number, started_at)
            raise AuthenticationError(
                f"{classification.identity_kind.value} error: {classification.technical_message}",
                classification=classification,
            )

        self._transition(AuthState.AUTHENTICATING)
        endpoint = self._resolver.resolve(configured_secure=self._settings.use_encrypted_transport)
        attempt_id = self._monitor.start_attempt(AttemptKind.IDENTITY, endpoint, attempt_number - 1)
        timeout_ms = self._settings.identity_timeout_ms
        try:
            try:
                session = await asyncio.wait_for(self._provider.authenticate(device_id), timeout_ms / 1000)
            except asyncio.TimeoutError as exc:
                self._monitor.mark_timeout(attempt_id, timeout_ms)
                raise AuthenticationTimeout(f"Authentication request timed out after {timeout_ms}ms") from exc
            except asyncio.CancelledError:
                self._monitor.mark_failure(attempt_id, "Authentication cancelled")
                raise
            except Exception as exc:
                self._monitor.mark_failure(attempt_id, exc)
                raise
        except Exception as exc:  # noqa: BLE001
            self._ensure_current(generation)
            classification = self._classifier.classify(exc, context)
            if classification.identity_kind is IdentityErrorKind.TOKEN_MALFORMED and stored:
                self._device_store.rotate()
            self._fail(classification, str(exc) or type(exc).__name__, attempt_number, started_at)
            raise AuthenticationError(
                f"{classification.identity_kind.value} error: {classification.technical_message}",
                classification=classification,
            ) from exc

        self._monitor.mark_success(attempt_id)
        if generation != self._generation:
            LOGGER.info("Discarding session issued to a superseded authentication call")
            raise AttemptSuperseded("Authentication superseded by a newer call")
        self._session = session
        self._transition(AuthState.AUTHENTICATED)
        self._record(attempt_number, started_at, success=True)
        self._update(
            authenticated=True,
            last_error=None,
            last_classification=None,
            session_expiry=session.expires_at,
        )
        LOGGER.info(
            "Authenticated user=%s expires=%s (attempt %s)",
            session.user_id,
            session.expires_at,
            attempt_number,
        )
        return session

    def _context(self, attempt_number: int) -> IdentityContext:
        endpoint = self._resolver.resolve(configured_secure=self._settings.use_encrypted_transport)
        return IdentityContext(
            credential_masked=mask_secret(self._settings.identity_credential),
            host=endpoint.host,
            port=endpoint.port,
            secure=endpoint.secure,
            environment=self._settings.environment,
            attempt_number=attempt_number,
        )

    def _fail(
        self,
        classification: IdentityErrorClassification,
        error: str,
        attempt_number: int,
        started_at: datetime,
        *,
        credential_valid: Optional[bool] = None,
    ) -> None:
        self._transition(AuthState.FAILED)
        self._record(attempt_number, started_at, success=False, error=error, kind=classification.identity_kind)
        changes = {
            "authenticated": False,
            "last_error": error,
            "last_classification": classification,
        }
        if credential_valid is not None:
            changes["credential_valid"] = credential_valid
        self._update(**changes)
        LOGGER.error(
            "Authentication failed (%s, retryable=%s): %s",
            classification.identity_kind.value,
            classification.retryable,
            classification.technical_message,
        )

    def _record(
        self,
        attempt_number: int,
        started_at: datetime,
        *,
        success: bool,
        error: Optional[str] = None,
        kind: Optional[IdentityErrorKind] = None,
    ) -> None:
        duration_ms = max(0, int((self._clock() - started_at).total_seconds() * 1000))
        self._history.append(
            AuthAttemptRecord(
                attempt_number=attempt_number,
                started_at=started_at,
                success=success,
                duration_ms=duration_ms,
                error=error,
                identity_kind=kind,
            )
        )

    async def _sleep(self, delay_ms: int, generation: int) -> None:
        try:
            await self._delay(delay_ms / 1000)
        except DelayCancelled:
            raise AttemptSuperseded("Authentication backoff cancelled by a newer call") from None
        self._ensure_current(generation)

    def _ensure_current(self, generation: int) -> None:
        if generation != self._generation:
            raise AttemptSuperseded("Authentication superseded by a newer call")

    def _transition(self, next_state: AuthState) -> None:
        current = self._status.state
        if next_state not in _ALLOWED_TRANSITIONS.get(current, set()):
            raise ValueError(f"Invalid transition {current.value} → {next_state.value}")
        self._status = self._status.model_copy(update={"state": next_state})

    def _update(self, **changes) -> None:
        self._status = self._status.model_copy(update=changes)
