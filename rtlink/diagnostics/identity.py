"""Identity-phase error classification.

Authentication failures need finer distinctions than transport failures:
credential misconfiguration and malformed device tokens cannot be fixed by
retrying, while an expired session can.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Literal, Optional

from pydantic import Field

from rtlink.diagnostics.classifier import (
    ErrorClassification,
    ErrorKind,
    Severity,
    error_text,
    extract_status,
)
from rtlink.diagnostics.keywords import (
    CREDENTIAL_INVALID_KEYWORDS,
    IDENTITY_NETWORK_KEYWORDS,
    IDENTITY_STATUS_CODES,
    SERVER_KEYWORDS,
    SESSION_EXPIRED_KEYWORDS,
    TOKEN_MALFORMED_KEYWORDS,
    matches_any,
)


class IdentityErrorKind(str, enum.Enum):
    CREDENTIAL_INVALID = "credential_invalid"
    SESSION_EXPIRED = "session_expired"
    TOKEN_MALFORMED = "token_malformed"
    NETWORK = "network"
    SERVER = "server"
    UNKNOWN = "unknown"


_GENERIC_KIND: dict[IdentityErrorKind, ErrorKind] = {
    IdentityErrorKind.CREDENTIAL_INVALID: ErrorKind.IDENTITY,
    IdentityErrorKind.SESSION_EXPIRED: ErrorKind.IDENTITY,
    IdentityErrorKind.TOKEN_MALFORMED: ErrorKind.IDENTITY,
    IdentityErrorKind.NETWORK: ErrorKind.NETWORK,
    IdentityErrorKind.SERVER: ErrorKind.SERVER,
    IdentityErrorKind.UNKNOWN: ErrorKind.UNKNOWN,
}

IDENTITY_RETRY_DELAYS_MS: dict[IdentityErrorKind, tuple[int, ...]] = {
    IdentityErrorKind.CREDENTIAL_INVALID: (0,),
    IdentityErrorKind.SESSION_EXPIRED: (1000, 2000, 4000),
    IdentityErrorKind.TOKEN_MALFORMED: (0,),
    IdentityErrorKind.NETWORK: (2000, 5000, 10000),
    IdentityErrorKind.SERVER: (3000, 8000, 15000),
    IdentityErrorKind.UNKNOWN: (2000, 4000, 8000),
}

IDENTITY_RETRY_CEILINGS: dict[IdentityErrorKind, int] = {
    IdentityErrorKind.CREDENTIAL_INVALID: 0,
    IdentityErrorKind.SESSION_EXPIRED: 2,
    IdentityErrorKind.TOKEN_MALFORMED: 0,
    IdentityErrorKind.NETWORK: 3,
    IdentityErrorKind.SERVER: 3,
    IdentityErrorKind.UNKNOWN: 2,
}


class IdentityErrorClassification(ErrorClassification):
    identity_kind: IdentityErrorKind
    suggested_actions: list[str] = Field(default_factory=list)
    http_status: Optional[int] = None


@dataclass(frozen=True)
class IdentityContext:
    credential_masked: str = "[EMPTY]"
    host: str = ""
    port: str = ""
    secure: bool = False
    environment: Literal["development", "production"] = "development"
    attempt_number: int = 0

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


class IdentityErrorClassifier:
    """Classifies failures raised while establishing an identity session."""

    def classify(self, error: Any, context: Optional[IdentityContext] = None) -> IdentityErrorClassification:
        context = context or IdentityContext()
        message = str(error) if error is not None else "Unknown error occurred"
        message = message or type(error).__name__
        text = error_text(error)
        status = extract_status(error)

        if matches_any(text, CREDENTIAL_INVALID_KEYWORDS) or status in IDENTITY_STATUS_CODES:
            return self._credential_invalid(message, context, status)
        if matches_any(text, SESSION_EXPIRED_KEYWORDS):
            return self._build(
                IdentityErrorKind.SESSION_EXPIRED,
                Severity.MEDIUM,
                user_message="Your session has expired. Please wait while we reconnect you.",
                technical_message="Identity session expired; a fresh session will be requested.",
                retryable=True,
                actions=[
                    "Retry authentication to obtain a new session",
                    "Clear the stored session",
                ],
                status=status,
            )
        if matches_any(text, IDENTITY_NETWORK_KEYWORDS):
            return self._build(
                IdentityErrorKind.NETWORK,
                Severity.HIGH,
                user_message="Connection error: unable to reach the server. Check your connection and try again.",
                technical_message=(
                    f"Network failure reaching {context.host}:{context.port} (secure: {context.secure}): {message}"
                ),
                retryable=True,
                actions=[
                    "Check the network connection",
                    "Verify the server is running and reachable",
                    "Check the deployment status" if context.is_production else "Ensure the local server is running",
                    "Check DNS resolution and firewall settings",
                ],
                status=status,
            )
        if matches_any(text, SERVER_KEYWORDS) or (status is not None and status >= 500):
            return self._build(
                IdentityErrorKind.SERVER,
                Severity.HIGH,
                user_message="Server error: the game server is temporarily unavailable. Try again shortly.",
                technical_message=f"Identity backend returned {status or 'an error'}: {message}",
                retryable=True,
                actions=[
                    "Wait a few moments and retry",
                    "Check the service logs" if context.is_production else "Check the local server logs",
                    "Contact the server administrator if the issue persists",
                ],
                status=status,
            )
        if matches_any(text, TOKEN_MALFORMED_KEYWORDS):
            return self.token_malformed(message, status=status)
        return self._build(
            IdentityErrorKind.UNKNOWN,
            Severity.MEDIUM,
            user_message="Unexpected error during authentication. Please try again.",
            technical_message=f"Unclassified authentication error: {message}",
            retryable=True,
            actions=[
                "Retry authentication",
                "Verify all link settings are set",
                "Contact support if the error persists",
            ],
            status=status,
        )

    def credential_invalid(self, reason: str, context: Optional[IdentityContext] = None) -> IdentityErrorClassification:
        """Classification for a credential rejected before any network call."""

        return self._credential_invalid(reason, context or IdentityContext(), None)

    def token_malformed(self, reason: str, *, status: Optional[int] = None) -> IdentityErrorClassification:
        return self._build(
            IdentityErrorKind.TOKEN_MALFORMED,
            Severity.MEDIUM,
            user_message="Device error: your device registration is invalid and must be renewed.",
            technical_message=f"Device identifier rejected: {reason}",
            retryable=False,
            actions=[
                "Generate a new device identifier",
                "Authenticate again with the fresh identifier",
            ],
            status=status,
        )

    def _credential_invalid(
        self, message: str, context: IdentityContext, status: Optional[int]
    ) -> IdentityErrorClassification:
        return self._build(
            IdentityErrorKind.CREDENTIAL_INVALID,
            Severity.CRITICAL,
            user_message=(
                "Authentication error: a configuration issue prevents connecting to the server. "
                "Please contact support if this continues."
            ),
            technical_message=(
                f"Identity credential rejected (credential {context.credential_masked}, "
                f"status {status or 'n/a'}): {message}"
            ),
            retryable=False,
            actions=[
                "Verify IDENTITY_CREDENTIAL matches the server configuration",
                "Replace placeholder credentials with the deployment's server key",
                "Contact the system administrator" if context.is_production else "Check the local .env file",
            ],
            status=status,
        )

    @staticmethod
    def _build(
        kind: IdentityErrorKind,
        severity: Severity,
        *,
        user_message: str,
        technical_message: str,
        retryable: bool,
        actions: list[str],
        status: Optional[int],
    ) -> IdentityErrorClassification:
        return IdentityErrorClassification(
            kind=_GENERIC_KIND[kind],
            identity_kind=kind,
            severity=severity,
            user_message=user_message,
            technical_message=technical_message,
            retryable=retryable,
            suggested_action=actions[0] if actions else None,
            suggested_actions=actions,
            http_status=status,
        )

    @staticmethod
    def retry_delay_ms(kind: IdentityErrorKind, attempt: int) -> int:
        delays = IDENTITY_RETRY_DELAYS_MS.get(kind, IDENTITY_RETRY_DELAYS_MS[IdentityErrorKind.UNKNOWN])
        return delays[min(max(attempt, 0), len(delays) - 1)]

    @staticmethod
    def should_retry(classification: IdentityErrorClassification, attempts_made: int) -> bool:
        if not classification.retryable:
            return False
        ceiling = IDENTITY_RETRY_CEILINGS.get(classification.identity_kind, 2)
        return attempts_made < ceiling
