"""Error classification and retry-eligibility policy for connection failures."""

from __future__ import annotations

import enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict

from rtlink.diagnostics.keywords import (
    IDENTITY_KEYWORDS,
    IDENTITY_STATUS_CODES,
    NETWORK_KEYWORDS,
    SECURITY_POLICY_KEYWORDS,
    SERVER_KEYWORDS,
    SOCKET_KEYWORDS,
    STATUS_PATTERN,
    matches_any,
)

ClassificationContext = Literal["transport", "identity", "matchmaking", "general"]


class ErrorKind(str, enum.Enum):
    SECURITY_POLICY = "security_policy"
    NETWORK = "network"
    IDENTITY = "identity"
    SERVER = "server"
    UNKNOWN = "unknown"


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorClassification(BaseModel):
    """User-facing and policy view of a single failure."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    severity: Severity
    user_message: str
    technical_message: str
    retryable: bool
    suggested_action: Optional[str] = None


RETRY_DELAYS_MS: dict[ErrorKind, tuple[int, ...]] = {
    ErrorKind.SECURITY_POLICY: (1000, 2000, 4000),
    ErrorKind.NETWORK: (2000, 5000, 10000),
    ErrorKind.IDENTITY: (1000, 3000, 6000),
    ErrorKind.SERVER: (3000, 8000, 15000),
    ErrorKind.UNKNOWN: (2000, 4000, 8000),
}

RETRY_CEILINGS: dict[ErrorKind, int] = {
    ErrorKind.SECURITY_POLICY: 2,
    ErrorKind.NETWORK: 3,
    ErrorKind.IDENTITY: 2,
    ErrorKind.SERVER: 3,
    ErrorKind.UNKNOWN: 2,
}


def error_text(error: Any) -> str:
    """Return the lower-cased text that keyword matching runs over."""

    if error is None:
        return ""
    if isinstance(error, BaseException):
        message = str(error)
        name = type(error).__name__
        return f"{name}: {message}".lower() if message else name.lower()
    return str(error).lower()


def extract_status(error: Any) -> Optional[int]:
    """Best-effort HTTP status lookup from error attributes or message text."""

    if error is None:
        return None
    if not isinstance(error, str):
        for attr in ("status_code", "status", "code"):
            value = getattr(error, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(error, "response", None)
        if response is not None:
            for attr in ("status_code", "status"):
                value = getattr(response, attr, None)
                if isinstance(value, int):
                    return value
    match = STATUS_PATTERN.search(str(error))
    if match:
        return int(match.group(1))
    return None


def categorize(error: Any) -> ErrorKind:
    """Keyword-only bucketing shared by the classifier and the connection monitor."""

    text = error_text(error)
    status = extract_status(error)
    if matches_any(text, SECURITY_POLICY_KEYWORDS):
        return ErrorKind.SECURITY_POLICY
    if matches_any(text, NETWORK_KEYWORDS):
        return ErrorKind.NETWORK
    if matches_any(text, IDENTITY_KEYWORDS) or status in IDENTITY_STATUS_CODES:
        return ErrorKind.IDENTITY
    if matches_any(text, SERVER_KEYWORDS) or (status is not None and status >= 500):
        return ErrorKind.SERVER
    return ErrorKind.UNKNOWN


class ErrorClassifier:
    """Maps raw failures onto the closed taxonomy of error kinds."""

    def classify(self, error: Any, context: ClassificationContext = "general") -> ErrorClassification:
        if error is None or error == "":
            return self._unknown("Unknown error occurred")
        message = str(error) or type(error).__name__
        text = error_text(error)
        kind = categorize(error)

        if kind is ErrorKind.SECURITY_POLICY:
            return self._security(message, text)
        if kind is ErrorKind.NETWORK:
            return self._network(message, text)
        if kind is ErrorKind.IDENTITY:
            return ErrorClassification(
                kind=ErrorKind.IDENTITY,
                severity=Severity.MEDIUM,
                user_message="Authentication error: the server could not verify your identity.",
                technical_message=message,
                retryable=True,
                suggested_action="Reconnect to obtain a fresh authentication session.",
            )
        if kind is ErrorKind.SERVER:
            return ErrorClassification(
                kind=ErrorKind.SERVER,
                severity=Severity.HIGH,
                user_message="Server error: the game server is experiencing technical difficulties.",
                technical_message=message,
                retryable=True,
                suggested_action="Please try again in a few minutes.",
            )
        if context == "transport" and matches_any(text, SOCKET_KEYWORDS):
            return ErrorClassification(
                kind=ErrorKind.NETWORK,
                severity=Severity.MEDIUM,
                user_message="Connection error: the real-time connection could not be established.",
                technical_message=message,
                retryable=True,
                suggested_action="The connection will be retried automatically.",
            )
        return self._unknown(message)

    @staticmethod
    def _security(message: str, text: str) -> ErrorClassification:
        if "mixed content" in text:
            return ErrorClassification(
                kind=ErrorKind.SECURITY_POLICY,
                severity=Severity.HIGH,
                user_message=(
                    "Security error: an insecure connection was blocked by a secure page. "
                    "The connection will be upgraded to a secure protocol."
                ),
                technical_message=f"Mixed content policy violation: {message}",
                retryable=True,
                suggested_action="The connection is retried over a secure transport automatically.",
            )
        return ErrorClassification(
            kind=ErrorKind.SECURITY_POLICY,
            severity=Severity.HIGH,
            user_message="Security error: the connection was rejected by a security policy.",
            technical_message=message,
            retryable=True,
            suggested_action="Check TLS certificates and cross-origin settings of the deployment.",
        )

    @staticmethod
    def _network(message: str, text: str) -> ErrorClassification:
        if "timeout" in text or "timed out" in text:
            return ErrorClassification(
                kind=ErrorKind.NETWORK,
                severity=Severity.MEDIUM,
                user_message="Connection timeout: the server is taking too long to respond.",
                technical_message=message,
                retryable=True,
                suggested_action="Check your connection; the server may be under heavy load.",
            )
        if "refused" in text:
            return ErrorClassification(
                kind=ErrorKind.NETWORK,
                severity=Severity.HIGH,
                user_message="Connection refused: the game server is down or unreachable.",
                technical_message=message,
                retryable=True,
                suggested_action="Try again in a few moments; the server may be under maintenance.",
            )
        return ErrorClassification(
            kind=ErrorKind.NETWORK,
            severity=Severity.MEDIUM,
            user_message="Network error: there was a problem reaching the server.",
            technical_message=message,
            retryable=True,
            suggested_action="Verify your network connection is stable and try again.",
        )

    @staticmethod
    def _unknown(message: str) -> ErrorClassification:
        return ErrorClassification(
            kind=ErrorKind.UNKNOWN,
            severity=Severity.MEDIUM,
            user_message="Unexpected error: something went wrong. Please try again.",
            technical_message=message,
            retryable=True,
            suggested_action="If this keeps happening, restart the client or contact support.",
        )

    @staticmethod
    def retry_delay_ms(kind: ErrorKind, attempt: int) -> int:
        delays = RETRY_DELAYS_MS.get(kind, RETRY_DELAYS_MS[ErrorKind.UNKNOWN])
        return delays[min(max(attempt, 0), len(delays) - 1)]

    @staticmethod
    def ceiling(kind: ErrorKind) -> int:
        return RETRY_CEILINGS.get(kind, RETRY_CEILINGS[ErrorKind.UNKNOWN])

    @classmethod
    def should_retry(cls, classification: ErrorClassification, attempts_made: int) -> bool:
        return classification.retryable and attempts_made < cls.ceiling(classification.kind)
