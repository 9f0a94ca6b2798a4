"""Failure classification and connection-attempt observability."""

from .classifier import ErrorClassification, ErrorClassifier, ErrorKind, Severity, categorize
from .identity import IdentityContext, IdentityErrorClassification, IdentityErrorClassifier, IdentityErrorKind
from .monitor import AttemptKind, AttemptStatus, ConnectionAttempt, ConnectionMetrics, ConnectionMonitor

__all__ = [
    "AttemptKind",
    "AttemptStatus",
    "ConnectionAttempt",
    "ConnectionMetrics",
    "ConnectionMonitor",
    "ErrorClassification",
    "ErrorClassifier",
    "ErrorKind",
    "IdentityContext",
    "IdentityErrorClassification",
    "IdentityErrorClassifier",
    "IdentityErrorKind",
    "Severity",
    "categorize",
]
