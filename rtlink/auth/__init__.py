"""Identity-session acquisition for the real-time link."""

from .credential import CredentialCheck, CredentialValidator
from .device import DeviceIdStore, device_id_problem, generate_device_id
from .orchestrator import (
    AuthAttemptRecord,
    AuthenticationError,
    AuthenticationOrchestrator,
    AuthState,
    AuthStatus,
)

__all__ = [
    "AuthAttemptRecord",
    "AuthState",
    "AuthStatus",
    "AuthenticationError",
    "AuthenticationOrchestrator",
    "CredentialCheck",
    "CredentialValidator",
    "DeviceIdStore",
    "device_id_problem",
    "generate_device_id",
]
