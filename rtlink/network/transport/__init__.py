"""Collaborator implementations for the real-time link."""

from .base import IdentityProvider, Prober, Session, Transport
from .dummy import DummyIdentityProvider, DummyTransport, dummy_probe
from .websocket import HttpIdentityProvider, IdentityRequestError, WebSocketTransport, websocket_probe

__all__ = [
    "DummyIdentityProvider",
    "DummyTransport",
    "HttpIdentityProvider",
    "IdentityProvider",
    "IdentityRequestError",
    "Prober",
    "Session",
    "Transport",
    "WebSocketTransport",
    "dummy_probe",
    "websocket_probe",
]
