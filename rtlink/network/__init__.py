"""Endpoint resolution, security policy and connection establishment."""

from rtlink.network.endpoint import EndpointDescriptor, PageContext, static_page_context
from rtlink.network.protocol import ProtocolResolver
from rtlink.network.security import SecurityPolicyEnforcer, UnupgradableEndpoint

__all__ = [
    "EndpointDescriptor",
    "PageContext",
    "ProtocolResolver",
    "SecurityPolicyEnforcer",
    "UnupgradableEndpoint",
    "static_page_context",
]
