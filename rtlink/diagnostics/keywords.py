"""Keyword table used to classify connection failures.

Every phrase is matched as a substring of the lower-cased error text. Bump
``KEYWORD_TABLE_VERSION`` whenever a set changes so logged classifications can
be traced back to the table that produced them.
"""

from __future__ import annotations

import re

KEYWORD_TABLE_VERSION = 1

# Browser/proxy phrasings of a mixed-content refusal.
MIXED_CONTENT_PHRASES: tuple[str, ...] = (
    "mixed content",
    "insecure websocket",
    "blocked loading mixed active content",
    "the page at https",
    "was not allowed to connect to ws://",
    "mixed active content",
    "https page cannot connect to ws",
    "websocket connection to 'ws://",
    "blocked by mixed content policy",
    "insecure websocket endpoint",
    "this request has been blocked",
)

SECURITY_POLICY_KEYWORDS: tuple[str, ...] = MIXED_CONTENT_PHRASES + (
    "ssl",
    "tls",
    "certificate",
    "security",
    "cors",
)

NETWORK_KEYWORDS: tuple[str, ...] = (
    "network error",
    "connection refused",
    "refused",
    "connection timeout",
    "timeout",
    "timed out",
    "unreachable",
    "dns",
    "host not found",
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo",
    "connection reset",
    "reset by peer",
    "connection aborted",
    "no internet",
    "offline",
)

IDENTITY_KEYWORDS: tuple[str, ...] = (
    "authentication",
    "unauthorized",
    "invalid credentials",
    "login failed",
    "access denied",
    "forbidden",
    "invalid token",
    "session expired",
)

SERVER_KEYWORDS: tuple[str, ...] = (
    "internal server error",
    "internal error",
    "service unavailable",
    "unavailable",
    "bad gateway",
    "gateway timeout",
    "server error",
)

# Generic socket phrasing, only consulted for transport-context failures.
SOCKET_KEYWORDS: tuple[str, ...] = (
    "websocket",
    "ws connection",
    "socket",
    "connection closed",
    "handshake",
    "upgrade",
)

IDENTITY_STATUS_CODES = frozenset({401, 403})

# Identity-phase phrasings.
CREDENTIAL_INVALID_KEYWORDS: tuple[str, ...] = (
    "unauthorized",
    "authentication failed",
    "invalid server key",
    "server key invalid",
    "server key mismatch",
    "invalid credentials",
    "access denied",
    "forbidden",
    "authentication error",
)

SESSION_EXPIRED_KEYWORDS: tuple[str, ...] = (
    "session expired",
    "token expired",
    "session invalid",
    "session not found",
)

TOKEN_MALFORMED_KEYWORDS: tuple[str, ...] = (
    "invalid device",
    "device not found",
    "device id invalid",
    "bad device",
    "malformed",
)

IDENTITY_NETWORK_KEYWORDS: tuple[str, ...] = NETWORK_KEYWORDS + ("fetch",)

STATUS_PATTERN = re.compile(r"\b([45]\d{2})\b")


def matches_any(text: str, keywords: tuple[str, ...]) -> bool:
    return any(keyword in text for keyword in keywords)
