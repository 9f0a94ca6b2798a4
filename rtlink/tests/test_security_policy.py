import pytest

from rtlink.network.endpoint import EndpointDescriptor, PageContext
from rtlink.network.security import SecurityPolicyEnforcer, UnupgradableEndpoint


class SecurityError(Exception):
    pass


class _CategorizedError(Exception):
    category = "SecurityViolation"


MIXED_CONTENT = (
    "Mixed Content: The page at 'https://play.example.com/' was loaded over HTTPS, but attempted "
    "to connect to the insecure WebSocket endpoint 'ws://127.0.0.1:7350/ws'."
)


@pytest.mark.parametrize(
    "error",
    [
        Exception(MIXED_CONTENT),
        "Blocked loading mixed active content",
        SecurityError("The operation is insecure."),
        _CategorizedError("blocked"),
    ],
)
def test_detects_security_violations(error):
    assert SecurityPolicyEnforcer().detect_violation(error) is True


@pytest.mark.parametrize("error", [None, "connection refused", ConnectionResetError("reset by peer")])
def test_unknown_phrasing_fails_open(error):
    assert SecurityPolicyEnforcer().detect_violation(error) is False


def test_upgrade_is_idempotent():
    enforcer = SecurityPolicyEnforcer()
    endpoint = EndpointDescriptor(host="127.0.0.1", port="7350", secure=False)

    upgraded = enforcer.upgrade(endpoint)

    assert upgraded == EndpointDescriptor(host="127.0.0.1", port="7350", secure=True)
    assert enforcer.upgrade(upgraded) == upgraded


def test_upgrade_moves_implicit_plaintext_port():
    upgraded = SecurityPolicyEnforcer().upgrade(EndpointDescriptor(host="example.com", port="80", secure=False))

    assert upgraded.port == "443"
    assert upgraded.url() == "wss://example.com/ws"


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("ws://example.com:7350/ws", "wss://example.com:7350/ws"),
        ("wss://example.com/ws", "wss://example.com/ws"),
        ("//example.com/ws", "wss://example.com/ws"),
        ("example.com/ws", "wss://example.com/ws"),
    ],
)
def test_upgrade_url(url, expected):
    assert SecurityPolicyEnforcer().upgrade(url) == expected


@pytest.mark.parametrize("url", ["http://example.com/ws", "https://example.com", ""])
def test_upgrade_rejects_non_socket_schemes(url):
    with pytest.raises(UnupgradableEndpoint):
        SecurityPolicyEnforcer().upgrade_url(url)


def test_handle_violation_upgrades_endpoint():
    endpoint = EndpointDescriptor(host="127.0.0.1", port="7350", secure=False)

    outcome = SecurityPolicyEnforcer().handle_violation(endpoint, Exception(MIXED_CONTENT))

    assert outcome.was_upgraded is True
    assert outcome.endpoint == endpoint.model_copy(update={"secure": True})


def test_handle_violation_ignores_unrelated_errors():
    endpoint = EndpointDescriptor(host="127.0.0.1", port="7350", secure=False)

    outcome = SecurityPolicyEnforcer().handle_violation(endpoint, TimeoutError("timed out"))

    assert outcome.was_upgraded is False
    assert outcome.endpoint is None


def test_handle_violation_reports_unupgradable_url():
    outcome = SecurityPolicyEnforcer().handle_violation("http://example.com", MIXED_CONTENT)

    assert outcome.was_upgraded is False
    assert "Failed to upgrade" in outcome.reason


def test_validate_protocol():
    enforcer = SecurityPolicyEnforcer()

    assert enforcer.validate_protocol("https:", "wss") is True
    assert enforcer.validate_protocol("https:", "ws") is False
    assert enforcer.validate_protocol("http:", "ws") is True
    assert enforcer.validate_protocol(None, "ws") is True
    assert enforcer.validate_protocol("file:", "wss") is False


def test_validate_and_upgrade_url():
    enforcer = SecurityPolicyEnforcer()

    upgraded = enforcer.validate_and_upgrade_url("ws://host:7350/ws", PageContext(origin="https://play.example.com"))
    unchanged = enforcer.validate_and_upgrade_url("ws://host:7350/ws", PageContext(origin="http://localhost"))
    invalid = enforcer.validate_and_upgrade_url("http://host", PageContext(origin="http://localhost"))

    assert upgraded.is_valid and upgraded.url == "wss://host:7350/ws"
    assert unchanged.is_valid and unchanged.url == "ws://host:7350/ws"
    assert not invalid.is_valid
