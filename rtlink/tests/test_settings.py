import pytest
from pydantic import ValidationError

from rtlink.config import LinkSettings, config_summary, get_settings, mask_secret

_ENV_NAMES = (
    "HOST",
    "PORT",
    "IDENTITY_CREDENTIAL",
    "USE_ENCRYPTED_TRANSPORT",
    "RAILWAY_ENVIRONMENT",
    "RTLINK_HOST",
    "RTLINK_PORT",
    "RTLINK_IDENTITY_CREDENTIAL",
    "RTLINK_USE_ENCRYPTED_TRANSPORT",
    "RTLINK_MANAGED_PLATFORM",
    "RTLINK_ENVIRONMENT",
    "RTLINK_CONFIG_FILE",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


def test_defaults(clean_env):
    settings = LinkSettings()

    assert settings.host == "127.0.0.1"
    assert settings.port == "7350"
    assert settings.identity_credential == "defaultkey"
    assert settings.use_encrypted_transport is False
    assert settings.managed_platform is False
    assert settings.retry_delays_ms == [1000, 2000, 4000]
    assert settings.retry_candidate_protocols == ["secure", "plaintext"]
    assert settings.probe_timeout_ms == 3000
    assert settings.connect_timeout_ms == 5000
    assert "defaultkey" not in repr(settings)
    assert "identity_credential=" not in repr(settings)


def test_plain_environment_names(clean_env):
    clean_env.setenv("HOST", "play.example.com")
    clean_env.setenv("PORT", "443")
    clean_env.setenv("IDENTITY_CREDENTIAL", "prod-server-key")
    clean_env.setenv("USE_ENCRYPTED_TRANSPORT", "true")
    clean_env.setenv("RAILWAY_ENVIRONMENT", "production")

    settings = LinkSettings()

    assert settings.host == "play.example.com"
    assert settings.port == "443"
    assert settings.identity_credential == "prod-server-key"
    assert settings.use_encrypted_transport is True
    assert settings.managed_platform is True


def test_prefixed_environment_names(clean_env):
    clean_env.setenv("RTLINK_ENVIRONMENT", "production")
    clean_env.setenv("RTLINK_RETRY_MAX_ATTEMPTS", "5")

    settings = LinkSettings()

    assert settings.is_production
    assert settings.retry_max_attempts == 5


@pytest.mark.parametrize("port", ["0", "70000", "abc"])
def test_invalid_port_is_rejected(clean_env, port):
    with pytest.raises(ValidationError, match="Invalid port number"):
        LinkSettings(port=port)


def test_empty_retry_tables_are_rejected(clean_env):
    with pytest.raises(ValidationError):
        LinkSettings(retry_delays_ms=[])


def test_yaml_config_file(clean_env, tmp_path):
    config = tmp_path / "link.yaml"
    config.write_text("host: yaml.example.com\nport: 9000\nws_path: /realtime\n", encoding="utf-8")
    clean_env.setenv("RTLINK_CONFIG_FILE", str(config))
    clean_env.setenv("HOST", "env.example.com")

    settings = LinkSettings()

    assert settings.host == "yaml.example.com"
    assert settings.port == "9000"
    assert settings.ws_path == "/realtime"
    assert settings.config_path == config


def test_invalid_yaml_config_raises(clean_env, tmp_path):
    config = tmp_path / "link.yaml"
    config.write_text("- just\n- a list\n", encoding="utf-8")
    clean_env.setenv("RTLINK_CONFIG_FILE", str(config))

    with pytest.raises(ValueError, match="must contain a mapping"):
        LinkSettings()


def test_deployment_problems(clean_env):
    problems = LinkSettings(environment="production").deployment_problems()

    assert any("placeholder" in problem for problem in problems)
    assert any("Encrypted transport" in problem for problem in problems)
    assert LinkSettings(
        environment="production",
        identity_credential="prod-server-key",
        use_encrypted_transport=True,
    ).deployment_problems() == []


def test_placeholder_detection(clean_env):
    settings = LinkSettings(identity_credential="ChangeMe")

    assert settings.is_placeholder_credential()
    assert not settings.is_placeholder_credential("prod-server-key")


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("", "[EMPTY]"),
        (None, "[EMPTY]"),
        ("abc", "***"),
        ("abcdef", "ab****ef"),
        ("supersecretkey", "su**********ey"),
    ],
)
def test_mask_secret(value, expected):
    assert mask_secret(value) == expected


def test_config_summary_masks_credential(clean_env):
    summary = config_summary(LinkSettings(identity_credential="prod-server-key"))

    assert "prod-server-key" not in summary
    assert "pr***********ey" in summary


def test_get_settings_is_memoized(clean_env):
    get_settings.cache_clear()
    try:
        first = get_settings()
        assert first is get_settings()
        assert first.device_id_path.is_absolute()
    finally:
        get_settings.cache_clear()
