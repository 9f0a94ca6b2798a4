"""Link configuration loading and validation."""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, ClassVar, Dict, Iterable, Literal

import yaml
from pydantic import AliasChoices, Field, PositiveInt
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_LOCATIONS: tuple[Path, ...] = (
    Path("/etc/rtlink/link.yaml"),
    Path("/etc/rtlink/link.yml"),
    Path("./config/link.yaml"),
    Path("./config/link.yml"),
)

PLACEHOLDER_CREDENTIALS: tuple[str, ...] = ("defaultkey", "changeme", "your-server-key", "server_key")


class LinkSettings(BaseSettings):
    """Validated settings for the real-time link."""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_prefix="RTLINK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Endpoint + identity
    host: str = Field(
        default="127.0.0.1",
        validation_alias=AliasChoices("host", "RTLINK_HOST", "HOST"),
        description="Real-time service host.",
    )
    port: str = Field(
        default="7350",
        validation_alias=AliasChoices("port", "RTLINK_PORT", "PORT"),
        description="Real-time service port.",
    )
    identity_credential: str = Field(
        default="defaultkey",
        validation_alias=AliasChoices("identity_credential", "RTLINK_IDENTITY_CREDENTIAL", "IDENTITY_CREDENTIAL"),
        description="Server key presented to the identity backend.",
        repr=False,
    )
    use_encrypted_transport: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "use_encrypted_transport", "RTLINK_USE_ENCRYPTED_TRANSPORT", "USE_ENCRYPTED_TRANSPORT"
        ),
        description="Configured TLS preference; overridden by secure pages and managed hosts.",
    )
    environment: Literal["development", "production"] = Field(
        default="development",
        description="Deployment context; production rejects placeholder credentials.",
    )
    managed_platform: bool = Field(
        default=False,
        validation_alias=AliasChoices("managed_platform", "RTLINK_MANAGED_PLATFORM", "RAILWAY_ENVIRONMENT"),
        description="Set when running on a managed platform that terminates TLS at the edge.",
    )
    managed_host_patterns: list[str] = Field(
        default_factory=lambda: [".railway.app", ".up.railway.app"],
        description="Host fragments of reverse proxies that always terminate TLS.",
    )
    page_origin: str | None = Field(
        default=None,
        description="Origin of the hosting page (e.g. https://play.example.com), if any.",
    )
    ws_path: str = Field(
        default="/ws",
        description="Path of the real-time socket endpoint.",
    )
    transport: Literal["dummy", "websocket"] = Field(
        default="websocket",
        description="Collaborator implementation to use.",
    )
    create_presence: bool = Field(
        default=True,
        description="Announce presence when the socket connects.",
    )

    # Timeouts
    probe_timeout_ms: PositiveInt = Field(
        default=3000,
        description="Timeout for reachability probes.",
    )
    connect_timeout_ms: PositiveInt = Field(
        default=5000,
        description="Timeout for a full socket connect.",
    )
    identity_timeout_ms: PositiveInt = Field(
        default=30000,
        description="Timeout for a single authenticate call.",
    )
    validate_before_connect: bool = Field(
        default=True,
        description="Probe the endpoint before each full connect.",
    )

    # Transport retry
    retry_max_attempts: PositiveInt = Field(
        default=3,
        description="Connection attempts per create_connection call.",
    )
    retry_delays_ms: list[int] = Field(
        default_factory=lambda: [1000, 2000, 4000],
        description="Delays between connection attempts (clamped to last entry).",
    )
    retry_candidate_protocols: list[Literal["secure", "plaintext"]] = Field(
        default_factory=lambda: ["secure", "plaintext"],
        description="Protocol preference per attempt index (clamped to last entry).",
    )
    reconnect_on_disconnect: bool = Field(
        default=True,
        description="Re-establish the link after an unexpected disconnect.",
    )

    # Identity retry
    auth_max_attempts: PositiveInt = Field(
        default=3,
        description="Authentication attempts used by RealtimeLink.connect().",
    )
    auth_retry_base_ms: PositiveInt = Field(
        default=2000,
        description="Base delay for authentication backoff.",
    )
    auth_retry_jitter_ms: int = Field(
        default=1000,
        ge=0,
        description="Upper bound of random jitter added to authentication backoff.",
    )
    auth_retry_max_ms: PositiveInt = Field(
        default=30000,
        description="Maximum authentication backoff delay.",
    )
    credential_min_length: PositiveInt = Field(
        default=8,
        description="Minimum accepted identity credential length.",
    )
    credential_placeholders: list[str] = Field(
        default_factory=lambda: list(PLACEHOLDER_CREDENTIALS),
        description="Well-known placeholder credentials rejected in production.",
        repr=False,
    )

    # Observability + local state
    monitor_max_entries: PositiveInt = Field(
        default=100,
        description="Capacity of the closed connection-attempt log.",
    )
    device_id_path: Path = Field(
        default=Path("./var/device_id"),
        description="File holding the persisted device identifier.",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Minimum log level for the link process.",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        if isinstance(value, str):
            return value.upper()
        return value

    @field_validator("port", mode="before")
    @classmethod
    def _normalize_port(cls, value: Any) -> str:
        if isinstance(value, int):
            value = str(value)
        if isinstance(value, str):
            value = value.strip()
            if value:
                try:
                    number = int(value, 10)
                except ValueError as exc:
                    raise ValueError(f"Invalid port number: {value}. Must be between 1 and 65535") from exc
                if number < 1 or number > 65535:
                    raise ValueError(f"Invalid port number: {value}. Must be between 1 and 65535")
        return value

    @field_validator("managed_platform", mode="before")
    @classmethod
    def _normalize_managed_platform(cls, value: Any) -> Any:
        # RAILWAY_ENVIRONMENT carries an environment name, not a boolean.
        if isinstance(value, str) and value.strip().lower() not in {"", "true", "false", "0", "1", "yes", "no"}:
            return True
        return value

    @field_validator("retry_delays_ms", "retry_candidate_protocols")
    @classmethod
    def _require_entries(cls, value: list[Any]) -> list[Any]:
        if not value:
            raise ValueError("must contain at least one entry")
        return value

    config_path: Path | None = Field(
        default=None,
        description="Resolved path to the on-disk config that seeded the settings.",
        exclude=True,
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def is_placeholder_credential(self, value: str | None = None) -> bool:
        candidate = self.identity_credential if value is None else value
        return candidate.strip().lower() in {item.lower() for item in self.credential_placeholders}

    def deployment_problems(self) -> list[str]:
        """Return human-readable configuration errors for the current deployment context."""

        problems: list[str] = []
        if not self.host.strip():
            problems.append("HOST is required")
        if not self.port.strip():
            problems.append("PORT is required")
        if not self.identity_credential.strip():
            problems.append("IDENTITY_CREDENTIAL is required")
        elif self.is_production and self.is_placeholder_credential():
            problems.append(
                "Using a placeholder identity credential in production is not secure; set IDENTITY_CREDENTIAL"
            )
        if self.is_production and not (self.use_encrypted_transport or self.managed_platform):
            problems.append("Encrypted transport must be enabled in production environments")
        return problems

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[LinkSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            cls._yaml_settings_source,
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    @staticmethod
    def _yaml_settings_source(settings_cls: type[LinkSettings] | None = None) -> Dict[str, Any]:
        candidates: Iterable[Path] = LinkSettings._resolve_candidate_paths()

        for path in candidates:
            data = LinkSettings._load_file(path)
            if data is not None:
                data.setdefault("config_path", path)
                return data
        return {}

    @staticmethod
    def _resolve_candidate_paths() -> Iterable[Path]:
        explicit = os.getenv("RTLINK_CONFIG_FILE")
        if explicit:
            yield Path(explicit).expanduser()
        yield from DEFAULT_CONFIG_LOCATIONS

    @staticmethod
    def _load_file(path: Path) -> Dict[str, Any] | None:
        if not path.is_file():
            return None
        suffix = path.suffix.lower()
        try:
            with path.open("r", encoding="utf-8") as handle:
                if suffix in {".yaml", ".yml"}:
                    raw = yaml.safe_load(handle)
                elif suffix == ".json":
                    raw = json.load(handle)
                else:
                    return None
        except OSError as exc:
            raise RuntimeError(f"Failed to read link config file {path}") from exc
        except (yaml.YAMLError, json.JSONDecodeError) as exc:
            raise ValueError(f"Invalid link config file {path}") from exc

        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ValueError(f"Link config file {path} must contain a mapping at top level.")
        return raw


def mask_secret(value: str | None) -> str:
    """Mask a secret for log output, keeping two characters at each end."""

    if not value:
        return "[EMPTY]"
    if len(value) <= 4:
        return "*" * len(value)
    return f"{value[:2]}{'*' * max(4, len(value) - 4)}{value[-2:]}"


def config_summary(settings: LinkSettings) -> str:
    """Describe the effective configuration with the credential masked."""

    return "\n".join(
        [
            "Real-time link configuration:",
            f"   Environment: {settings.environment}",
            f"   Managed platform: {'yes' if settings.managed_platform else 'no'}",
            f"   Host: {settings.host}",
            f"   Port: {settings.port}",
            f"   Encrypted transport: {'yes' if settings.use_encrypted_transport else 'no'}",
            f"   Page origin: {settings.page_origin or '-'}",
            f"   Transport: {settings.transport}",
            f"   Identity credential: {mask_secret(settings.identity_credential)}",
        ]
    )


@lru_cache()
def get_settings() -> LinkSettings:
    """Return memoized link settings."""

    settings = LinkSettings()
    # Ensure path fields are absolute for downstream use
    settings.device_id_path = settings.device_id_path.expanduser().resolve()
    return settings
