"""
TLS certificate configuration settings.

Two layers live here:
- NodeTLSSettings: the operator-facing JSON file (automatic ACME mode or
  manual certificate files), cached in memory like the rest of the node's
  settings.
- ManagerConfig: the validated runtime configuration handed to the
  certificate lifecycle manager. Construction fails with ConfigError when a
  field required by the selected challenge type is missing.
"""
import json
import logging
import os
import ssl
from datetime import timedelta
from pathlib import Path
from typing import Callable, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import ConfigError


logger = logging.getLogger(__name__)

# Config file location
CONFIG_DIR = Path(os.environ.get("CONFIG_DIR", "/config"))
TLS_CONFIG_FILE = CONFIG_DIR / "tls_settings.json"

# ACME directory URLs
LETSENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"
LETSENCRYPT_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"

DEFAULT_RENEW_BUFFER_MS = 14 * 24 * 60 * 60 * 1000
DEFAULT_CHECK_INTERVAL = timedelta(hours=4)

ChallengeType = Literal["http-01", "tls-alpn-01"]
AddAlpnChallenge = Callable[[str, ssl.SSLContext], None]
RemoveAlpnChallenge = Callable[[str], None]


def normalize_hostname(value: str) -> str:
    """Lower-case a hostname and strip an accidental scheme or trailing slash."""
    value = value.strip().lower()
    if value.startswith("http://"):
        value = value[7:]
    elif value.startswith("https://"):
        value = value[8:]
    return value.rstrip("/")


class ManagerConfig(BaseModel):
    """Runtime configuration of the certificate lifecycle manager."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    # First entry is the subject CN, all entries go into the SAN
    hostnames: list[str]
    key_file: Path
    cert_file: Path
    challenge_type: ChallengeType = "http-01"
    renew_buffer: timedelta = timedelta(milliseconds=DEFAULT_RENEW_BUFFER_MS)
    check_interval: timedelta = DEFAULT_CHECK_INTERVAL

    # HTTP-01
    http_listen_address: str = "0.0.0.0"
    http_listen_port: Optional[int] = None

    # TLS-ALPN-01
    add_alpn_challenge: Optional[AddAlpnChallenge] = None
    remove_alpn_challenge: Optional[RemoveAlpnChallenge] = None

    # ACME account
    acme_directory_url: str = LETSENCRYPT_PRODUCTION
    acme_email: Optional[str] = None
    account_key_file: Optional[Path] = None

    def __init__(self, **data):
        try:
            super().__init__(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid certificate manager configuration: {e}") from e

    @field_validator("hostnames")
    @classmethod
    def validate_hostnames(cls, v: list[str]) -> list[str]:
        hostnames = [normalize_hostname(h) for h in v if h and h.strip()]
        if not hostnames:
            raise ValueError("at least one hostname is required")
        return hostnames

    @field_validator("http_listen_port")
    @classmethod
    def validate_port(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not (0 <= v <= 65535):
            raise ValueError(f"invalid port: {v}")
        return v

    @model_validator(mode="after")
    def check_challenge_fields(self) -> "ManagerConfig":
        if self.challenge_type == "http-01":
            if self.http_listen_port is None:
                raise ValueError(
                    "http_listen_port must be specified for the http-01 challenge type"
                )
        elif self.add_alpn_challenge is None or self.remove_alpn_challenge is None:
            raise ValueError(
                "add/remove ALPN challenge callbacks must be specified "
                "for the tls-alpn-01 challenge type"
            )
        if self.renew_buffer <= timedelta(0):
            raise ValueError("renew_buffer must be positive")
        if self.check_interval <= timedelta(0):
            raise ValueError("check_interval must be positive")
        return self

    @property
    def account_key_path(self) -> Path:
        """Where the ACME account key is kept."""
        return self.account_key_file or self.key_file.parent / "account.key"


class NodeTLSSettings(BaseModel):
    """Operator-facing TLS configuration of the node."""

    # Master enable/disable; disabled means the REST server runs plain HTTP
    enabled: bool = False

    # "auto" for ACME issuance, "manual" for operator-supplied files
    mode: Literal["auto", "manual"] = "auto"

    # Node storage directory; automatic certificates live in <storage_dir>/ssl
    storage_dir: str = str(CONFIG_DIR)

    # Automatic mode: hostname is <ip-with-dashes>.<dns_proxy> unless
    # explicit hostnames are given
    hostnames: list[str] = []
    dns_proxy: str = ""
    ip_address_file: Optional[str] = None
    challenge_type: ChallengeType = "http-01"
    http_listen_address: str = "0.0.0.0"
    http_listen_port: Optional[int] = 80
    renew_buffer_ms: int = DEFAULT_RENEW_BUFFER_MS
    acme_email: str = ""
    use_staging: bool = False

    # Manual mode
    cert_file: str = ""
    key_file: str = ""

    # Public HTTPS endpoint
    https_address: str = "0.0.0.0"
    https_port: int = int(os.environ.get("LP_HTTPS_PORT", 4000))

    @field_validator("hostnames")
    @classmethod
    def validate_hostnames(cls, v: list[str]) -> list[str]:
        return [normalize_hostname(h) for h in v if h and h.strip()]

    @field_validator("dns_proxy")
    @classmethod
    def validate_dns_proxy(cls, v: str) -> str:
        return normalize_hostname(v) if v else v

    @field_validator("acme_email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        if v:
            v = v.strip().lower()
        return v

    @property
    def ssl_dir(self) -> Path:
        return Path(self.storage_dir) / "ssl"

    @property
    def acme_directory_url(self) -> str:
        return LETSENCRYPT_STAGING if self.use_staging else LETSENCRYPT_PRODUCTION

    def is_configured_for_auto(self) -> bool:
        """Check if automatic ACME settings are complete."""
        if not self.hostnames and not self.dns_proxy:
            return False
        if self.challenge_type == "http-01":
            return self.http_listen_port is not None
        return True

    def is_configured_for_manual(self) -> bool:
        """Check if both manual certificate paths are set."""
        return bool(self.cert_file and self.key_file)

    def to_manager_config(
        self,
        hostnames: list[str],
        add_alpn_challenge: Optional[AddAlpnChallenge] = None,
        remove_alpn_challenge: Optional[RemoveAlpnChallenge] = None,
    ) -> ManagerConfig:
        """Build the lifecycle manager configuration for automatic mode."""
        return ManagerConfig(
            hostnames=hostnames,
            key_file=self.ssl_dir / "key.pem",
            cert_file=self.ssl_dir / "cert.pem",
            challenge_type=self.challenge_type,
            renew_buffer=timedelta(milliseconds=self.renew_buffer_ms),
            http_listen_address=self.http_listen_address,
            http_listen_port=self.http_listen_port,
            add_alpn_challenge=add_alpn_challenge,
            remove_alpn_challenge=remove_alpn_challenge,
            acme_directory_url=self.acme_directory_url,
            acme_email=self.acme_email or None,
        )


# In-memory cache of TLS settings
_cached_tls_settings: Optional[NodeTLSSettings] = None


def load_tls_settings(path: Optional[Path] = None) -> NodeTLSSettings:
    """
    Load TLS settings from file or return defaults.

    A file that exists but cannot be parsed is a ConfigError; the node must
    not silently start without the TLS setup the operator asked for.
    """
    global _cached_tls_settings

    if _cached_tls_settings is not None and path is None:
        return _cached_tls_settings

    config_file = path or TLS_CONFIG_FILE
    logger.info("[TLS-SETTINGS] Loading TLS settings from %s", config_file)

    if config_file.exists():
        try:
            data = json.loads(config_file.read_text())
            settings = NodeTLSSettings(**data)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Cannot load TLS settings from {config_file}: {e}") from e
        logger.info(
            "[TLS-SETTINGS] Loaded TLS settings, enabled: %s, mode: %s",
            settings.enabled, settings.mode,
        )
    else:
        logger.info("[TLS-SETTINGS] Using default TLS settings (no config file found)")
        settings = NodeTLSSettings()

    _cached_tls_settings = settings
    return settings


def clear_tls_settings_cache() -> None:
    """Clear the cached TLS settings (forces reload)."""
    global _cached_tls_settings
    _cached_tls_settings = None
    logger.info("[TLS-SETTINGS] TLS settings cache cleared")


def get_tls_settings() -> NodeTLSSettings:
    """Get the current TLS settings."""
    return load_tls_settings()
