"""
Unit tests for TLS settings.
Tests ManagerConfig validation and loading of the operator's settings file.
"""
import json
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from tls_lifecycle.errors import ConfigError
from tls_lifecycle.settings import (
    LETSENCRYPT_PRODUCTION,
    LETSENCRYPT_STAGING,
    ManagerConfig,
    NodeTLSSettings,
    clear_tls_settings_cache,
    load_tls_settings,
    normalize_hostname,
)


@pytest.fixture(autouse=True)
def reset_cache():
    clear_tls_settings_cache()
    yield
    clear_tls_settings_cache()


def base_config(tmp_path, **overrides):
    values = dict(
        hostnames=["node.example.com"],
        key_file=tmp_path / "key.pem",
        cert_file=tmp_path / "cert.pem",
        http_listen_port=80,
    )
    values.update(overrides)
    return values


class TestNormalizeHostname:
    """Tests for normalize_hostname()."""

    def test_strips_scheme_and_slash(self):
        assert normalize_hostname(" HTTPS://Node.Example.com/ ") == "node.example.com"

    def test_plain_hostname_unchanged(self):
        assert normalize_hostname("node.example.com") == "node.example.com"


class TestManagerConfig:
    """Tests for ManagerConfig validation."""

    def test_defaults(self, tmp_path):
        """Defaults are a 14 day buffer, a 4 hour check and HTTP-01."""
        config = ManagerConfig(**base_config(tmp_path))

        assert config.challenge_type == "http-01"
        assert config.renew_buffer == timedelta(days=14)
        assert config.check_interval == timedelta(hours=4)
        assert config.acme_directory_url == LETSENCRYPT_PRODUCTION
        assert config.account_key_path == tmp_path / "account.key"

    def test_explicit_account_key_file(self, tmp_path):
        config = ManagerConfig(**base_config(tmp_path, account_key_file=tmp_path / "acct.pem"))
        assert config.account_key_path == tmp_path / "acct.pem"

    def test_requires_a_hostname(self, tmp_path):
        with pytest.raises(ConfigError):
            ManagerConfig(**base_config(tmp_path, hostnames=[]))

    def test_blank_hostnames_do_not_count(self, tmp_path):
        with pytest.raises(ConfigError):
            ManagerConfig(**base_config(tmp_path, hostnames=["", "  "]))

    def test_http01_requires_port(self, tmp_path):
        """HTTP-01 without a listen port is rejected."""
        with pytest.raises(ConfigError, match="http_listen_port"):
            ManagerConfig(**base_config(tmp_path, http_listen_port=None))

    def test_rejects_out_of_range_port(self, tmp_path):
        with pytest.raises(ConfigError):
            ManagerConfig(**base_config(tmp_path, http_listen_port=70000))

    def test_tls_alpn01_requires_callbacks(self, tmp_path):
        """TLS-ALPN-01 needs both add and remove hooks."""
        with pytest.raises(ConfigError, match="ALPN"):
            ManagerConfig(
                **base_config(
                    tmp_path,
                    challenge_type="tls-alpn-01",
                    http_listen_port=None,
                    add_alpn_challenge=MagicMock(),
                )
            )

    def test_tls_alpn01_with_callbacks(self, tmp_path):
        add, remove = MagicMock(), MagicMock()
        config = ManagerConfig(
            **base_config(
                tmp_path,
                challenge_type="tls-alpn-01",
                http_listen_port=None,
                add_alpn_challenge=add,
                remove_alpn_challenge=remove,
            )
        )
        assert config.add_alpn_challenge is add
        assert config.remove_alpn_challenge is remove

    def test_rejects_unknown_challenge_type(self, tmp_path):
        with pytest.raises(ConfigError):
            ManagerConfig(**base_config(tmp_path, challenge_type="dns-01"))

    def test_rejects_non_positive_buffer(self, tmp_path):
        with pytest.raises(ConfigError):
            ManagerConfig(**base_config(tmp_path, renew_buffer=timedelta(0)))

    def test_is_frozen(self, tmp_path):
        config = ManagerConfig(**base_config(tmp_path))
        with pytest.raises(Exception):
            config.hostnames = ["other.example.com"]


class TestNodeTLSSettings:
    """Tests for NodeTLSSettings."""

    def test_defaults_disabled(self):
        settings = NodeTLSSettings()
        assert settings.enabled is False
        assert settings.mode == "auto"
        assert settings.http_listen_port == 80

    def test_staging_directory(self):
        assert NodeTLSSettings(use_staging=True).acme_directory_url == LETSENCRYPT_STAGING
        assert NodeTLSSettings().acme_directory_url == LETSENCRYPT_PRODUCTION

    def test_auto_configuration_check(self):
        assert NodeTLSSettings().is_configured_for_auto() is False
        assert NodeTLSSettings(dns_proxy="lp.example").is_configured_for_auto() is True
        assert NodeTLSSettings(
            hostnames=["node.example.com"], http_listen_port=None
        ).is_configured_for_auto() is False

    def test_to_manager_config(self, tmp_path):
        """Certificates live in <storage_dir>/ssl."""
        settings = NodeTLSSettings(storage_dir=str(tmp_path), renew_buffer_ms=86_400_000)
        config = settings.to_manager_config(["node.example.com"])

        assert config.key_file == tmp_path / "ssl" / "key.pem"
        assert config.cert_file == tmp_path / "ssl" / "cert.pem"
        assert config.renew_buffer == timedelta(days=1)
        assert config.acme_email is None


class TestLoadTLSSettings:
    """Tests for load_tls_settings()."""

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_tls_settings(tmp_path / "tls_settings.json")
        assert settings == NodeTLSSettings()

    def test_loads_file(self, tmp_path):
        path = tmp_path / "tls_settings.json"
        path.write_text(json.dumps({
            "enabled": True,
            "mode": "auto",
            "dns_proxy": "LP.Example",
            "challenge_type": "tls-alpn-01",
            "acme_email": " Ops@Example.com ",
        }))

        settings = load_tls_settings(path)

        assert settings.enabled is True
        assert settings.dns_proxy == "lp.example"
        assert settings.challenge_type == "tls-alpn-01"
        assert settings.acme_email == "ops@example.com"

    def test_invalid_json_is_config_error(self, tmp_path):
        path = tmp_path / "tls_settings.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError):
            load_tls_settings(path)

    def test_invalid_value_is_config_error(self, tmp_path):
        path = tmp_path / "tls_settings.json"
        path.write_text(json.dumps({"mode": "sometimes"}))
        with pytest.raises(ConfigError):
            load_tls_settings(path)
