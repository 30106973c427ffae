"""
Error taxonomy for the certificate lifecycle.

Only ConfigError and a first-boot IssuanceError/StoreError are fatal to the
node; everything else is logged and retried on the next scheduled check.
"""
from typing import Optional


class TLSLifecycleError(Exception):
    """Base class for certificate lifecycle errors."""


class ConfigError(TLSLifecycleError):
    """Configuration is invalid or incomplete for the selected challenge type."""


class IssuanceError(TLSLifecycleError):
    """The ACME exchange failed (network, rate limit, challenge validation)."""


class ForgeryError(TLSLifecycleError):
    """A TLS-ALPN-01 challenge certificate could not be built."""

    def __init__(self, domain: str, message: str):
        super().__init__(f"{domain}: {message}")
        self.domain = domain


class StoreError(TLSLifecycleError):
    """Reading or writing the key/certificate files failed."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message if path is None else f"{message} ({path})")
        self.path = path
