"""
TLS certificate lifecycle for the liquidity-provider node.

Keeps the node's public HTTPS endpoint supplied with a valid certificate:
- Let's Encrypt issuance and renewal via ACME (HTTP-01 or TLS-ALPN-01)
- Operator-supplied certificate files with rotation on change
- Hot credential swap into the running HTTPS server
"""

from .errors import (
    ConfigError,
    ForgeryError,
    IssuanceError,
    StoreError,
    TLSLifecycleError,
)
from .settings import (
    ManagerConfig,
    NodeTLSSettings,
    get_tls_settings,
    clear_tls_settings_cache,
)
from .storage import CertificateMaterial, CertificateStore
from .forge import AlpnCertificateForge, AlpnChallengeCert
from .challenges import AlpnChallengeResponder, HttpChallengeResponder
from .acme_client import AcmeProtocolClient, LetsEncryptClient
from .https_server import HTTPSServerManager, TLSContextSwitcher
from .manager import (
    CertificateLifecycleManager,
    CertificateProvider,
    ManagerState,
    ManualCertificateProvider,
    create_certificate_provider,
)

__version__ = "0.1.0"

__all__ = [
    "TLSLifecycleError",
    "ConfigError",
    "ForgeryError",
    "IssuanceError",
    "StoreError",
    "ManagerConfig",
    "NodeTLSSettings",
    "get_tls_settings",
    "clear_tls_settings_cache",
    "CertificateMaterial",
    "CertificateStore",
    "AlpnCertificateForge",
    "AlpnChallengeCert",
    "AlpnChallengeResponder",
    "HttpChallengeResponder",
    "AcmeProtocolClient",
    "LetsEncryptClient",
    "HTTPSServerManager",
    "TLSContextSwitcher",
    "CertificateLifecycleManager",
    "CertificateProvider",
    "ManagerState",
    "ManualCertificateProvider",
    "create_certificate_provider",
]
