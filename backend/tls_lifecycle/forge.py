"""
TLS-ALPN-01 challenge certificates (RFC 8737).

Builds the short-lived self-signed certificate an ACME validator expects to
see when it connects with ALPN ``acme-tls/1`` and SNI set to the domain being
validated.
"""
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.exceptions import InternalError, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID, ObjectIdentifier

from .errors import ForgeryError


logger = logging.getLogger(__name__)

# acmeIdentifier extension (RFC 8737 §3)
ACME_IDENTIFIER_OID = ObjectIdentifier("1.3.6.1.5.5.7.1.31")

# ALPN protocol identifier
ACME_TLS_ALPN_PROTOCOL = "acme-tls/1"

CLOCK_SKEW = timedelta(minutes=5)
VALIDITY = timedelta(days=7)
KEY_SIZE = 2048


@dataclass(frozen=True)
class AlpnChallengeCert:
    """PEM-encoded challenge certificate and its private key."""

    cert_pem: str
    key_pem: str


def acme_identifier_value(key_authorization: str) -> bytes:
    """
    DER OCTET STRING holding SHA-256 of the key authorization.

    The digest is always 32 bytes, so the short-form length applies.
    """
    digest = hashlib.sha256(key_authorization.encode("ascii")).digest()
    return b"\x04" + bytes([len(digest)]) + digest


class AlpnCertificateForge:
    """Builds single-use TLS-ALPN-01 challenge certificates."""

    def build(self, domain: str, key_authorization: str) -> AlpnChallengeCert:
        """
        Build a challenge certificate for one domain.

        A new RSA keypair is generated on every call.

        Args:
            domain: The DNS identifier being validated
            key_authorization: The challenge's key authorization

        Returns:
            AlpnChallengeCert with certificate and PKCS#8 key PEMs

        Raises:
            ForgeryError: if key generation, encoding or signing fails
        """
        try:
            identifier_value = acme_identifier_value(key_authorization)
            key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
            now = datetime.now(timezone.utc)
            name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])

            cert = (
                x509.CertificateBuilder()
                .subject_name(name)
                .issuer_name(name)
                .public_key(key.public_key())
                .serial_number(int.from_bytes(secrets.token_bytes(16), "big") >> 1)
                .not_valid_before(now - CLOCK_SKEW)
                .not_valid_after(now + VALIDITY)
                .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        content_commitment=False,
                        key_encipherment=True,
                        data_encipherment=False,
                        key_agreement=False,
                        key_cert_sign=False,
                        crl_sign=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=True,
                )
                .add_extension(
                    x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
                    critical=True,
                )
                .add_extension(
                    x509.SubjectAlternativeName([x509.DNSName(domain)]),
                    critical=False,
                )
                .add_extension(
                    x509.UnrecognizedExtension(ACME_IDENTIFIER_OID, identifier_value),
                    critical=True,
                )
                .sign(key, hashes.SHA256())
            )

            cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
            key_pem = key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            ).decode("ascii")
        except (ValueError, TypeError, UnicodeError, UnsupportedAlgorithm, InternalError) as e:
            raise ForgeryError(domain, f"Cannot build TLS-ALPN-01 certificate: {e}") from e

        logger.debug("[TLS-CHALLENGE] Built TLS-ALPN-01 certificate for %s", domain)
        return AlpnChallengeCert(cert_pem=cert_pem, key_pem=key_pem)
