"""
TLS API endpoints for the node operator.

Provides REST endpoints for:
- Certificate status (mode, expiry, last renewal outcome)
- Manual renewal retry
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from .errors import IssuanceError, StoreError
from .manager import CertificateLifecycleManager, CertificateProvider


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tls", tags=["TLS"])

# Provider of the running node, registered at startup
_certificate_provider: Optional[CertificateProvider] = None


def set_certificate_provider(provider: Optional[CertificateProvider]) -> None:
    global _certificate_provider
    _certificate_provider = provider


def get_certificate_provider() -> CertificateProvider:
    if _certificate_provider is None:
        raise HTTPException(status_code=503, detail="TLS is not enabled")
    return _certificate_provider


# ============================================================================
# Request/Response Models
# ============================================================================


class TLSStatusResponse(BaseModel):
    """TLS certificate status."""

    mode: str  # "auto" | "manual"
    state: str
    hostnames: list[str] = []
    challenge_type: Optional[str] = None
    has_certificate: bool = False
    cert_expires_at: Optional[str] = None
    days_until_expiry: Optional[int] = None
    renewing: bool = False
    last_renewal_attempt: Optional[str] = None
    last_renewal_error: Optional[str] = None


class RenewResponse(BaseModel):
    """Outcome of a manual renewal request."""

    renewed: bool
    message: str
    cert_expires_at: Optional[str] = None


# ============================================================================
# Endpoints
# ============================================================================


@router.get("/status", response_model=TLSStatusResponse)
async def get_tls_status(provider: CertificateProvider = Depends(get_certificate_provider)):
    """Get current certificate status."""
    response = TLSStatusResponse(
        mode=provider.mode,
        state=provider.state.value,
        renewing=provider.is_renewing,
        last_renewal_error=provider.last_renewal_error,
    )
    if provider.last_renewal_attempt is not None:
        response.last_renewal_attempt = provider.last_renewal_attempt.isoformat()

    if isinstance(provider, CertificateLifecycleManager):
        response.hostnames = list(provider.config.hostnames)
        response.challenge_type = provider.config.challenge_type

    material = provider.material
    if material is not None:
        response.has_certificate = True
        response.cert_expires_at = material.not_after.isoformat()
        response.days_until_expiry = material.days_until_expiry()

    return response


@router.post("/renew", response_model=RenewResponse)
async def renew_certificate(provider: CertificateProvider = Depends(get_certificate_provider)):
    """
    Run a renewal check now.

    Renews only when the certificate is inside the renewal buffer, exactly
    like the scheduled check.
    """
    if not isinstance(provider, CertificateLifecycleManager):
        raise HTTPException(400, "Certificates are managed manually, nothing to renew")

    if provider.is_renewing:
        raise HTTPException(409, "A certificate renewal is already in progress")

    try:
        renewed = await provider.check_and_renew()
    except (IssuanceError, StoreError) as e:
        raise HTTPException(502, f"Certificate renewal failed: {e}")

    expires = provider.material.not_after.isoformat() if provider.material else None
    if renewed:
        return RenewResponse(renewed=True, message="Certificate renewed", cert_expires_at=expires)
    return RenewResponse(
        renewed=False,
        message="Certificate is not due for renewal",
        cert_expires_at=expires,
    )
