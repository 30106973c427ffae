"""
Shared fixtures for the TLS lifecycle tests.
"""
import httpx
import pytest_asyncio

from tls_lifecycle.app import create_app
from tls_lifecycle.routes import set_certificate_provider


@pytest_asyncio.fixture
async def async_client():
    """HTTP client bound to the REST app in-process."""
    transport = httpx.ASGITransport(app=create_app())
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    set_certificate_provider(None)
