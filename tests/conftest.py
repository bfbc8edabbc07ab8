import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.services.billing.container import get_billing_services
from tests.helpers.billing_stubs import RecordingCache, StubGateway, build_memory_billing


class _SyncASGIClient:
    """Minimal synchronous wrapper around httpx.AsyncClient for ASGI apps."""

    def __init__(self, app):
        transport = httpx.ASGITransport(app=app)
        self._client = httpx.AsyncClient(transport=transport, base_url="http://testserver")

    def request(self, method: str, url: str, **kwargs):
        return asyncio.run(self._client.request(method, url, **kwargs))

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def close(self) -> None:
        asyncio.run(self._client.aclose())


@pytest.fixture
def client():
    """Create test client compatible with older/newer httpx releases."""
    try:
        test_client = TestClient(app)
        yield test_client
    except TypeError:
        fallback_client = _SyncASGIClient(app)
        try:
            yield fallback_client
        finally:
            fallback_client.close()


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def cache():
    return RecordingCache()


@pytest.fixture
def billing(gateway, cache):
    """In-memory billing graph wired into the app for the duration of a test."""
    services = build_memory_billing(gateway=gateway, cache=cache)
    app.dependency_overrides[get_billing_services] = lambda: services
    try:
        yield services
    finally:
        app.dependency_overrides.pop(get_billing_services, None)
