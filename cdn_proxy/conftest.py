import pytest
from fastapi.testclient import TestClient

from cdn_proxy.config import load_settings
from cdn_proxy.utils_tests.upstream_double import UpstreamDouble

TEST_UPSTREAM_URL = "https://cdn.example.com"
TEST_ALLOWED_ORIGIN = "http://localhost:4200"


@pytest.fixture
def make_settings():
    """Build settings from a minimal environment plus overrides."""

    def _make(**overrides):
        env = {
            "UPSTREAM_BASE_URL": TEST_UPSTREAM_URL,
            "PROXY_PREFIX": "/api/optimizely",
            "ALLOWED_ORIGINS": f"{TEST_ALLOWED_ORIGIN},https://app.example.com",
            "SERVICE_NAME": "Optimizely Proxy Server",
        }
        env.update({k: str(v) for k, v in overrides.items()})
        return load_settings(env)

    return _make


@pytest.fixture
def upstream():
    return UpstreamDouble()


@pytest.fixture
def app_client(make_settings, upstream):
    """TestClient factory wired to the upstream double."""
    from cdn_proxy.server import create_app

    clients = []

    def _client(**overrides):
        app = create_app(make_settings(**overrides), client=upstream.client())
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _client

    for client in clients:
        client.__exit__(None, None, None)
