"""
Pytest configuration for db_server. Use in-memory SQLite so tests don't touch the filesystem.
"""
import os

# In-memory SQLite; database.py uses StaticPool so all connections share the same DB
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["CLAIM_STATE_SECRET"] = "test-state-secret-0123456789abcdef0123"
os.environ["CLAIM_BASE_URL"] = "http://testserver"
os.environ["IDP_URL"] = "https://idp.test"
# Memory limiter and no analytics delivery during tests
for name in ("RATE_LIMIT_REDIS_URL", "POSTHOG_API_HOST", "POSTHOG_API_KEY"):
    os.environ.pop(name, None)

import httpx
import pytest

from db_server import provisioning, rate_limit
from db_server.database import engine
from db_server.models import Base
from db_server.provisioning import ProvisioningClient
from db_server.workflows import engine as workflow_engine

PROVISIONING_BASE = "https://provisioning.test/v1"


class RecordingCapture:
    """Stands in for EventCapture; keeps events in memory."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def capture(self, event, properties=None):
        self.events.append((event, dict(properties or {})))

    def named(self, event):
        return [props for name, props in self.events if name == event]


class ProvisioningStub:
    """Routes MockTransport requests to per-endpoint handlers and records them."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], object] = {}

    def on(self, method: str, path: str, response):
        # response: httpx.Response or callable(request) -> httpx.Response
        self.routes[(method, path)] = response

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": {"message": "not found"}})
        if callable(route):
            return route(request)
        # Fresh copy: one canned response may answer several requests
        return httpx.Response(route.status_code, headers=route.headers, content=route.content)

    def client(self) -> ProvisioningClient:
        return ProvisioningClient(base_url=PROVISIONING_BASE, token="test-token", transport=httpx.MockTransport(self.handler))


@pytest.fixture(autouse=True)
def fresh_state():
    """Empty tables and fresh process-wide singletons for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    rate_limit._limiter = None
    provisioning._client = None
    workflow_engine._engine = None
    yield
    rate_limit._limiter = None
    provisioning._client = None
    workflow_engine._engine = None


@pytest.fixture
def stub():
    """Provisioning API stub, also installed as the process-wide client used by workflows."""
    s = ProvisioningStub()
    provisioning._client = s.client()
    return s


@pytest.fixture
def recorder():
    return RecordingCapture()
