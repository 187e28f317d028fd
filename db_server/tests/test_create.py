"""
Pytest tests for POST /create, GET /regions and GET /resources/{id}.
"""
import itertools

import httpx
import pytest
from fastapi.testclient import TestClient

from db_server import rate_limit
from db_server.analytics import EVENT_DATABASE_CREATED, EVENT_DATABASE_CREATION_FAILED, get_event_capture
from db_server.database import SessionLocal
from db_server.main import app
from db_server.models import AnalyticsDataPoint, OWNER_TEMPORARY
from db_server.provisioning import get_provisioning_client
from db_server.workflows.delete_db import WORKFLOW_NAME as DELETE_WORKFLOW
from db_server.workflows.engine import STATUS_SCHEDULED, get_workflow_engine


@pytest.fixture
def client(stub, recorder):
    app.dependency_overrides[get_provisioning_client] = stub.client
    app.dependency_overrides[get_event_capture] = lambda: recorder
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def projects(stub):
    """Provisioning API that creates a new project per call."""
    ids = itertools.count(1)

    def create(request):
        n = next(ids)
        return httpx.Response(
            201,
            json={
                "data": {
                    "id": f"proj_{n}",
                    "database": {
                        "id": f"db_{n}",
                        "name": "mydb",
                        "region": {"id": "us-east-1"},
                        "apiKeys": [{"directConnection": {"host": "db.example.net", "user": "u", "pass": "p"}}],
                    },
                }
            },
        )

    stub.on("POST", "/v1/projects", create)
    return stub


def test_create_schedules_deletion_with_default_ttl(client, projects, recorder):
    response = client.post("/create", json={"region": "us-east-1", "name": "mydb", "utm_source": "cli"})
    assert response.status_code == 200
    data = response.json()
    assert data["id"] == "proj_1"
    assert data["connectionString"] == "postgresql://u:p@db.example.net/postgres?sslmode=require"
    assert data["ttlMs"] == 86_400_000
    assert data["claimUrl"] == "http://testserver/claim?resourceId=proj_1&utm_source=cli"

    engine = get_workflow_engine()
    db = SessionLocal()
    try:
        instance = engine.get(db, DELETE_WORKFLOW, "proj_1")
        assert instance.status == STATUS_SCHEDULED
        assert instance.get_params() == {"resource_id": "proj_1", "ttl_ms": 86_400_000}
        assert db.query(AnalyticsDataPoint).filter(AnalyticsDataPoint.event == "database_created").count() == 1
    finally:
        db.close()
    assert recorder.named(EVENT_DATABASE_CREATED)[0]["project-id"] == "proj_1"

    resource = client.get("/resources/proj_1").json()
    assert resource["ownerState"] == OWNER_TEMPORARY
    assert resource["deletion"]["status"] == STATUS_SCHEDULED
    assert resource["deletion"]["ttlMs"] == 86_400_000


def test_create_with_ttl_text(client, projects):
    response = client.post("/create", json={"region": "us-east-1", "name": "mydb", "ttl": "1h"})
    assert response.status_code == 200
    assert response.json()["ttlMs"] == 3_600_000


def test_create_with_ttl_ms(client, projects):
    response = client.post("/create", json={"region": "us-east-1", "name": "mydb", "ttlMs": 1_800_000})
    assert response.status_code == 200
    assert response.json()["ttlMs"] == 1_800_000


@pytest.mark.parametrize("body", [{"ttl": "10m"}, {"ttl": "2d"}, {"ttlMs": 1000}, {"ttlMs": 90_000_000}])
def test_create_rejects_out_of_range_ttl(client, projects, body):
    response = client.post("/create", json={"region": "us-east-1", "name": "mydb", **body})
    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "invalid_ttl"
    assert projects.calls("POST", "/v1/projects") == []


def test_create_requires_region_and_name(client, projects):
    response = client.post("/create", json={"region": "us-east-1"})
    assert response.status_code == 400
    assert projects.calls("POST", "/v1/projects") == []


def test_create_rate_limited_per_route(client, projects, recorder):
    statuses = [client.post("/create", json={"region": "us-east-1", "name": "mydb"}).status_code for _ in range(5)]
    assert statuses == [200] * 5
    response = client.post("/create", json={"region": "us-east-1", "name": "mydb"})
    assert response.status_code == 429
    assert response.json()["error"] == "rate_limit_exceeded"
    assert int(response.headers["Retry-After"]) >= 1
    assert len(projects.calls("POST", "/v1/projects")) == 5
    assert recorder.named(EVENT_DATABASE_CREATION_FAILED)[0]["error-type"] == "rate_limit"


def test_rotating_forwarded_for_does_not_reset_limit(client, stub):
    stub.on("GET", "/v1/regions/postgres", httpx.Response(200, json={"data": []}))
    statuses = [
        client.get("/regions", headers={"X-Forwarded-For": f"203.0.113.{n}"}).status_code for n in range(6)
    ]
    assert statuses == [200] * 5 + [429]
    assert len(stub.calls("GET", "/v1/regions/postgres")) == 5


def test_forwarded_for_is_used_behind_trusted_proxy(client, stub, monkeypatch):
    monkeypatch.setattr(rate_limit, "RATE_LIMIT_TRUST_PROXY_HEADERS", True)
    stub.on("GET", "/v1/regions/postgres", httpx.Response(200, json={"data": []}))
    for _ in range(5):
        assert client.get("/regions", headers={"X-Forwarded-For": "203.0.113.1"}).status_code == 200
    assert client.get("/regions", headers={"X-Forwarded-For": "203.0.113.1"}).status_code == 429
    assert client.get("/regions", headers={"X-Forwarded-For": "203.0.113.2"}).status_code == 200


def test_upstream_rate_limit_is_surfaced(client, stub, recorder):
    stub.on("POST", "/v1/projects", httpx.Response(429))
    response = client.post("/create", json={"region": "us-east-1", "name": "mydb"})
    assert response.status_code == 429
    assert response.json()["error"] == "rate_limit_exceeded"
    assert recorder.named(EVENT_DATABASE_CREATION_FAILED)[0]["error-type"] == "rate_limit_exceeded"


def test_upstream_error_is_500_and_nothing_is_scheduled(client, stub):
    stub.on("POST", "/v1/projects", httpx.Response(400, json={"error": {"message": "Unsupported region"}}))
    response = client.post("/create", json={"region": "mars-1", "name": "mydb"})
    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "api_error"
    assert body["message"] == "Unsupported region"
    assert body["status"] == 400


def test_regions_passthrough(client, stub):
    stub.on("GET", "/v1/regions/postgres", httpx.Response(200, json={"data": [{"id": "us-east-1"}]}))
    response = client.get("/regions")
    assert response.status_code == 200
    assert response.json() == {"data": [{"id": "us-east-1"}]}


def test_unknown_resource_is_404(client):
    assert client.get("/resources/nope").status_code == 404


def test_health(client):
    assert client.get("/health").json() == {"status": "ok", "service": "db_server"}
