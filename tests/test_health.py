"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and components fields
  - database and ephemeral_store components report 'healthy'
  - 503 'degraded' when a store stops answering its ping
  - No authentication required
"""

from __future__ import annotations


def test_health_returns_200_with_components(api_client):
    """Health endpoint returns 200 with status, version, and components."""
    resp = api_client.client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["version"]
    assert data["components"] == {"app": "healthy", "database": "healthy", "ephemeral_store": "healthy"}


def test_health_degraded_when_ephemeral_store_is_down(api_client, monkeypatch):
    monkeypatch.setattr(api_client.ephemeral, "ping", lambda: False)
    resp = api_client.client.get("/api/v1/health")
    assert resp.status_code == 503
    data = resp.json()
    assert data["status"] == "degraded"
    assert data["components"]["ephemeral_store"] == "unhealthy"
    assert data["components"]["database"] == "healthy"


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    api_client.client.cookies.clear()
    resp = api_client.client.get("/api/v1/health", headers={})
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
