"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and components fields
  - components.database reports 'ok' against the test directory
  - No authentication required
"""

from __future__ import annotations


def test_health_returns_200_with_components(api):
    """Health endpoint returns 200 with status, version, and components."""
    resp = api.client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert "version" in data
    assert data["components"]["app"] == "ok"
    assert data["components"]["database"] == "ok"


def test_health_no_auth_required(api):
    """Health endpoint is accessible without any authentication headers."""
    api.client.cookies.clear()
    resp = api.client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_unexpected_host_rejected(api):
    """TrustedHostMiddleware refuses Host headers outside ALLOWED_HOSTS."""
    resp = api.client.get("/api/v1/health", headers={"host": "evil.example"})
    assert resp.status_code == 400
