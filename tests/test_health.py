"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and components fields
  - token store mode and audit write failures surfaced as components
  - degraded status still answers 200
  - No authentication required
"""

from __future__ import annotations

from api.main import VERSION, app


def test_health_returns_200_with_components(api_client):
    """Health endpoint returns 200 with status, version, and components."""
    client, _, _ = api_client
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["version"] == VERSION
    components = data["components"]
    assert components["database"] == "ok"
    assert components["token_store"] == "memory"
    assert components["token_store_reachable"] is True
    assert components["audit_write_failures"] == 0
    assert components["active_key_id"] == app.state.auth_service.keys.active_key().kid


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    client, _, _ = api_client
    resp = client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_failed_audit_writes_report_degraded(api_client, monkeypatch):
    client, _, _ = api_client
    monkeypatch.setattr(app.state.auth_service.audit, "_write_failures", 2)
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "degraded"
    assert data["components"]["audit_write_failures"] == 2
