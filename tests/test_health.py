"""
tests/test_health.py -- Integration tests for GET /api/health.

Covers:
  - 200 response with status and version
  - No authentication required
  - CSRF token echoed on every response
"""

from __future__ import annotations

from api.main import API_VERSION
from auth.tokens import CSRF_HEADER


def test_health_returns_status_and_version(api):
    resp = api.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "version": API_VERSION}


def test_health_no_auth_required(api):
    """Health endpoint is accessible without any session cookie or bearer header."""
    api.cookies.clear()
    resp = api.get("/api/health")
    assert resp.status_code == 200
    assert resp.headers[CSRF_HEADER]
