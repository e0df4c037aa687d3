"""Tests for configuration loading, auth helpers and health endpoints."""

import base64
import json
from dataclasses import replace

from fastapi.testclient import TestClient

from parkspot.auth import token_from_cookies
from parkspot.core.config import get_settings
from parkspot.main import create_app


def test_get_settings_reads_environment(monkeypatch):
    monkeypatch.setenv("STRIPE_PRICE_PRO", "price_pro_env")
    monkeypatch.setenv("STRIPE_PRICE_BASIC", "")
    monkeypatch.setenv("CORS_ORIGINS", '["https://a.test", "https://b.test"]')
    monkeypatch.setenv("USER_RL_PER_MIN", "not-a-number")
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://parkspot.test/")
    cfg = get_settings()
    assert cfg.price_for("pro") == "price_pro_env"
    assert cfg.price_for("basic") is None
    assert cfg.CORS_ORIGINS == ["https://a.test", "https://b.test"]
    assert cfg.USER_RL_PER_MIN == 10
    assert cfg.PUBLIC_BASE_URL == "https://parkspot.test"


def test_missing_required(settings):
    assert settings.missing_required() == []
    cfg = replace(settings, STRIPE_WEBHOOK_SECRET=None, SUPABASE_JWT_SECRET=None)
    assert cfg.missing_required() == [
        "STRIPE_WEBHOOK_SECRET",
        "SUPABASE_JWT_SECRET|SUPABASE_JWT_JWKS_URL",
    ]


def test_token_from_chunked_base64_cookie():
    session = json.dumps({"access_token": "header.payload.sig", "refresh_token": "r"})
    encoded = "base64-" + base64.urlsafe_b64encode(session.encode()).decode().rstrip("=")
    cookies = {
        "sb-proj-auth-token.1": encoded[20:],
        "sb-proj-auth-token.0": encoded[:20],
        "theme": "dark",
    }
    assert token_from_cookies(cookies) == "header.payload.sig"
    assert token_from_cookies({"theme": "dark"}) is None


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_health_ok(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


def test_health_reports_missing_config(settings, store, processor):
    client = TestClient(create_app(replace(settings, STRIPE_SECRET_KEY=None), store, processor))
    resp = client.get("/api/health")
    assert resp.status_code == 503
    assert resp.json()["missing"] == ["STRIPE_SECRET_KEY"]


def test_unknown_api_route_uses_error_envelope(client):
    resp = client.get("/api/nope")
    assert resp.status_code == 404
    assert resp.json()["error_code"] == "not_found"
