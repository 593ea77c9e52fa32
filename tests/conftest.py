"""
Shared test fixtures and helpers.
"""
from __future__ import annotations

import json
from typing import Any

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from portal_proxy.config import AppConfig
from portal_proxy.main import create_router_app, create_static_app
from portal_proxy.services.routing import RouteRule, RouteTable
from portal_proxy.services.stats import StatsCollector
from portal_proxy.state import ProxyState


API_UPSTREAM = "http://localhost:3015"
APP_UPSTREAM = "http://localhost:3002"

INDEX_HTML = "<!doctype html><html><body>Patient portal</body></html>"


def make_config(**overrides: Any) -> AppConfig:
    """Settings isolated from any .env file, with the reference deployment defaults."""
    values = {
        "proxy_public_domain": "example.com",
        "proxy_api_upstream": "localhost:3015",
        "proxy_app_upstream": "localhost:3002",
        "proxy_routes_file": None,
        "proxy_tls_cert": None,
        "proxy_tls_key": None,
        "proxy_tls_policy": "fallback",
        "proxy_self_signed": False,
        "proxy_change_origin": True,
        "proxy_reject_unmatched": False,
        "proxy_stats_path": None,
        "static_api_base": "http://localhost:3015/api",
        "static_version": "1.0.0",
        "tomtom_api_key": None,
        "tomtom_base_url": "https://api.tomtom.com",
    }
    values.update(overrides)
    return AppConfig(_env_file=None, **values)


def proxy_state(app: FastAPI) -> ProxyState:
    return app.state.proxy


@pytest.fixture
def sample_rules() -> RouteTable:
    """Reference deployment rules for example.com."""
    return RouteTable(rules=(
        RouteRule(host_match="api.example.com", upstream_host="localhost", upstream_port=3015),
        RouteRule(host_match="example.com", upstream_host="localhost", upstream_port=3002),
        RouteRule(host_match="*", upstream_host="localhost", upstream_port=3002),
    ))


@pytest.fixture
def temp_routes_file(tmp_path) -> str:
    """Create a temporary route file for testing."""
    routes_path = tmp_path / "routes.json"
    routes_path.write_text(json.dumps({
        "rules": [
            {"host": "api.example.com", "upstream": "localhost:3015"},
            {"host": "example.com", "upstream": "localhost:3002"},
        ],
        "default": "localhost:3002",
    }))
    return str(routes_path)


@pytest.fixture
def fresh_stats_collector() -> StatsCollector:
    """Create a fresh StatsCollector instance for testing."""
    return StatsCollector()


@pytest.fixture
def static_root(tmp_path) -> str:
    """A small site: index document, a script and a nested stylesheet."""
    root = tmp_path / "site"
    (root / "css").mkdir(parents=True)
    (root / "index.html").write_text(INDEX_HTML)
    (root / "app.js").write_text("console.log('portal');")
    (root / "css" / "main.css").write_text("body { margin: 0; }")
    return str(root)


@pytest.fixture
def router_app() -> FastAPI:
    """Domain router for example.com with an injected HTTP client."""
    return create_router_app(make_config(), http_client=httpx.AsyncClient())


@pytest.fixture
def router_client(router_app) -> TestClient:
    return TestClient(router_app)


@pytest.fixture
def static_app(static_root) -> FastAPI:
    """Static server for the temporary site with an injected HTTP client."""
    config = make_config(static_root=static_root, tomtom_api_key="map-key-for-tests")
    return create_static_app(config, http_client=httpx.AsyncClient())


@pytest.fixture
def static_client(static_app) -> TestClient:
    return TestClient(static_app)
