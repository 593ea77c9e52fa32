"""
Portal Proxy - edge servers of the patient portal.

App factories for the two deployment profiles:
- the domain router, forwarding by Host header to the API or app upstream
- the static asset server, serving the portal with `/api` and health endpoints
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI

from portal_proxy.config import AppConfig, get_config
from portal_proxy.logging import get_logger
from portal_proxy.routers import backend, domain, internal
from portal_proxy.services.headers import CORS_HEADERS, SECURITY_HEADERS, HeaderSetMiddleware
from portal_proxy.services.routing import build_route_table
from portal_proxy.services.static import SPAStaticFiles
from portal_proxy.state import ProxyState

load_dotenv()

logger = get_logger(__name__)


def _build_http_client(config: AppConfig) -> httpx.AsyncClient:
    """Shared HTTP client for upstream requests. Redirects are relayed, not followed."""
    timeout = httpx.Timeout(config.proxy_read_timeout, connect=config.proxy_connect_timeout)
    return httpx.AsyncClient(timeout=timeout, follow_redirects=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager - handles startup and shutdown."""
    state: ProxyState = app.state.proxy
    if state.http_client is None:
        state.http_client = _build_http_client(state.config)
        logger.info("HTTP client initialized")

    yield

    if state.owns_client and state.http_client is not None:
        await state.http_client.aclose()
        state.http_client = None
        logger.info("HTTP client closed")


def create_router_app(
    config: Optional[AppConfig] = None,
    http_client: Optional[httpx.AsyncClient] = None
) -> FastAPI:
    """
    Build the domain router app.

    Raises:
        ValueError: If the route file is missing or malformed
    """
    config = config or get_config()
    routes = build_route_table(config)
    for rule in routes.rules:
        logger.info(f"Route {rule.host_match!r} -> {rule.upstream}")

    app = FastAPI(
        title="Portal Proxy",
        description="Host-based router in front of the portal API and app",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None
    )
    app.state.proxy = ProxyState(
        config=config,
        headers=SECURITY_HEADERS,
        routes=routes,
        http_client=http_client
    )
    app.add_middleware(HeaderSetMiddleware, headers=SECURITY_HEADERS)

    if config.proxy_stats_path:
        app.add_api_route(config.proxy_stats_path, internal.stats, methods=["GET"], include_in_schema=False)
    # Catch-all, must stay last
    app.include_router(domain.router)
    return app


def create_static_app(
    config: Optional[AppConfig] = None,
    http_client: Optional[httpx.AsyncClient] = None
) -> FastAPI:
    """
    Build the static asset / health server app.

    Raises:
        RuntimeError: If the static root directory does not exist
    """
    config = config or get_config()

    app = FastAPI(
        title="Portal Static Server",
        description="Portal static files, backend passthrough and health check",
        lifespan=lifespan
    )
    app.state.proxy = ProxyState(config=config, headers=CORS_HEADERS, http_client=http_client)
    app.add_middleware(HeaderSetMiddleware, headers=CORS_HEADERS)

    app.include_router(internal.router)
    app.include_router(backend.router)
    app.mount("/", SPAStaticFiles(directory=config.static_root, index=config.static_index), name="static")
    logger.info(f"Serving files from {config.static_root}, /api -> {config.static_api_base}")
    return app
