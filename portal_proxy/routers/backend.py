"""
Backend router - the static server's `/api` passthrough and the map search proxy.
"""
from __future__ import annotations

import time
from urllib.parse import quote

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from portal_proxy.logging import get_logger
from portal_proxy.services.proxy import (
    ExchangePhase,
    ProxyError,
    ProxyExchange,
    build_upstream_url,
    describe_error,
    forward,
)
from portal_proxy.services.stats import ProxyErrorEvent
from portal_proxy.state import ProxyState, get_state

logger = get_logger(__name__)

router = APIRouter(tags=["backend"])

API_PREFIX = "/api"
API_METHODS = ["GET", "POST", "PUT", "DELETE"]
API_RESPONSES = {
    500: {"description": "Backend unreachable, body is `{\"error\": \"Failed to connect to backend\"}`"},
}
MAP_SEARCH_UPSTREAM = "map-search"


def _require_client(state: ProxyState) -> httpx.AsyncClient:
    if state.http_client is None:
        logger.error("HTTP client not initialized")
        raise HTTPException(status_code=500, detail="Internal server error")
    return state.http_client


@router.api_route(API_PREFIX, methods=API_METHODS, include_in_schema=False)
@router.api_route(API_PREFIX + "/{path:path}", methods=API_METHODS, responses=API_RESPONSES)
async def api_passthrough(request: Request, state: ProxyState = Depends(get_state)) -> Response:
    """
    Forward `/api` and `/api/*` to the configured backend base URL.

    Method, headers, body and query string are forwarded unchanged and the
    backend's response is relayed as-is.
    """
    client = _require_client(state)
    base_url = state.config.static_api_base
    exchange = ProxyExchange(
        method=request.method,
        path=request.url.path,
        host=request.headers.get("host", ""),
        upstream=base_url
    )
    exchange.advance(ExchangePhase.HOST_MATCHED)
    logger.info(f"{request.method} {request.url.path} -> {base_url}")

    try:
        return await forward(
            client,
            request,
            exchange,
            url=build_upstream_url(base_url, request, strip_prefix=API_PREFIX),
            host_header=httpx.URL(base_url).netloc.decode("ascii"),
            stats=state.stats
        )
    except ProxyError:
        return JSONResponse({"error": "Failed to connect to backend"}, status_code=500)


@router.get("/tomtom/search/2/poiSearch/{query}")
async def poi_search(
    query: str,
    lat: float,
    lon: float,
    radius: int = 5000,
    limit: int = 10,
    state: ProxyState = Depends(get_state)
) -> Response:
    """
    Points-of-interest search near a position, proxied to the map provider.

    The provider API key is added server side and never leaves the server.
    """
    api_key = state.config.tomtom_api_key
    if api_key is None or not api_key.get_secret_value():
        logger.warning("Map search requested but no map API key is configured")
        return JSONResponse({"error": "Map search is not configured"}, status_code=503)

    client = _require_client(state)
    url = f"{state.config.tomtom_base_url.rstrip('/')}/search/2/poiSearch/{quote(query, safe='')}.json"
    params = {
        "key": api_key.get_secret_value(),
        "lat": lat,
        "lon": lon,
        "radius": radius,
        "limit": limit,
    }
    logger.info(f"Map search for {query!r} near ({lat}, {lon})")

    start_time = time.perf_counter()
    try:
        upstream = await client.get(url, params=params)
    except httpx.RequestError as e:
        reason = describe_error(e)
        logger.error(f"Map search failed: {reason}")
        await state.stats.record_request(
            MAP_SEARCH_UPSTREAM, (time.perf_counter() - start_time) * 1000, is_error=True
        )
        await state.stats.record_error(ProxyErrorEvent(
            upstream=MAP_SEARCH_UPSTREAM,
            method="GET",
            path=f"/search/2/poiSearch/{query}",
            reason=reason,
            phase=ExchangePhase.UPSTREAM_CONNECTING.name
        ))
        return JSONResponse({"error": "Failed to fetch from map search"}, status_code=500)

    await state.stats.record_request(
        MAP_SEARCH_UPSTREAM,
        (time.perf_counter() - start_time) * 1000,
        is_error=upstream.status_code >= 500
    )
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        media_type=upstream.headers.get("content-type", "application/json")
    )
