"""
Domain router - forwards every request to the upstream selected by its Host header.
"""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request, Response
from fastapi.responses import PlainTextResponse

from portal_proxy.logging import get_logger
from portal_proxy.services.proxy import (
    ExchangePhase,
    ProxyError,
    ProxyExchange,
    build_upstream_url,
    forward,
)
from portal_proxy.services.routing import find_matching_rule
from portal_proxy.state import ProxyState, get_state

logger = get_logger(__name__)

router = APIRouter(tags=["domain"])


async def route_by_host(request: Request) -> Response:
    """
    Pick the upstream for the request's Host and relay the exchange.

    Responds 502 (504 on timeouts) with a plain-text `Proxy error: ...` body when
    the upstream cannot be reached, and 421 for unmatched hosts when
    `proxy_reject_unmatched` is set.
    """
    state: ProxyState = get_state(request)
    if state.routes is None or state.http_client is None:
        logger.error("Domain router used before routes and HTTP client were set up")
        raise HTTPException(status_code=500, detail="Internal server error")

    host = request.headers.get("host")
    exchange = ProxyExchange(method=request.method, path=request.url.path, host=host or "")

    rule = find_matching_rule(host, state.routes.rules)
    exchange.upstream = rule.upstream
    exchange.advance(ExchangePhase.HOST_MATCHED)
    logger.info(f"{request.method} {host or '<no host>'}{request.url.path} -> {rule.upstream}")

    if rule.is_default and state.config.proxy_reject_unmatched:
        exchange.fail("unmatched host")
        logger.warning(f"Rejected request for unmatched host {host!r}")
        return PlainTextResponse("Misdirected request", status_code=421)

    host_header = rule.upstream if state.config.proxy_change_origin else None
    try:
        return await forward(
            state.http_client,
            request,
            exchange,
            url=build_upstream_url(rule.base_url, request),
            host_header=host_header,
            stats=state.stats
        )
    except ProxyError as e:
        status_code = 504 if e.timeout else 502
        return PlainTextResponse(f"Proxy error: {e.reason}", status_code=status_code)


# No method filter: any verb is forwarded as is.
# OPTIONS is answered by the header middleware and never gets here.
router.add_route("/{path:path}", route_by_host, include_in_schema=False)
