"""
Proxy service - forwards requests to upstreams and streams their responses back.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from enum import IntEnum
from typing import AsyncIterator, List, Optional, Tuple

import anyio
import httpx
from starlette.requests import ClientDisconnect, Request
from starlette.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from portal_proxy.logging import get_logger
from portal_proxy.services.stats import ProxyErrorEvent, StatsCollector

logger = get_logger(__name__)

# Hop-by-hop headers that should not be forwarded in either direction
HOP_BY_HOP_HEADERS = frozenset({
    "connection", "keep-alive", "proxy-connection", "proxy-authenticate",
    "proxy-authorization", "te", "trailer", "trailers", "transfer-encoding", "upgrade"
})


class ExchangePhase(IntEnum):
    RECEIVED = 0
    HOST_MATCHED = 1
    UPSTREAM_CONNECTING = 2
    STREAMING = 3
    COMPLETED = 4
    FAILED = 5


class ProxyError(Exception):
    """Upstream could not be reached; raised before any response byte was sent."""

    def __init__(self, reason: str, timeout: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.timeout = timeout


class UpstreamAborted(Exception):
    """
    Upstream failed after the response headers were sent.

    Raised out of the response so the server drops the client connection
    instead of ending the body as if it were complete.
    """


@dataclass
class ProxyExchange:
    """
    Transient state of one proxied request.

    Phases only move forward. FAILED is terminal and may be entered from any
    unfinished phase; once the exchange reached STREAMING the response headers
    are committed and no error response may be written anymore.
    """
    method: str
    path: str
    host: str = ""
    upstream: str = ""
    phase: ExchangePhase = ExchangePhase.RECEIVED
    failed_in: Optional[ExchangePhase] = None
    error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.phase in (ExchangePhase.COMPLETED, ExchangePhase.FAILED)

    @property
    def headers_sent(self) -> bool:
        reached = self.failed_in if self.phase is ExchangePhase.FAILED else self.phase
        return reached is not None and reached >= ExchangePhase.STREAMING

    def advance(self, phase: ExchangePhase) -> None:
        if phase is ExchangePhase.FAILED:
            raise RuntimeError("Use fail() to mark an exchange as failed")
        if self.finished or phase <= self.phase:
            raise RuntimeError(f"Cannot move exchange from {self.phase.name} to {phase.name}")
        self.phase = phase

    def fail(self, reason: str) -> bool:
        """
        Mark the exchange as failed.

        Returns:
            True if the caller may still send an error response, False if headers
            were already sent or the exchange had already finished
        """
        if self.finished:
            return False
        self.failed_in = self.phase
        self.phase = ExchangePhase.FAILED
        self.error = reason
        return not self.headers_sent


def describe_error(error: BaseException) -> str:
    """Short reason for an upstream failure, suitable for a response body."""
    if isinstance(error, httpx.TimeoutException):
        return f"upstream timed out ({type(error).__name__})"
    if isinstance(error, ClientDisconnect):
        return "client disconnected"
    return str(error) or type(error).__name__


def build_upstream_headers(
    headers: List[Tuple[bytes, bytes]],
    host_header: Optional[str]
) -> List[Tuple[bytes, bytes]]:
    """
    Copy inbound headers for the upstream request.

    Drops hop-by-hop headers. When `host_header` is given the Host header is
    rewritten to it, otherwise the client's Host is kept.
    """
    forwarded = [
        (name, value) for name, value in headers
        if name.lower().decode("latin-1") not in HOP_BY_HOP_HEADERS
    ]
    if host_header is not None:
        forwarded = [(name, value) for name, value in forwarded if name.lower() != b"host"]
        forwarded.insert(0, (b"host", host_header.encode("latin-1")))
    return forwarded


def build_upstream_url(base_url: str, request: Request, strip_prefix: str = "") -> str:
    """
    Join an upstream base URL with the request's raw path and query string.

    `strip_prefix` is removed from the front of the path first, e.g. "/api"
    when the base URL already ends in "/api". The bare prefix maps to "/".
    """
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path
    if strip_prefix and path.startswith(strip_prefix):
        path = path[len(strip_prefix):] or "/"
    url = base_url.rstrip("/") + path
    query = request.scope.get("query_string", b"")
    if query:
        url += "?" + query.decode("latin-1")
    return url


def _has_body(request: Request) -> bool:
    if "transfer-encoding" in request.headers:
        return True
    content_length = request.headers.get("content-length")
    return content_length is not None and content_length.strip() not in ("", "0")


async def _read_body(request: Request, done: anyio.Event) -> AsyncIterator[bytes]:
    try:
        async for chunk in request.stream():
            yield chunk
    finally:
        done.set()


async def _wait_for_disconnect(request: Request, body_read: anyio.Event) -> None:
    # The inbound body belongs to the upstream request until it is fully read
    await body_read.wait()
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


async def open_upstream(
    client: httpx.AsyncClient,
    request: Request,
    url: str,
    host_header: Optional[str] = None
) -> httpx.Response:
    """
    Send the inbound request to `url` and return the upstream response with its
    body still unread.

    Method, headers and body are forwarded unchanged; the body is streamed, not buffered.
    If the client disconnects while the upstream has not answered yet, the send
    is cancelled, which closes the upstream connection.

    Raises:
        httpx.RequestError: If the upstream cannot be reached
        ClientDisconnect: If the client went away before the upstream answered
    """
    headers = build_upstream_headers(request.headers.raw, host_header)
    body_read = anyio.Event()
    if _has_body(request):
        content = _read_body(request, body_read)
    else:
        content = None
        body_read.set()
    # Not client.build_request(): that would merge the client's default headers in
    upstream_request = httpx.Request(
        request.method,
        url,
        headers=headers,
        content=content,
        extensions={"timeout": client.timeout.as_dict()}
    )

    response: Optional[httpx.Response] = None
    error: Optional[Exception] = None
    disconnected = False
    async with anyio.create_task_group() as task_group:
        async def watch_client() -> None:
            nonlocal disconnected
            await _wait_for_disconnect(request, body_read)
            disconnected = True
            task_group.cancel_scope.cancel()

        task_group.start_soon(watch_client)
        try:
            response = await client.send(upstream_request, stream=True)
        except (httpx.RequestError, ClientDisconnect) as e:
            error = e
        task_group.cancel_scope.cancel()

    if disconnected:
        if response is not None:
            await response.aclose()
        raise ClientDisconnect()
    if error is not None:
        raise error
    return response


class UpstreamResponse(StreamingResponse):
    """
    Streams an upstream response to the client byte for byte.

    The upstream response is always closed, also when the client goes away.
    Errors after the headers were sent are logged and reported, then the
    client connection is aborted so the truncated body cannot pass for a
    complete one.
    """

    def __init__(
        self,
        upstream: httpx.Response,
        exchange: ProxyExchange,
        stats: Optional[StatsCollector] = None
    ):
        self.upstream = upstream
        self.exchange = exchange
        self.stats = stats
        super().__init__(self._relay(), status_code=upstream.status_code)
        # Raw list keeps repeated headers such as Set-Cookie
        self.raw_headers = [
            (name.lower(), value) for name, value in upstream.headers.raw
            if name.lower().decode("latin-1") not in HOP_BY_HOP_HEADERS
        ]

    async def _relay(self) -> AsyncIterator[bytes]:
        relayed = 0
        try:
            async for chunk in self.upstream.aiter_raw():
                relayed += len(chunk)
                yield chunk
        except httpx.HTTPError as e:
            reason = describe_error(e)
            self.exchange.fail(reason)
            logger.warning(
                f"Upstream {self.exchange.upstream} failed mid-stream for "
                f"{self.exchange.method} {self.exchange.path}: {reason}"
            )
            if self.stats is not None:
                await self.stats.record_error(_error_event(self.exchange))
            raise UpstreamAborted(reason) from e

        self.exchange.advance(ExchangePhase.COMPLETED)
        if self.stats is not None:
            await self.stats.record_bytes(self.exchange.upstream, relayed)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            with anyio.CancelScope(shield=True):
                await self.upstream.aclose()
            if not self.exchange.finished:
                self.exchange.fail("client disconnected")
                logger.debug(f"Client left before {self.exchange.method} {self.exchange.path} completed")


def _error_event(exchange: ProxyExchange) -> ProxyErrorEvent:
    return ProxyErrorEvent(
        upstream=exchange.upstream,
        method=exchange.method,
        path=exchange.path,
        reason=exchange.error or "",
        phase=exchange.failed_in.name if exchange.failed_in is not None else exchange.phase.name
    )


async def forward(
    client: httpx.AsyncClient,
    request: Request,
    exchange: ProxyExchange,
    url: str,
    host_header: Optional[str] = None,
    stats: Optional[StatsCollector] = None
) -> UpstreamResponse:
    """
    Forward a request whose upstream is already chosen and relay the response.

    Raises:
        ProxyError: If the upstream fails before any response was sent; the
            error is already logged and published as an error event
    """
    exchange.advance(ExchangePhase.UPSTREAM_CONNECTING)
    start_time = time.perf_counter()
    try:
        upstream = await open_upstream(client, request, url, host_header)
    except ClientDisconnect as e:
        reason = describe_error(e)
        exchange.fail(reason)
        logger.info(f"Client left before {exchange.upstream} answered {exchange.method} {exchange.path}, upstream request aborted")
        if stats is not None:
            await stats.record_error(_error_event(exchange))
        raise ProxyError(reason) from e
    except httpx.RequestError as e:
        reason = describe_error(e)
        exchange.fail(reason)
        logger.error(f"Proxy error for {exchange.method} {exchange.path} -> {exchange.upstream}: {reason}")
        if stats is not None:
            response_time_ms = (time.perf_counter() - start_time) * 1000
            await stats.record_request(exchange.upstream, response_time_ms, is_error=True)
            await stats.record_error(_error_event(exchange))
        raise ProxyError(reason, timeout=isinstance(e, httpx.TimeoutException)) from e

    if stats is not None:
        response_time_ms = (time.perf_counter() - start_time) * 1000
        await stats.record_request(
            exchange.upstream, response_time_ms, is_error=upstream.status_code >= 500
        )

    exchange.advance(ExchangePhase.STREAMING)
    return UpstreamResponse(upstream, exchange, stats)
