"""
Command line entry point - runs the domain router or the static server under uvicorn.

Usage:
    portal-proxy router                          # HTTP :80, HTTPS :443 when a certificate loads
    portal-proxy router --tls-policy required --cert fullchain.pem --key privkey.pem
    portal-proxy static --port 3002 --root ./site
    portal-proxy static --self-signed --cert server.crt --key server.key
"""
from __future__ import annotations

import argparse
import asyncio
import errno
import signal
import socket
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import uvicorn
from fastapi import FastAPI
from pydantic import ValidationError

from portal_proxy.config import AppConfig
from portal_proxy.logging import configure_logging, get_logger
from portal_proxy.main import create_router_app, create_static_app
from portal_proxy.services.tls import TLSConfigError, TLSCredential, resolve_tls

logger = get_logger(__name__)


class BindError(Exception):
    """A listener socket could not be bound."""


@dataclass(frozen=True)
class Listener:
    host: str
    port: int
    tls: Optional[TLSCredential] = None

    @property
    def scheme(self) -> str:
        return "https" if self.tls else "http"


def bind_listener(host: str, port: int) -> socket.socket:
    """
    Bind a TCP socket for a listener.

    Raises:
        BindError: With an actionable message; permission problems on
            privileged ports are told apart from ports already in use
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except PermissionError as e:
        sock.close()
        raise BindError(
            f"Permission denied to bind port {port} on {host}. Run with elevated privileges "
            f"(sudo or CAP_NET_BIND_SERVICE) or choose a port above 1023."
        ) from e
    except OSError as e:
        sock.close()
        if e.errno == errno.EADDRINUSE:
            raise BindError(f"Port {port} on {host} is already in use") from e
        raise BindError(f"Cannot bind {host}:{port}: {e.strerror or e}") from e
    sock.set_inheritable(True)
    return sock


def plan_listeners(profile: str, config: AppConfig, tls: Optional[TLSCredential]) -> List[Listener]:
    """Listeners for a profile: the router may run HTTP and HTTPS side by side."""
    if profile == "static":
        return [Listener(config.static_listen_host, config.port, tls)]

    host = config.proxy_listen_host
    if tls is None:
        return [Listener(host, config.proxy_http_port)]
    listeners = [Listener(host, config.proxy_https_port, tls)]
    if config.proxy_serve_http:
        listeners.append(Listener(host, config.proxy_http_port))
    return listeners


def _uvicorn_config(app: FastAPI, listener: Listener, lifespan: str) -> uvicorn.Config:
    ssl_options: Dict[str, Any] = {}
    if listener.tls:
        ssl_options = {"ssl_certfile": listener.tls.cert_path, "ssl_keyfile": listener.tls.key_path}
    return uvicorn.Config(
        app,
        host=listener.host,
        port=listener.port,
        lifespan=lifespan,
        # Every request is already logged by the routers
        access_log=False,
        **ssl_options
    )


async def _exit_together(servers: List[uvicorn.Server]) -> None:
    """Once one server is asked to stop (SIGINT/SIGTERM), stop them all."""
    while not any(server.should_exit for server in servers):
        await asyncio.sleep(0.2)
    for server in servers:
        server.should_exit = True


async def run_servers(app: FastAPI, listeners: Sequence[Listener], sockets: Sequence[socket.socket]) -> None:
    """
    Serve the app on every listener from one event loop.

    Only the first server runs the app lifespan so the shared HTTP client is
    created and closed once. On shutdown uvicorn stops accepting connections
    and lets in-flight requests drain.
    """
    servers = [
        uvicorn.Server(_uvicorn_config(app, listener, "on" if i == 0 else "off"))
        for i, listener in enumerate(listeners)
    ]
    for listener in listeners:
        logger.info(f"Listening on {listener.scheme}://{listener.host}:{listener.port}")

    watcher = asyncio.create_task(_exit_together(servers))
    try:
        await asyncio.gather(*[
            server.serve(sockets=[sock]) for server, sock in zip(servers, sockets)
        ])
    finally:
        watcher.cancel()
    logger.info("All listeners stopped, shutdown complete")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="portal-proxy",
        description="Edge servers for the patient portal."
    )
    subparsers = parser.add_subparsers(dest="profile", required=True)

    def add_tls_arguments(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--cert", dest="proxy_tls_cert", help="TLS certificate (PEM)")
        sub.add_argument("--key", dest="proxy_tls_key", help="TLS private key (PEM)")
        sub.add_argument(
            "--tls-policy",
            dest="proxy_tls_policy",
            choices=["required", "fallback", "disabled"],
            help="What to do when TLS cannot be served"
        )
        sub.add_argument(
            "--self-signed",
            dest="proxy_self_signed",
            action="store_true",
            default=None,
            help="Generate a self-signed certificate when none exists (development only)"
        )

    router = subparsers.add_parser("router", help="Route requests to upstreams by Host header")
    router.add_argument("--host", dest="proxy_listen_host", help="Address to bind")
    router.add_argument("--http-port", dest="proxy_http_port", type=int, help="Plain HTTP port")
    router.add_argument("--https-port", dest="proxy_https_port", type=int, help="HTTPS port")
    router.add_argument("--routes", dest="proxy_routes_file", help="JSON route table")
    router.add_argument(
        "--no-http",
        dest="proxy_serve_http",
        action="store_false",
        default=None,
        help="Only serve HTTPS when a certificate is available"
    )
    add_tls_arguments(router)

    static = subparsers.add_parser("static", help="Serve static files, /api passthrough and /health")
    static.add_argument("--host", dest="static_listen_host", help="Address to bind")
    static.add_argument("--port", dest="port", type=int, help="Port (default: $PORT or 3002)")
    static.add_argument("--root", dest="static_root", help="Directory to serve")
    static.add_argument("--api-base", dest="static_api_base", help="Backend base URL for /api")
    add_tls_arguments(static)

    return parser


def load_config(args: argparse.Namespace) -> AppConfig:
    """Settings from the environment, overridden by the command line options given."""
    overrides = {
        name: value for name, value in vars(args).items()
        if name != "profile" and value is not None
    }
    return AppConfig(**overrides)


def _terminate(signum: int, frame: Any) -> None:
    raise KeyboardInterrupt


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args)
    except ValidationError as e:
        logger.error(f"Invalid configuration:\n{e}")
        return 1
    configure_logging(config.log_level)

    sockets: List[socket.socket] = []
    try:
        tls = resolve_tls(config)
        app = create_router_app(config) if args.profile == "router" else create_static_app(config)
        listeners = plan_listeners(args.profile, config, tls)
        for listener in listeners:
            sockets.append(bind_listener(listener.host, listener.port))
    except (TLSConfigError, BindError, ValueError, RuntimeError) as e:
        logger.error(str(e))
        for sock in sockets:
            sock.close()
        return 1

    # uvicorn re-raises SIGTERM once it has drained; end the same way as on Ctrl-C
    signal.signal(signal.SIGTERM, _terminate)
    try:
        asyncio.run(run_servers(app, listeners, sockets))
    except KeyboardInterrupt:
        pass
    finally:
        for sock in sockets:
            sock.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
