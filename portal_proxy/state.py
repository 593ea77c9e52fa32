"""
Application state - built per app at creation time, read-only while serving.
"""
from __future__ import annotations

from typing import Dict, Optional

import httpx
from starlette.requests import Request

from portal_proxy.config import AppConfig
from portal_proxy.services.routing import RouteTable
from portal_proxy.services.stats import StatsCollector


class ProxyState:
    """
    Application state container.
    Attached to `app.state.proxy` by the app factories, injected into routes
    via the `get_state` dependency.
    """

    def __init__(
        self,
        config: AppConfig,
        headers: Dict[str, str],
        routes: Optional[RouteTable] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.config = config
        self.headers = headers
        self.routes = routes
        self.http_client = http_client
        # Client was injected by the caller, who is then responsible for closing it
        self.owns_client = http_client is None
        self.stats = StatsCollector()


def get_state(request: Request) -> ProxyState:
    return request.app.state.proxy
