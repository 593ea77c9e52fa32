"""
Header sets attached to every response, and the middleware that applies them.
"""
from __future__ import annotations

from typing import Dict, Mapping

from starlette.types import ASGIApp, Message, Receive, Scope, Send

# CORS headers of the static/app server
CORS_HEADERS: Dict[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Origin, X-Requested-With, Content-Type, Accept, Authorization",
}

# Headers of the public-facing domain router
SECURITY_HEADERS: Dict[str, str] = {
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


class HeaderSetMiddleware:
    """
    ASGI middleware applying a fixed header set to every HTTP response.

    Headers of the set replace any same-named header produced by the app
    (including headers relayed from an upstream). OPTIONS requests are
    answered here with 200 and an empty body, they never reach a route.
    Unhandled errors before the response started are answered with a plain
    500 carrying the set.
    """

    def __init__(self, app: ASGIApp, headers: Mapping[str, str]):
        self.app = app
        self.headers = [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in headers.items()
        ]
        self._names = {name for name, _ in self.headers}

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if scope["method"] == "OPTIONS":
            await send({
                "type": "http.response.start",
                "status": 200,
                "headers": self.headers + [(b"content-length", b"0")],
            })
            await send({"type": "http.response.body", "body": b""})
            return

        response_started = False

        async def send_with_headers(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
                kept = [
                    (name, value) for name, value in message.get("headers", [])
                    if name.lower() not in self._names
                ]
                message = {**message, "headers": kept + self.headers}
            await send(message)

        try:
            await self.app(scope, receive, send_with_headers)
        except Exception:
            # Answer the 500 here so it carries the header set; the error
            # still propagates for the server to log
            if not response_started:
                body = b"Internal Server Error"
                await send_with_headers({
                    "type": "http.response.start",
                    "status": 500,
                    "headers": [
                        (b"content-type", b"text/plain; charset=utf-8"),
                        (b"content-length", str(len(body)).encode("latin-1")),
                    ],
                })
                await send_with_headers({"type": "http.response.body", "body": body})
            raise
