#!/usr/bin/env python3
"""
Mock upstream server for trying out the domain router locally.

Echoes back what it received, so the routing decision and the forwarded
method, path, headers and body can be checked by hand.

Run with:
    python scripts/mock_upstream.py --port 3015 --name api
    python scripts/mock_upstream.py --port 3002 --name app
    curl -H "Host: api.example.com" http://localhost:8080/api/hospitals/
"""
from __future__ import annotations

import argparse
from datetime import datetime

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


def create_app(name: str) -> FastAPI:
    app = FastAPI(title=f"Mock Upstream ({name})")

    @app.get("/health")
    async def health():
        """Health check."""
        return {"status": "healthy", "server": name}

    @app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    async def echo(path: str, request: Request):
        """Echo the request back as JSON."""
        body = await request.body()
        timestamp = datetime.now().strftime("%H:%M:%S")
        print(f"[{timestamp}] {name.upper()} | {request.method} /{path} | Host: {request.headers.get('host')}")

        return JSONResponse({
            "status": "success",
            "upstream": name,
            "method": request.method,
            "path": "/" + path,
            "query": request.url.query,
            "headers": dict(request.headers),
            "body": body.decode(errors="replace"),
        })

    return app


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Echoing upstream for the portal proxy")
    parser.add_argument("--port", type=int, default=3015, help="Port to listen on")
    parser.add_argument("--name", default="api", help="Name reported in responses")
    args = parser.parse_args()

    print(f"\nMock upstream '{args.name}' listening on http://localhost:{args.port}\n")
    uvicorn.run(create_app(args.name), host="127.0.0.1", port=args.port, log_level="warning")
