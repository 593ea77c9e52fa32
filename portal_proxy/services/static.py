"""
Static file serving with a single-page-app fallback.
"""
from __future__ import annotations

from starlette.exceptions import HTTPException
from starlette.responses import Response
from starlette.staticfiles import StaticFiles
from starlette.types import Scope


class SPAStaticFiles(StaticFiles):
    """Serves files from a directory; unknown paths get the index document."""

    def __init__(self, *, directory: str, index: str = "index.html"):
        super().__init__(directory=directory, html=False)
        self.index = index

    async def get_response(self, path: str, scope: Scope) -> Response:
        try:
            return await super().get_response(path, scope)
        except HTTPException as e:
            if e.status_code != 404 or scope["method"] not in ("GET", "HEAD"):
                raise
            return await super().get_response(self.index, scope)
