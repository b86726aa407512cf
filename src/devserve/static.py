"""Static file responder for build artifacts.

Serves manifest and module files from the artifact directory with a
revalidation-only cache contract:

- every response carries ``Cache-Control: no-cache``, so clients may keep
  a copy but must revalidate before using it;
- every file response carries a strong ``ETag`` computed from the bytes in
  the body, so a rewritten file is never answered with 304.

Nothing is invalidated explicitly. The validator is recomputed from the
file's current contents on every request.
"""

from __future__ import annotations

import errno
import hashlib
import html
import mimetypes
import os
import stat
from email.utils import formatdate
from urllib.parse import quote

import anyio
import anyio.to_thread
from starlette.datastructures import Headers
from starlette.exceptions import HTTPException
from starlette.responses import HTMLResponse, PlainTextResponse, Response
from starlette.staticfiles import PathLike, StaticFiles
from starlette.types import Receive, Scope, Send
from starlette.websockets import WebSocketClose

CACHE_CONTROL = "no-cache"


def compute_etag(content: bytes) -> str:
    """Return a strong, quoted entity tag for ``content``."""
    return f'"{hashlib.sha256(content).hexdigest()}"'


def etag_matches(if_none_match: str, etag: str) -> bool:
    """Check an ``If-None-Match`` header value against ``etag``.

    Uses weak comparison as If-None-Match requires: a ``W/`` prefix on
    either side is ignored. ``*`` matches any current representation.
    """
    if etag.startswith("W/"):
        etag = etag[2:]
    for tag in if_none_match.split(","):
        tag = tag.strip()
        if tag == "*":
            return True
        if tag.startswith("W/"):
            tag = tag[2:]
        if tag == etag:
            return True
    return False


class ArtifactFiles(StaticFiles):
    """StaticFiles variant with the no-cache + ETag contract.

    The directory does not have to exist yet; until it does every request
    is a 404. Directories are answered with a plain HTML listing.
    """

    def __init__(self, *, directory: PathLike) -> None:
        super().__init__(directory=directory, check_dir=False)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "websocket":
            # Only the notification route accepts WebSockets.
            await WebSocketClose()(scope, receive, send)
            return
        await super().__call__(scope, receive, send)

    async def check_config(self) -> None:
        # The build may create the directory after the server is up.
        return None

    async def get_response(self, path: str, scope: Scope) -> Response:
        try:
            return await self._lookup_response(path, scope)
        except HTTPException as exc:
            headers = dict(exc.headers or {})
            headers["Cache-Control"] = CACHE_CONTROL
            return PlainTextResponse(exc.detail, status_code=exc.status_code, headers=headers)

    async def _lookup_response(self, path: str, scope: Scope) -> Response:
        if scope["method"] not in ("GET", "HEAD"):
            raise HTTPException(status_code=405, headers={"Allow": "GET, HEAD"})

        try:
            full_path, stat_result = await anyio.to_thread.run_sync(self.lookup_path, path)
        except PermissionError:
            raise HTTPException(status_code=403)
        except OSError as exc:
            if exc.errno == errno.ENAMETOOLONG:
                raise HTTPException(status_code=404)
            raise

        if stat_result is not None and stat.S_ISREG(stat_result.st_mode):
            return await self.artifact_response(full_path, stat_result, scope)
        if stat_result is not None and stat.S_ISDIR(stat_result.st_mode):
            return await anyio.to_thread.run_sync(self.directory_response, full_path, scope)
        raise HTTPException(status_code=404)

    async def artifact_response(
        self,
        full_path: PathLike,
        stat_result: os.stat_result,
        scope: Scope,
    ) -> Response:
        """Build a 200 or 304 response for one file.

        The body is read once and the ETag is derived from exactly those
        bytes, so a file rewritten mid-request still yields a consistent
        body/validator pair.
        """
        try:
            content = await anyio.to_thread.run_sync(_read_bytes, full_path)
        except (FileNotFoundError, IsADirectoryError):
            raise HTTPException(status_code=404)
        except PermissionError:
            raise HTTPException(status_code=403)

        etag = compute_etag(content)
        headers = {
            "Cache-Control": CACHE_CONTROL,
            "ETag": etag,
            "Last-Modified": formatdate(stat_result.st_mtime, usegmt=True),
        }

        request_headers = Headers(scope=scope)
        if_none_match = request_headers.get("if-none-match")
        if if_none_match is not None and etag_matches(if_none_match, etag):
            return Response(status_code=304, headers=headers)

        media_type = mimetypes.guess_type(str(full_path))[0] or "application/octet-stream"
        return Response(content, media_type=media_type, headers=headers)

    def directory_response(self, full_path: PathLike, scope: Scope) -> Response:
        base = scope["path"].rstrip("/")
        title = html.escape(scope["path"] or "/")
        with os.scandir(full_path) as it:
            entries = sorted(it, key=lambda e: e.name)
        items = []
        for entry in entries:
            name = entry.name + ("/" if entry.is_dir() else "")
            href = f"{base}/{quote(name)}"
            items.append(f'<li><a href="{html.escape(href)}">{html.escape(name)}</a></li>')
        body = (
            f"<!DOCTYPE html>\n<html><head><title>Index of {title}</title></head>"
            f"<body><h1>Index of {title}</h1><ul>\n"
            + "\n".join(items)
            + "\n</ul></body></html>\n"
        )
        return HTMLResponse(body, headers={"Cache-Control": CACHE_CONTROL})


def _read_bytes(path: PathLike) -> bytes:
    with open(path, "rb") as f:
        return f.read()
