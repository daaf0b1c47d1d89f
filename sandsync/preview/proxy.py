from __future__ import annotations

import logging
import posixpath
import re
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urljoin, urlsplit, urlunsplit

import httpx

from sandsync.config import preview_port, preview_proxy_mount, preview_proxy_timeout_s
from sandsync.errors import (
    InvalidPath,
    NotProvisioned,
    ProxyUpstreamError,
    SandboxEngineError,
)
from sandsync.sandbox_backends.registry import SandboxRegistry

logger = logging.getLogger(__name__)

FALLBACK_HTML = (
    "<!DOCTYPE html><html><head><meta charset=\"utf-8\"><title>Preview unavailable</title></head>"
    "<body style=\"font-family:system-ui,sans-serif;padding:2rem;color:#444\">"
    "<h1>Preview is starting or unavailable</h1>"
    "<p>The dev server did not respond. Try again in a few seconds.</p>"
    "</body></html>"
)

# href="/x" or src='/x', but not protocol-relative "//host/x".
_ROOT_RELATIVE_RE = re.compile(r"""(href|src)=(["'])/(?!/)""")


@dataclass(frozen=True)
class PreviewResponse:
    status: int
    content_type: str
    body: bytes


def rewrite_root_relative_urls(html: str, prefix: str) -> str:
    mount = prefix.rstrip("/")
    return _ROOT_RELATIVE_RE.sub(lambda m: f"{m.group(1)}={m.group(2)}{mount}/", html)


def normalize_preview_path(path: str | None) -> str:
    raw = (path or "/").strip() or "/"

    parsed = urlsplit(raw)
    if parsed.scheme or parsed.netloc:
        raise ValueError("path must be relative to the preview root")

    rel = posixpath.normpath(parsed.path.lstrip("/") or ".")
    if rel == ".." or rel.startswith("../"):
        raise ValueError("path must not traverse above preview root")
    normalized_path = "/" if rel == "." else "/" + rel
    # normpath drops a trailing slash; directory-style URLs keep it.
    if parsed.path.endswith("/") and normalized_path != "/":
        normalized_path += "/"

    return urlunsplit(("", "", normalized_path, parsed.query, ""))


def preview_origin(host: str) -> str:
    h = (host or "").strip()
    if not h:
        raise ValueError("empty preview host")
    return h if h.startswith("http") else f"https://{h}"


def build_preview_target_url(base_url: str, *, path: str = "/") -> str:
    parsed_base = urlsplit(base_url)
    if not parsed_base.scheme or not parsed_base.netloc:
        raise ValueError("base_url must be an absolute URL")
    base_with_slash = base_url if base_url.endswith("/") else (base_url + "/")
    return urljoin(base_with_slash, normalize_preview_path(path))


class PreviewProxy:
    """Forwards GET requests to a project's sandbox dev server.

    ``fetch`` reports upstream failures as exceptions. ``forward`` is what an
    HTTP route serves: client errors still propagate ("no sandbox", or a
    path that escapes the preview root), everything else becomes the fallback
    page with status 503.
    """

    def __init__(
        self,
        registry: SandboxRegistry,
        *,
        client: httpx.AsyncClient | None = None,
        port: int | None = None,
        timeout_s: float | None = None,
        mount_for: Callable[[str], str] | None = None,
    ) -> None:
        self._registry = registry
        self._port = port or preview_port()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout_s or preview_proxy_timeout_s(), follow_redirects=True
        )
        self._mount_for = mount_for or preview_proxy_mount

    async def fetch(self, project_id: str, path: str = "/") -> PreviewResponse:
        try:
            target_path = normalize_preview_path(path)
        except ValueError as exc:
            raise InvalidPath(str(exc)) from exc
        handle = await self._registry.get_running(project_id)
        if handle is None:
            raise NotProvisioned(project_id)
        url = build_preview_target_url(
            preview_origin(handle.get_host(self._port)), path=target_path
        )
        try:
            resp = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise ProxyUpstreamError(f"preview request to {url} failed: {exc}") from exc

        content_type = resp.headers.get("content-type", "")
        body = resp.content
        if resp.status_code == 200 and "text/html" in content_type.lower():
            html = rewrite_root_relative_urls(resp.text, self._mount_for(project_id))
            body = html.encode(resp.encoding or "utf-8")
        return PreviewResponse(status=resp.status_code, content_type=content_type, body=body)

    async def forward(self, project_id: str, path: str = "/") -> PreviewResponse:
        try:
            return await self.fetch(project_id, path)
        except SandboxEngineError as exc:
            if exc.status_code < 500:
                raise
            logger.warning("Preview for project %s unavailable: %s", project_id, exc)
        except Exception as exc:
            logger.warning("Preview for project %s failed: %s", project_id, exc)
        return PreviewResponse(
            status=503,
            content_type="text/html; charset=utf-8",
            body=FALLBACK_HTML.encode("utf-8"),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
