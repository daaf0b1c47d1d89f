"""Live preview: reverse proxy to a sandbox's dev server."""

from sandsync.preview.proxy import (
    FALLBACK_HTML,
    PreviewProxy,
    PreviewResponse,
    rewrite_root_relative_urls,
)

__all__ = [
    "FALLBACK_HTML",
    "PreviewProxy",
    "PreviewResponse",
    "rewrite_root_relative_urls",
]
