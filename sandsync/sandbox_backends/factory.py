from __future__ import annotations

from typing import TYPE_CHECKING

from sandsync.config import sandbox_backend_name
from sandsync.errors import ConfigurationError

if TYPE_CHECKING:  # pragma: no cover
    from .base import SandboxProvider


def get_provider(name: str | None = None) -> SandboxProvider:
    backend = (name or sandbox_backend_name()).strip().lower()
    if backend == "e2b":
        from .e2b_backend import E2BProvider

        return E2BProvider()
    if backend == "local":
        from .local_backend import LocalProvider

        return LocalProvider()
    raise ConfigurationError(f"Unknown SANDBOX_BACKEND: {backend!r}")
