"""Error taxonomy for the sandbox engine.

Every error carries an HTTP-ish ``status_code`` and a machine-readable ``code``
so an outer API layer can map them without inspecting messages.
"""

from __future__ import annotations


class SandboxEngineError(RuntimeError):
    status_code = 500
    code = "sandbox_error"


class ProvisioningError(SandboxEngineError):
    """The provider could not create or reconnect a sandbox."""

    status_code = 503
    code = "provisioning_failed"


class NotProvisioned(SandboxEngineError):
    """An operation needs a running sandbox but the project has none."""

    status_code = 404
    code = "sandbox_not_found"

    def __init__(self, project_id: str, message: str | None = None) -> None:
        self.project_id = project_id
        super().__init__(message or f"No running sandbox for project '{project_id}'")


class SyncError(SandboxEngineError):
    """A restore or persist batch failed.

    Batches written before the failure stay committed; ``batches_completed``
    and ``items_completed`` report how far the operation got.
    """

    status_code = 502
    code = "sync_failed"

    def __init__(
        self,
        message: str,
        *,
        direction: str,
        batches_completed: int = 0,
        items_completed: int = 0,
    ) -> None:
        self.direction = direction
        self.batches_completed = batches_completed
        self.items_completed = items_completed
        super().__init__(message)


class ProxyUpstreamError(SandboxEngineError):
    status_code = 502
    code = "preview_upstream_failed"


class ConfigurationError(SandboxEngineError):
    code = "not_configured"


class InvalidPath(SandboxEngineError, ValueError):
    status_code = 400
    code = "invalid_path"


class CommandNotAllowed(SandboxEngineError, ValueError):
    status_code = 400
    code = "command_not_allowed"


class NoProjectFiles(SandboxEngineError):
    status_code = 404
    code = "project_has_no_files"
