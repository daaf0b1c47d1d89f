from __future__ import annotations

import os
import tempfile

from dotenv import find_dotenv, load_dotenv

from sandsync.errors import ConfigurationError


def load_env(path: str | None = None) -> bool:
    """Load a .env file (default: nearest one from the cwd) into os.environ.

    Variables already set in the environment win.
    """
    return load_dotenv(path or find_dotenv(usecwd=True))


def _env(name: str) -> str | None:
    v = (os.environ.get(name) or "").strip()
    return v or None


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    return default


def sandbox_backend_name() -> str:
    return (_env("SANDBOX_BACKEND") or "e2b").lower()


def e2b_api_key() -> str:
    return _env("E2B_API_KEY") or ""


def e2b_template() -> str | None:
    return _env("E2B_TEMPLATE")


def local_sandbox_root() -> str:
    return _env("SANDBOX_LOCAL_ROOT") or os.path.join(
        tempfile.gettempdir(), "sandsync-sandboxes"
    )


def sandbox_workdir() -> str:
    return (_env("SANDBOX_WORKDIR") or "/home/user/project").rstrip("/") or "/"


def sandbox_timeout_s() -> int:
    return _env_int("SANDBOX_TIMEOUT_S", 3600)


def restore_batch_size() -> int:
    return _env_int("SANDBOX_RESTORE_BATCH_SIZE", 50)


def persist_batch_size() -> int:
    return _env_int("SANDBOX_PERSIST_BATCH_SIZE", 100)


_DEFAULT_SKIP_DIRS = [
    "node_modules",
    ".next",
    "dist",
    ".turbo",
    ".git",
    "out",
    ".cache",
    ".pnpm-store",
]


def skip_dirs() -> frozenset[str]:
    """Directory basenames never persisted, restored or walked.

    SANDBOX_SKIP_DIRS replaces the default list (comma separated). `.git` is
    always skipped.
    """
    raw = os.environ.get("SANDBOX_SKIP_DIRS")
    if raw is None or not raw.strip():
        return frozenset(_DEFAULT_SKIP_DIRS)
    names = {p.strip().strip("/") for p in raw.split(",")}
    names.discard("")
    names.add(".git")
    return frozenset(names)


def install_command() -> str:
    raw = os.environ.get("SANDBOX_INSTALL_COMMAND")
    if raw is None:
        return "npm install"
    return raw.strip()


def install_timeout_s() -> int:
    return _env_int("SANDBOX_INSTALL_TIMEOUT_S", 300)


def command_timeout_s() -> int:
    return _env_int("SANDBOX_COMMAND_TIMEOUT_S", 300)


def restrict_commands() -> bool:
    return _env_bool("SANDBOX_RESTRICT_COMMANDS", default=False)


def preview_port() -> int:
    return _env_int("PREVIEW_PORT", 3000)


def preview_proxy_mount(project_id: str) -> str:
    template = (
        _env("PREVIEW_PROXY_MOUNT")
        or "/api/v1/builder/projects/{project_id}/preview-proxy"
    )
    return template.replace("{project_id}", project_id).rstrip("/")


def preview_proxy_timeout_s() -> float:
    return float(_env_int("PREVIEW_PROXY_TIMEOUT_S", 30))


def db_schema() -> str:
    return _env("SANDSYNC_DB_SCHEMA") or "sandsync_meta"


def ensure_sandbox_configured() -> None:
    """Raise if the selected sandbox backend is missing credentials."""
    backend = sandbox_backend_name()
    if backend == "e2b":
        if not e2b_api_key():
            raise ConfigurationError("E2B_API_KEY is not set")
        return
    if backend == "local":
        return
    raise ConfigurationError(f"Unknown SANDBOX_BACKEND: {backend!r}")


def preview_startup_wait_s() -> float:
    raw = os.environ.get("PREVIEW_STARTUP_WAIT_S")
    if raw is None or not raw.strip():
        return 8.0
    try:
        return max(0.0, float(raw))
    except ValueError:
        return 8.0
