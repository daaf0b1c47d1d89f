from __future__ import annotations

import posixpath
import re
from collections.abc import Iterable

from sandsync.config import skip_dirs
from sandsync.errors import CommandNotAllowed, InvalidPath

_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")

_ALLOWED_COMMAND_RE = re.compile(
    r"^(pnpm|npm)\s+install$"
    r"|^(pnpm|npm)\s+(add|install|run)\s+[\w\s@./-]+$"
    r"|^pnpm\s+(dlx|exec)\s+[\w@./\s-]+$"
    r"|^(pnpm|npm)\s+(list|why|outdated)(\s+[\w@./\s-]*)?$"
    r"|^npx\s+[\w@./\s-]+$",
    re.IGNORECASE,
)
_FORBIDDEN_COMMAND_RE = re.compile(r"[;&|`$<>]|\.\.")


def is_skipped(name: str, *, skip: Iterable[str] | None = None) -> bool:
    """Exact, case-sensitive basename match against the skip-set."""
    names = skip if skip is not None else skip_dirs()
    return name in names


def has_skipped_segment(path: str, *, skip: Iterable[str] | None = None) -> bool:
    names = frozenset(skip if skip is not None else skip_dirs())
    return any(seg in names for seg in path.split("/"))


def sanitize_relative_path(path: str) -> str:
    """Turn a caller path into a clean project-relative POSIX path.

    Drops empty, "." and ".." segments and any leading slash.
    """
    parts = (path or "").replace("\\", "/").split("/")
    return "/".join(p for p in parts if p and p not in (".", ".."))


def validate_path(path: str) -> None:
    raw = path or ""
    if not raw.strip():
        raise InvalidPath("empty path")
    if raw.startswith("/"):
        raise InvalidPath("absolute paths are not allowed")
    if ".." in raw.split("/"):
        raise InvalidPath("path traversal not allowed")
    if _CONTROL_RE.search(raw):
        raise InvalidPath("invalid characters in path")


def normalize_project_path(path: str) -> str:
    """Validate a caller path and return its canonical project-relative form.

    A leading slash is accepted and dropped; traversal raises ``InvalidPath``.
    """
    raw = (path or "").strip().lstrip("/")
    validate_path(raw)
    clean = sanitize_relative_path(raw)
    if not clean:
        raise InvalidPath("empty path")
    return clean


def require_project_path(path: str) -> str:
    """Validate and sanitize a path for a file action; returns the clean path."""
    clean = normalize_project_path(path)
    if has_skipped_segment(clean):
        raise InvalidPath(f"writes not allowed under '{clean}'")
    return clean


def sandbox_path(workdir: str, rel_path: str) -> str:
    """Absolute sandbox path for a project-relative path; never leaves ``workdir``."""
    return posixpath.join(workdir, normalize_project_path(rel_path))


def is_command_allowed(command: str) -> bool:
    cmd = (command or "").strip()
    if not cmd or _FORBIDDEN_COMMAND_RE.search(cmd):
        return False
    return bool(_ALLOWED_COMMAND_RE.match(cmd))


def require_command_allowed(command: str) -> None:
    if not is_command_allowed(command):
        raise CommandNotAllowed(f"command not allowed: {command!r}")
